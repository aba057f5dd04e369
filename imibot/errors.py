"""Exception taxonomy for routing, generation and tool sessions."""

from __future__ import annotations


class ImibotError(Exception):
    """Base class for all imibot errors."""


class ContextFetchError(ImibotError):
    """Layer 1 context fetch failed. Never fatal: the router continues without context."""


class GenerationError(ImibotError):
    """Base class for generation path failures."""


class PrimaryGenerationError(GenerationError):
    """The streaming path failed. Triggers the fallback and is never surfaced directly."""


class SecondaryGenerationError(GenerationError):
    """The fallback path failed. Fatal."""

    def __init__(self, message: str = "All routing paths failed") -> None:
        super().__init__(message)


class AllRoutesFailedError(SecondaryGenerationError):
    """Primary failed and no fallback path is enabled."""


class NoRouteConfiguredError(ImibotError):
    """Neither generation path is enabled."""

    def __init__(
        self,
        message: str = (
            "No agent routing enabled. Set PRIMARY_GENERATION_ENABLED=true "
            "or SECONDARY_GENERATION_ENABLED=true"
        ),
    ) -> None:
        super().__init__(message)


class ToolSessionError(ImibotError):
    """Base class for tool-session management failures."""


class SessionNotFoundError(ToolSessionError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Session not found for user {user_id!r}")
        self.user_id = user_id


class WorkerNotFoundError(ToolSessionError):
    def __init__(self, user_id: str, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id!r} not found in session of user {user_id!r}")
        self.user_id = user_id
        self.worker_id = worker_id


class ConnectionProviderError(ImibotError):
    """The external connection provider could not be queried."""


class WorkflowStepError(ImibotError):
    """A workflow step could not produce its output."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"[{step}] {message}")
        self.step = step
