"""Single entry point for a user turn.

State machine per request::

    START -> CONTEXT_FETCH -> PRIMARY_ATTEMPT -> DONE(streaming)
                                     |
                                     v
                             SECONDARY_ATTEMPT -> DONE(claude)
                                     |
                                     v
                                   FAILED

Context fetch is best-effort. The primary path is the workflow's streaming
entry point; the secondary path is the full plan/execute/summarize/respond
workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from imibot.config.schema import RouterConfig
from imibot.context.provider import ContextProvider
from imibot.context.triviality import classify
from imibot.errors import (
    AllRoutesFailedError,
    NoRouteConfiguredError,
    PrimaryGenerationError,
    SecondaryGenerationError,
)
from imibot.logging import bind_request_context, get_logger
from imibot.workflow.orchestration import GenerationWorkflow

logger = get_logger(__name__)

RoutedPath = Literal["streaming", "claude"]

START = "START"
CONTEXT_FETCH = "CONTEXT_FETCH"
PRIMARY_ATTEMPT = "PRIMARY_ATTEMPT"
SECONDARY_ATTEMPT = "SECONDARY_ATTEMPT"
DONE = "DONE"
FAILED = "FAILED"


@dataclass
class RouteResult:
    routed: RoutedPath
    trace: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"routed": self.routed}


class AgentRouter:
    """Constructed once; holds no per-request state."""

    def __init__(
        self,
        *,
        context: ContextProvider,
        workflow: GenerationWorkflow,
        config: RouterConfig | None = None,
    ) -> None:
        self.context = context
        self.workflow = workflow
        self.config = config or RouterConfig()

    async def route(
        self,
        thread_id: str,
        prompt_message_id: str,
        user_id: str,
        user_message: str,
    ) -> RouteResult:
        """Route one user turn.

        Raises:
            NoRouteConfiguredError: both generation paths are disabled.
            SecondaryGenerationError: the fallback path failed.
            AllRoutesFailedError: the primary path failed and no fallback is enabled.
        """
        bind_request_context(thread_id=thread_id, user_id=user_id, prompt_message_id=prompt_message_id)
        cfg = self.config
        trace = [START]

        if not cfg.primary_generation_enabled and not cfg.secondary_generation_enabled:
            trace.append(FAILED)
            logger.error("router_no_route_configured", trace=trace)
            raise NoRouteConfiguredError()

        triviality = classify(user_message)
        logger.info("router_turn_received", trivial=triviality.trivial, triviality_reason=triviality.reason)

        trace.append(CONTEXT_FETCH)
        try:
            context = await self.context.provide_context(thread_id, user_id, user_message, prompt_message_id)
            logger.info(
                "router_context_fetched",
                search_path=context.search_path,
                memories_found=context.memories_found,
                latency_ms=context.latency_ms,
            )
        except Exception as e:
            logger.warning("router_context_failed", error=str(e), error_type=type(e).__name__)

        primary_error: PrimaryGenerationError | None = None
        if cfg.primary_generation_enabled:
            trace.append(PRIMARY_ATTEMPT)
            try:
                await self.workflow.stream_response(
                    thread_id=thread_id,
                    user_id=user_id,
                    user_message=user_message,
                    prompt_message_id=prompt_message_id,
                    max_iterations=cfg.primary_max_iterations,
                )
                trace.append(DONE)
                logger.info("router_routed", routed="streaming", trace=trace)
                return RouteResult(routed="streaming", trace=trace)
            except Exception as e:
                primary_error = PrimaryGenerationError(str(e))
                primary_error.__cause__ = e
                logger.warning("router_primary_failed", error=str(e), error_type=type(e).__name__)

        if cfg.secondary_generation_enabled:
            trace.append(SECONDARY_ATTEMPT)
            try:
                await self.workflow.execute(thread_id, user_id, user_message, prompt_message_id)
            except Exception as e:
                trace.append(FAILED)
                logger.error("router_secondary_failed", error=str(e), error_type=type(e).__name__, trace=trace)
                raise SecondaryGenerationError() from e
            trace.append(DONE)
            logger.info("router_routed", routed="claude", trace=trace)
            return RouteResult(routed="claude", trace=trace)

        trace.append(FAILED)
        logger.error("router_all_routes_failed", trace=trace)
        raise AllRoutesFailedError() from primary_error
