"""Persisted entities. Timestamps are epoch milliseconds."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from imibot.utils.helpers import now_ms


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


@dataclass
class Thread:
    id: str
    user_id: str
    created_at: int = field(default_factory=now_ms)
    last_message_at: int = field(default_factory=now_ms)
    message_count: int = 0
    agent_type: str = "casual"

    def touch(self, at: int | None = None) -> None:
        self.message_count += 1
        self.last_message_at = at if at is not None else now_ms()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Thread:
        return cls(**data)


MessageStatus = Literal["pending", "success", "failed"]


@dataclass
class ThreadMessage:
    thread_id: str
    role: str
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    status: MessageStatus = "success"
    created_at: int = field(default_factory=now_ms)
    prompt_message_id: str | None = None
    agent_name: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreadMessage:
        return cls(**data)


@dataclass
class MemoryRecord:
    """Compressed extract of facts/entities from a past conversation segment."""

    user_id: str
    thread_id: str
    facts: list[str]
    id: str = field(default_factory=lambda: new_id("mem"))
    timestamp: int = field(default_factory=now_ms)
    priority: str = "medium"
    entities: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    deleted: bool = False
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        return cls(**data)


@dataclass
class BackgroundWorkerConfig:
    id: str
    type: str
    enabled: bool = True
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackgroundWorkerConfig:
        return cls(
            id=data["id"],
            type=data.get("type", "unknown"),
            enabled=bool(data.get("enabled", False)),
            config=dict(data.get("config") or {}),
        )


@dataclass
class ToolSession:
    """One external tool-execution session per user."""

    user_id: str
    session_id: str
    session_url: str
    connected_toolkits: list[str] = field(default_factory=list)
    background_workers: dict[str, BackgroundWorkerConfig] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)
    last_active_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "session_url": self.session_url,
            "connected_toolkits": list(self.connected_toolkits),
            # Stored as a list to keep insertion order explicit on disk
            "background_workers": [w.to_dict() for w in self.background_workers.values()],
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolSession:
        workers = [BackgroundWorkerConfig.from_dict(w) for w in data.get("background_workers") or []]
        return cls(
            user_id=data["user_id"],
            session_id=data["session_id"],
            session_url=data["session_url"],
            connected_toolkits=list(data.get("connected_toolkits") or []),
            background_workers={w.id: w for w in workers},
            created_at=data.get("created_at") or now_ms(),
            last_active_at=data.get("last_active_at"),
        )


TaskStatus = Literal["running", "completed", "failed"]


@dataclass
class BackgroundTask:
    user_id: str
    session_id: str
    worker_id: str
    task_type: str
    status: TaskStatus
    id: str = field(default_factory=lambda: new_id("task"))
    started_at: int = field(default_factory=now_ms)
    completed_at: int | None = None
    tools_called: list[str] = field(default_factory=list)
    results: Any = None
    error: str | None = None
    user_notified: bool = False
    notification_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackgroundTask:
        return cls(**data)


@dataclass
class UsageRecord:
    user_id: str
    agent_name: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    timestamp: int = field(default_factory=now_ms)
    thread_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageRecord:
        return cls(**data)


@dataclass(frozen=True)
class ToolArguments:
    """Structured tool-call payload; serialized only at the storage boundary."""

    tool_slug: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"tool_slug": self.tool_slug, "arguments": dict(self.arguments)}


@dataclass
class ToolLogRecord:
    tool_name: str
    user_id: str
    thread_id: str
    args: ToolArguments
    success: bool
    execution_time_ms: float = 0.0
    error: str | None = None
    job_id: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["args"] = self.args.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolLogRecord:
        raw_args = data.get("args") or {}
        args = ToolArguments(
            tool_slug=raw_args.get("tool_slug", data.get("tool_name", "")),
            arguments=dict(raw_args.get("arguments") or {}),
        )
        return cls(**{**data, "args": args})


@dataclass
class ContextEntry:
    """Memory facts fetched for a thread and message, valid until ``expires_at``."""

    thread_id: str
    user_id: str
    context_type: str
    summary: str
    id: str = field(default_factory=lambda: new_id("ctx"))
    relevant_to: str | None = None
    relevance_score: float = 0.5
    raw_data: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)
    expires_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextEntry:
        return cls(**data)
