"""Events emitted while one streamed reply is produced.

Every event shares an envelope (turn id, per-turn sequence, emitting agent)
and adds fields for its type. ``stream_retry`` is emitted before a model call
is re-issued, which only happens while nothing of that call has streamed.
"""

import time
import uuid
from typing import Any, Awaitable, Callable, Literal, NotRequired, TypeAlias, TypedDict, cast

TURN_EVENT_NAMESPACE = "imibot.turn"
TURN_EVENT_SCHEMA_VERSION = 2

TurnEventType: TypeAlias = Literal[
    "turn_start",
    "stream_retry",
    "tool_start",
    "tool_end",
    "turn_end",
]


class TurnEventEnvelope(TypedDict):
    namespace: str
    version: int
    type: TurnEventType
    turn_id: str
    sequence: int
    timestamp_ms: int
    source: str


class TurnStarted(TurnEventEnvelope):
    type: Literal["turn_start"]
    message_count: int
    max_iterations: int
    tool_names: list[str]


class StreamRetried(TurnEventEnvelope):
    type: Literal["stream_retry"]
    iteration: int
    attempt: int
    reason: Literal["exception", "error_finish"]
    delay_s: float


class ToolStarted(TurnEventEnvelope):
    type: Literal["tool_start"]
    iteration: int
    tool: str
    tool_call_id: str
    arguments: dict[str, Any]


class ToolFinished(TurnEventEnvelope):
    type: Literal["tool_end"]
    iteration: int
    tool: str
    tool_call_id: str
    is_error: bool
    detail_op: str | None


class TurnEnded(TurnEventEnvelope):
    type: Literal["turn_end"]
    iterations: int
    tool_count: int
    completed: bool
    streamed_chars: int
    usage: dict[str, int]
    retry_count: NotRequired[int]


TurnEvent: TypeAlias = TurnStarted | StreamRetried | ToolStarted | ToolFinished | TurnEnded
TurnEventCallback: TypeAlias = Callable[[TurnEvent], Awaitable[None]]


class TurnEventEmitter:
    """Stamps the envelope on each event of one turn and hands it to the callback."""

    def __init__(self, callback: TurnEventCallback | None, source: str) -> None:
        self.callback = callback
        self.source = source
        self.turn_id = f"turn_{uuid.uuid4().hex[:12]}"
        self.sequence = 0

    async def emit(self, event_type: TurnEventType, **fields: Any) -> None:
        if self.callback is None:
            return
        self.sequence += 1
        await self.callback(cast(TurnEvent, {
            "namespace": TURN_EVENT_NAMESPACE,
            "version": TURN_EVENT_SCHEMA_VERSION,
            "type": event_type,
            "turn_id": self.turn_id,
            "sequence": self.sequence,
            "timestamp_ms": int(time.time() * 1000),
            "source": self.source,
            **fields,
        }))


def turn_event_log_fields(event: TurnEvent) -> dict[str, Any]:
    """Flat log fields: envelope identity plus the event's own scalar fields."""
    fields = {
        "event_type": event["type"],
        "turn_id": event["turn_id"],
        "sequence": event["sequence"],
        "source": event["source"],
    }
    for key, value in event.items():
        if key in TurnEventEnvelope.__annotations__ or isinstance(value, (dict, list)):
            continue
        fields[key] = value
    return fields
