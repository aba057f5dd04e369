"""Primary generation path: a bounded tool-calling loop streamed into the thread."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from imibot.agent.tools.factory import create_request_tool_registry
from imibot.agent.turn_events import TurnEvent, turn_event_log_fields
from imibot.agent.turn_runner import TurnRunner
from imibot.context.provider import ContextProvider
from imibot.logging import get_logger
from imibot.providers.base import LLMProvider
from imibot.storage.memories import MemoryRecordStore
from imibot.storage.pending import PendingMessage
from imibot.storage.threads import MessageStore, ThreadStore
from imibot.telemetry.recorder import ToolExecutionRecorder, UsageRecorder
from imibot.tool_router.integrations import AppIntegrations

logger = get_logger(__name__)

HISTORY_LIMIT = 20
_HIDDEN_PREFIX = "[SYSTEM:"

DEFAULT_SYSTEM_PROMPT = (
    "You are Imi, a warm and concise personal assistant. You can recall the user's past "
    "conversations with memory_search and act in their connected apps with app_integrations. "
    "Prefer answering directly; call a tool only when it is needed for the answer."
)


@dataclass
class StreamResult:
    final_text: str
    message_id: str
    iterations: int
    tools_called: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


def build_system_prompt(base: str, context_summary: str | None) -> str:
    if not context_summary:
        return base
    return (
        f"{base}\n\n<relevant_memories>\n"
        "The following are relevant facts from past conversations. Use them naturally when appropriate:\n\n"
        f"{context_summary}\n</relevant_memories>"
    )


class StreamingAgent:
    """Built once; every :meth:`run` gets its own tool registry and pending message."""

    def __init__(
        self,
        *,
        provider: LLMProvider,
        threads: ThreadStore,
        messages: MessageStore,
        memories: MemoryRecordStore,
        context: ContextProvider,
        usage_recorder: UsageRecorder,
        tool_recorder: ToolExecutionRecorder | None = None,
        integrations: AppIntegrations | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        agent_name: str = "Imi",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.provider = provider
        self.threads = threads
        self.messages = messages
        self.memories = memories
        self.context = context
        self.usage_recorder = usage_recorder
        self.tool_recorder = tool_recorder
        self.integrations = integrations
        self.model = model or provider.get_default_model()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.agent_name = agent_name
        self.system_prompt = system_prompt

    def _history(self, thread_id: str, prompt_message_id: str) -> list[dict[str, Any]]:
        history: list[dict[str, Any]] = []
        for msg in self.messages.recent(thread_id, HISTORY_LIMIT):
            if msg.role not in ("user", "assistant") or msg.id == prompt_message_id:
                continue
            if msg.status != "success" or msg.content.startswith(_HIDDEN_PREFIX):
                continue
            history.append({"role": msg.role, "content": msg.content})
        return history

    def build_messages(self, thread_id: str, user_message: str, prompt_message_id: str) -> list[dict[str, Any]]:
        summary = self.context.cached_summary(thread_id)
        if summary:
            logger.info("memory_context_injected", chars=len(summary))
        return [
            {"role": "system", "content": build_system_prompt(self.system_prompt, summary)},
            *self._history(thread_id, prompt_message_id),
            {"role": "user", "content": user_message},
        ]

    async def run(
        self,
        *,
        thread_id: str,
        user_id: str,
        user_message: str,
        prompt_message_id: str,
        max_iterations: int = 10,
    ) -> StreamResult:
        """Stream a reply into a new pending message of *thread_id*.

        The message is finalised as ``success``, or as ``failed`` before the
        error is re-raised.
        """
        started = time.monotonic()
        messages = self.build_messages(thread_id, user_message, prompt_message_id)
        tools = create_request_tool_registry(
            user_id=user_id,
            thread_id=thread_id,
            memories=self.memories,
            integrations=self.integrations,
            recorder=self.tool_recorder,
        )
        runner = TurnRunner(
            provider=self.provider,
            tools=tools,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            max_iterations=max_iterations,
        )
        pending = PendingMessage(
            self.messages, thread_id, prompt_message_id=prompt_message_id, agent_name=self.agent_name,
        )

        async def _on_event(event: TurnEvent) -> None:
            logger.debug("turn_event", **turn_event_log_fields(event))

        try:
            outcome = await runner.run(messages, on_delta=pending.append, on_event=_on_event, event_source="streaming")
        except Exception as e:
            pending.fail(str(e))
            raise

        final_text = outcome.final_content or ""
        pending.succeed(final_text)
        self.threads.touch(thread_id, user_id)
        self.usage_recorder.record(
            user_id=user_id,
            agent_name=self.agent_name,
            model=self.model,
            usage=outcome.usage,
            thread_id=thread_id,
        )
        result = StreamResult(
            final_text=final_text,
            message_id=pending.id,
            iterations=outcome.iterations,
            tools_called=outcome.tools_used,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        logger.info(
            "streaming_turn_completed",
            iterations=result.iterations,
            tools_called=result.tools_called,
            duration_ms=result.duration_ms,
        )
        return result
