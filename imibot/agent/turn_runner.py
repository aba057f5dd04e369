"""Core turn runner for streamed LLM + tool iteration."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from imibot.agent.turn_events import TurnEventCallback, TurnEventEmitter
from imibot.errors import GenerationError
from imibot.logging import get_logger
from imibot.providers.base import LLMResponse

logger = get_logger(__name__)

_CHAT_RETRY_MAX_ATTEMPTS = 2
_CHAT_RETRY_BASE_DELAY_S = 0.2

DeltaCallback = Callable[[str], Awaitable[None]]


@dataclass
class TurnOutcome:
    final_content: str | None
    tools_used: list[str] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    iterations: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    max_iterations_reached: bool = False


def max_iterations_message(max_iterations: int) -> str:
    return (
        f"I reached the maximum number of tool call iterations ({max_iterations}) "
        "without completing the task. You can try breaking the task into smaller steps."
    )


class TurnRunner:
    """Run a single agent turn including iterative tool calls.

    Every model call is streamed; text deltas go to ``on_delta`` as they
    arrive. A call is retried only while nothing has been streamed from it.
    """

    def __init__(
        self,
        *,
        provider: Any,
        tools: Any,
        model: str,
        temperature: float,
        max_tokens: int,
        max_iterations: int,
    ) -> None:
        self.provider = provider
        self.tools = tools
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_iterations = max_iterations

    async def _stream_once(
        self,
        messages: list[dict[str, Any]],
        on_delta: DeltaCallback | None,
        streamed: list[str],
    ) -> LLMResponse | None:
        response: LLMResponse | None = None
        async for event in self.provider.stream_chat(
            messages=messages,
            tools=self.tools.get_definitions() or None,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        ):
            if event.get("type") == "text_delta":
                delta = event.get("delta") or ""
                streamed.append(delta)
                if on_delta and delta:
                    await on_delta(delta)
            elif event.get("type") == "done":
                response = event.get("response")
        return response

    async def _stream_with_retries(
        self,
        messages: list[dict[str, Any]],
        on_delta: DeltaCallback | None,
        events: TurnEventEmitter,
        iteration: int,
    ) -> tuple[LLMResponse, int, int]:
        """Stream one model call with bounded retries. Returns (response, retry_count, streamed_chars)."""
        attempt = 0
        while True:
            attempt += 1
            streamed: list[str] = []
            try:
                response = await self._stream_once(messages, on_delta, streamed)
            except Exception as e:
                if streamed or attempt >= _CHAT_RETRY_MAX_ATTEMPTS:
                    raise
                delay = _CHAT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
                logger.warning(
                    "llm_chat_retry",
                    attempt=attempt,
                    delay_s=delay,
                    error_type=type(e).__name__,
                    reason="exception",
                )
                await events.emit("stream_retry", iteration=iteration, attempt=attempt, reason="exception", delay_s=delay)
                await asyncio.sleep(delay)
                continue

            if response is None:
                raise GenerationError("stream ended without a final response")
            if response.is_error:
                if not streamed and attempt < _CHAT_RETRY_MAX_ATTEMPTS:
                    delay = _CHAT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
                    logger.warning("llm_chat_retry", attempt=attempt, delay_s=delay, reason="finish_reason_error")
                    await events.emit(
                        "stream_retry", iteration=iteration, attempt=attempt, reason="error_finish", delay_s=delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise GenerationError(response.content or "LLM returned an error")
            text = "".join(streamed)
            if response.content is None and text:
                response.content = text
            return response, attempt - 1, len(text)

    async def run(
        self,
        initial_messages: list[dict[str, Any]],
        on_delta: DeltaCallback | None = None,
        on_event: TurnEventCallback | None = None,
        event_source: str = "turn_runner",
    ) -> TurnOutcome:
        """Run the iterative turn loop.

        Raises:
            GenerationError: when a model call fails after retries.
        """
        messages = list(initial_messages)
        outcome = TurnOutcome(final_content=None, messages=messages)
        retries = 0
        streamed_chars = 0
        events = TurnEventEmitter(on_event, event_source)

        await events.emit(
            "turn_start",
            message_count=len(initial_messages),
            max_iterations=self.max_iterations,
            tool_names=[d["function"]["name"] for d in self.tools.get_definitions() or []],
        )

        while outcome.iterations < self.max_iterations:
            outcome.iterations += 1
            iteration = outcome.iterations

            response, call_retries, call_chars = await self._stream_with_retries(messages, on_delta, events, iteration)
            retries += call_retries
            streamed_chars += call_chars
            for key, value in (response.usage or {}).items():
                outcome.usage[key] = outcome.usage.get(key, 0) + int(value or 0)

            if not response.has_tool_calls:
                messages.append({"role": "assistant", "content": response.content or ""})
                outcome.final_content = response.content or ""
                break

            messages.append({
                "role": "assistant",
                "content": response.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments, ensure_ascii=False)},
                    }
                    for tc in response.tool_calls
                ],
            })
            for tool_call in response.tool_calls:
                outcome.tools_used.append(tool_call.name)
                logger.info("tool_call", tool=tool_call.name, args=json.dumps(tool_call.arguments, ensure_ascii=False)[:200])
                await events.emit(
                    "tool_start",
                    iteration=iteration,
                    tool=tool_call.name,
                    tool_call_id=tool_call.id,
                    arguments=tool_call.arguments,
                )
                result = await self.tools.execute_result(tool_call.name, tool_call.arguments)
                await events.emit(
                    "tool_end",
                    iteration=iteration,
                    tool=tool_call.name,
                    tool_call_id=tool_call.id,
                    is_error=result.is_error,
                    detail_op=result.details.get("op") if result.details else None,
                )
                messages.append({
                    "role": "tool",
                    "tool_call_id": tool_call.id,
                    "name": tool_call.name,
                    "content": result.text,
                })

        if outcome.final_content is None:
            logger.warning("max_iterations_reached", max_iterations=self.max_iterations)
            outcome.final_content = max_iterations_message(self.max_iterations)
            outcome.max_iterations_reached = True

        end_fields: dict[str, Any] = {
            "iterations": outcome.iterations,
            "tool_count": len(outcome.tools_used),
            "completed": not outcome.max_iterations_reached,
            "streamed_chars": streamed_chars,
            "usage": dict(outcome.usage),
        }
        if retries:
            end_fields["retry_count"] = retries
        await events.emit("turn_end", **end_fields)
        return outcome
