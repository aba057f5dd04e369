from unittest.mock import AsyncMock, patch

import pytest

from imibot.agent.tools.base import ToolExecutionResult
from imibot.agent.turn_runner import TurnRunner, max_iterations_message
from imibot.errors import GenerationError
from imibot.providers.base import LLMResponse, ToolCallRequest


class _FakeTools:
    def __init__(self):
        self.calls = []

    def get_definitions(self):
        return [{"type": "function", "function": {"name": "memory_search"}}]

    async def execute_result(self, name, arguments):
        self.calls.append((name, arguments))
        return ToolExecutionResult(text="1. Alice is vegetarian", details={"op": "memory_search"})


class _ScriptedProvider:
    """Replays one list of stream events per call."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.calls = 0
        self.seen_messages = []

    async def stream_chat(self, messages, **kwargs):
        self.calls += 1
        self.seen_messages.append(list(messages))
        script = self.scripts.pop(0)
        for event in script:
            if isinstance(event, Exception):
                raise event
            yield event


def _text(content, usage=None):
    return [
        {"type": "text_delta", "delta": content[:3]},
        {"type": "text_delta", "delta": content[3:]},
        {"type": "done", "response": LLMResponse(content=content, usage=usage or {})},
    ]


def _tool_call(call_id="call_1", usage=None):
    response = LLMResponse(
        content=None,
        tool_calls=[ToolCallRequest(id=call_id, name="memory_search", arguments={"query": "diet"})],
        usage=usage or {},
    )
    return [{"type": "done", "response": response}]


def _error(message="Error calling LLM: overloaded"):
    return [{"type": "done", "response": LLMResponse(content=message, finish_reason="error")}]


def _runner(provider, tools=None, max_iterations=5):
    return TurnRunner(
        provider=provider,
        tools=tools or _FakeTools(),
        model="test/model",
        temperature=0.1,
        max_tokens=256,
        max_iterations=max_iterations,
    )


@pytest.mark.asyncio
async def test_run_executes_tools_then_streams_final_answer() -> None:
    provider = _ScriptedProvider([
        _tool_call(usage={"prompt_tokens": 10, "completion_tokens": 2}),
        _text("You are vegetarian.", usage={"prompt_tokens": 20, "completion_tokens": 5}),
    ])
    tools = _FakeTools()
    deltas: list[str] = []

    async def on_delta(delta):
        deltas.append(delta)

    outcome = await _runner(provider, tools).run([{"role": "user", "content": "my diet?"}], on_delta=on_delta)

    assert outcome.final_content == "You are vegetarian."
    assert outcome.iterations == 2
    assert outcome.tools_used == ["memory_search"]
    assert outcome.usage == {"prompt_tokens": 30, "completion_tokens": 7}
    assert tools.calls == [("memory_search", {"query": "diet"})]
    assert "".join(deltas) == "You are vegetarian."
    second_call = provider.seen_messages[1]
    assert second_call[1]["tool_calls"][0]["function"] == {"name": "memory_search", "arguments": '{"query": "diet"}'}
    assert second_call[2] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "name": "memory_search",
        "content": "1. Alice is vegetarian",
    }


@pytest.mark.asyncio
async def test_run_emits_ordered_turn_events() -> None:
    provider = _ScriptedProvider([_tool_call(), _text("Done here")])
    events = []

    async def on_event(event):
        events.append(event)

    await _runner(provider).run([{"role": "user", "content": "hi"}], on_event=on_event, event_source="streaming")

    assert [e["type"] for e in events] == ["turn_start", "tool_start", "tool_end", "turn_end"]
    assert [e["sequence"] for e in events] == [1, 2, 3, 4]
    assert len({e["turn_id"] for e in events}) == 1
    assert all(e["source"] == "streaming" for e in events)
    assert events[2]["detail_op"] == "memory_search"
    assert events[-1]["completed"] is True
    assert events[0]["tool_names"] == ["memory_search"]
    assert events[-1]["streamed_chars"] == len("Done here")
    assert "retry_count" not in events[-1]


@pytest.mark.asyncio
async def test_error_before_any_delta_is_retried() -> None:
    provider = _ScriptedProvider([_error(), _text("Recovered")])
    events = []

    async def on_event(event):
        events.append(event)

    with patch("imibot.agent.turn_runner.asyncio.sleep", new=AsyncMock()) as sleep:
        outcome = await _runner(provider).run([{"role": "user", "content": "hi"}], on_event=on_event)

    assert outcome.final_content == "Recovered"
    assert provider.calls == 2
    sleep.assert_awaited_once()
    assert [e["type"] for e in events] == ["turn_start", "stream_retry", "turn_end"]
    assert (events[1]["reason"], events[1]["attempt"]) == ("error_finish", 1)
    assert events[-1]["retry_count"] == 1


@pytest.mark.asyncio
async def test_exception_before_any_delta_is_retried() -> None:
    provider = _ScriptedProvider([[ConnectionError("reset")], _text("Recovered")])

    with patch("imibot.agent.turn_runner.asyncio.sleep", new=AsyncMock()):
        outcome = await _runner(provider).run([{"role": "user", "content": "hi"}])

    assert outcome.final_content == "Recovered"
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_persistent_errors_raise_generation_error() -> None:
    provider = _ScriptedProvider([_error(), _error("Error calling LLM: still down")])

    with patch("imibot.agent.turn_runner.asyncio.sleep", new=AsyncMock()):
        with pytest.raises(GenerationError, match="still down"):
            await _runner(provider).run([{"role": "user", "content": "hi"}])

    assert provider.calls == 2


@pytest.mark.asyncio
async def test_error_after_streamed_text_is_not_retried() -> None:
    provider = _ScriptedProvider([
        [{"type": "text_delta", "delta": "Half an ans"}, ConnectionError("reset")],
        _text("never used"),
    ])

    with pytest.raises(ConnectionError):
        await _runner(provider).run([{"role": "user", "content": "hi"}])

    assert provider.calls == 1


@pytest.mark.asyncio
async def test_stream_without_done_event_fails() -> None:
    provider = _ScriptedProvider([[{"type": "text_delta", "delta": "hello"}]])

    with pytest.raises(GenerationError, match="without a final response"):
        await _runner(provider).run([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_max_iterations_returns_explanatory_message() -> None:
    provider = _ScriptedProvider([_tool_call("c1"), _tool_call("c2")])
    tools = _FakeTools()

    outcome = await _runner(provider, tools, max_iterations=2).run([{"role": "user", "content": "loop"}])

    assert outcome.max_iterations_reached is True
    assert outcome.final_content == max_iterations_message(2)
    assert len(tools.calls) == 2
