from pathlib import Path

import pytest

from imibot.agent.factory import build_router, build_services
from imibot.agent.router import AgentRouter
from imibot.config.schema import Config, RouterConfig
from imibot.errors import (
    AllRoutesFailedError,
    ContextFetchError,
    NoRouteConfiguredError,
    PrimaryGenerationError,
    SecondaryGenerationError,
)
from imibot.providers.base import LLMResponse
from imibot.storage.models import MemoryRecord, ThreadMessage


class _Context:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def provide_context(self, thread_id, user_id, user_message, message_id):
        self.calls += 1
        if self.fail:
            raise ContextFetchError("memory store unavailable")
        return type("Result", (), {"search_path": "fast", "memories_found": 0, "latency_ms": 1.0})()


class _Workflow:
    def __init__(self, primary_error=None, secondary_error=None):
        self.primary_error = primary_error
        self.secondary_error = secondary_error
        self.primary_calls = 0
        self.secondary_calls = 0

    async def stream_response(self, thread_id, user_id, user_message, prompt_message_id, max_iterations=10):
        self.primary_calls += 1
        if self.primary_error:
            raise self.primary_error

    async def execute(self, thread_id, user_id, user_message, prompt_message_id):
        self.secondary_calls += 1
        if self.secondary_error:
            raise self.secondary_error
        return {"success": True}


def _router(context=None, workflow=None, primary=True, secondary=False):
    return AgentRouter(
        context=context or _Context(),
        workflow=workflow or _Workflow(),
        config=RouterConfig(primary_generation_enabled=primary, secondary_generation_enabled=secondary),
    )


@pytest.mark.asyncio
async def test_primary_success_routes_streaming() -> None:
    workflow = _Workflow()
    router = _router(workflow=workflow)

    result = await router.route("t1", "msg-1", "alice", "hello")

    assert result.to_dict() == {"routed": "streaming"}
    assert result.trace == ["START", "CONTEXT_FETCH", "PRIMARY_ATTEMPT", "DONE"]
    assert (workflow.primary_calls, workflow.secondary_calls) == (1, 0)


@pytest.mark.asyncio
async def test_both_paths_disabled_fails_before_any_work() -> None:
    context, workflow = _Context(), _Workflow()
    router = _router(context, workflow, primary=False, secondary=False)

    with pytest.raises(NoRouteConfiguredError, match="PRIMARY_GENERATION_ENABLED"):
        await router.route("t1", "msg-1", "alice", "hello")

    assert context.calls == 0
    assert (workflow.primary_calls, workflow.secondary_calls) == (0, 0)


@pytest.mark.asyncio
async def test_context_failure_does_not_block_generation() -> None:
    context = _Context(fail=True)
    router = _router(context=context)

    result = await router.route("t1", "msg-1", "alice", "hello")

    assert context.calls == 1
    assert result.routed == "streaming"


@pytest.mark.asyncio
async def test_primary_failure_falls_back_to_secondary() -> None:
    workflow = _Workflow(primary_error=RuntimeError("stream broke"))
    router = _router(workflow=workflow, secondary=True)

    result = await router.route("t1", "msg-1", "alice", "hello")

    assert result.routed == "claude"
    assert result.trace == ["START", "CONTEXT_FETCH", "PRIMARY_ATTEMPT", "SECONDARY_ATTEMPT", "DONE"]
    assert (workflow.primary_calls, workflow.secondary_calls) == (1, 1)


@pytest.mark.asyncio
async def test_secondary_only_skips_primary() -> None:
    workflow = _Workflow()
    router = _router(workflow=workflow, primary=False, secondary=True)

    result = await router.route("t1", "msg-1", "alice", "hello")

    assert result.routed == "claude"
    assert workflow.primary_calls == 0


@pytest.mark.asyncio
async def test_secondary_failure_is_terminal() -> None:
    cause = RuntimeError("plan failed")
    workflow = _Workflow(primary_error=RuntimeError("stream broke"), secondary_error=cause)
    router = _router(workflow=workflow, secondary=True)

    with pytest.raises(SecondaryGenerationError, match="All routing paths failed") as exc_info:
        await router.route("t1", "msg-1", "alice", "hello")

    assert exc_info.value.__cause__ is cause
    assert (workflow.primary_calls, workflow.secondary_calls) == (1, 1)


@pytest.mark.asyncio
async def test_primary_failure_without_fallback_fails_all_routes() -> None:
    workflow = _Workflow(primary_error=RuntimeError("stream broke"))
    router = _router(workflow=workflow)

    with pytest.raises(AllRoutesFailedError) as exc_info:
        await router.route("t1", "msg-1", "alice", "hello")

    assert isinstance(exc_info.value, SecondaryGenerationError)
    assert isinstance(exc_info.value.__cause__, PrimaryGenerationError)
    assert workflow.secondary_calls == 0


def test_router_toggles_read_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("PRIMARY_GENERATION_ENABLED", "false")
    monkeypatch.setenv("SECONDARY_GENERATION_ENABLED", "true")

    config = RouterConfig()

    assert config.primary_generation_enabled is False
    assert config.secondary_generation_enabled is True


def test_router_toggle_defaults(monkeypatch) -> None:
    monkeypatch.delenv("PRIMARY_GENERATION_ENABLED", raising=False)
    monkeypatch.delenv("SECONDARY_GENERATION_ENABLED", raising=False)

    config = RouterConfig()

    assert config.primary_generation_enabled is True
    assert config.secondary_generation_enabled is False
    assert config.primary_max_iterations == 10


class _AssistantProvider:
    """Rewrites recall questions and streams a short answer."""

    def __init__(self):
        self.stream_requests = []

    async def chat(self, **kwargs):
        return LLMResponse(content='{"variations": ["vegetarian diet"], "strategy": "expansion"}')

    async def stream_chat(self, messages, **kwargs):
        self.stream_requests.append(list(messages))
        yield {"type": "text_delta", "delta": "You told me you follow "}
        yield {"type": "text_delta", "delta": "a vegetarian diet."}
        yield {
            "type": "done",
            "response": LLMResponse(
                content="You told me you follow a vegetarian diet.",
                usage={"prompt_tokens": 50, "completion_tokens": 9},
            ),
        }

    def get_default_model(self):
        return "test/model"


@pytest.mark.asyncio
async def test_recall_question_is_answered_from_memory(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("PRIMARY_GENERATION_ENABLED", raising=False)
    monkeypatch.delenv("SECONDARY_GENERATION_ENABLED", raising=False)
    monkeypatch.delenv("COMPOSIO_API_KEY", raising=False)
    provider = _AssistantProvider()
    services = build_services(Config(), tmp_path, provider=provider)
    stores = services.stores
    stores.memories.add(MemoryRecord(user_id="alice", thread_id="t0", facts=["Alice follows a vegetarian diet"]))
    question = "Remember what I told you about my diet?"
    stores.messages.add(ThreadMessage(thread_id="t1", role="user", content=question, id="msg-1"))

    result = await services.router.route("t1", "msg-1", "alice", question)

    assert result.to_dict() == {"routed": "streaming"}
    system_prompt = provider.stream_requests[0][0]["content"]
    assert "Alice follows a vegetarian diet" in system_prompt
    reply = stores.messages.list("t1")[-1]
    assert (reply.role, reply.status) == ("assistant", "success")
    assert reply.content == "You told me you follow a vegetarian diet."
    assert [u.agent_name for u in stores.usage.list_by_user("alice")] == ["Imi"]


def test_build_router_wires_configured_toggles(tmp_path: Path) -> None:
    config = Config(router=RouterConfig(primary_generation_enabled=False, secondary_generation_enabled=True))

    router = build_router(config, tmp_path, provider=_AssistantProvider())

    assert isinstance(router, AgentRouter)
    assert router.config.secondary_generation_enabled is True
    assert router.workflow.streaming_agent is not None
    assert (tmp_path / "data" / "threads").is_dir()
