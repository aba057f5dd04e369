import asyncio
import json
import re
from pathlib import Path

import pytest

from imibot.errors import GenerationError, WorkflowStepError
from imibot.providers.base import LLMResponse
from imibot.storage.workspace import Stores
from imibot.telemetry.recorder import ToolExecutionRecorder, UsageRecorder
from imibot.tool_router.client import MULTI_EXECUTE, ToolCallOutcome
from imibot.tool_router.integrations import IntegrationResult
from imibot.tool_router.sessions import ToolSessionManager
from imibot.workflow import steps
from imibot.workflow.orchestration import GenerationWorkflow
from imibot.workflow.steps import Plan, StepBudget, ToolResults, detect_dependencies, response_prompt

_TOOL = re.compile(r"TOOL: (\S+)")


class _Provider:
    """Answers argument prompts with JSON, everything else with fixed text."""

    def __init__(self, summary="Found 2 unread emails from Bob.", reply="You have 2 emails from Bob.", fail_chat=False):
        self.summary = summary
        self.reply = reply
        self.fail_chat = fail_chat
        self.prompts: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        if self.fail_chat:
            return LLMResponse(content="Error calling LLM: boom", finish_reason="error")
        match = _TOOL.search(prompt)
        if match is None:
            return LLMResponse(content=self.summary, usage={"prompt_tokens": 10, "completion_tokens": 5})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return LLMResponse(content=json.dumps({"arguments": {"for": match.group(1)}}))

    async def stream_chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.prompts.append(messages[-1]["content"])
        half = len(self.reply) // 2
        yield {"type": "text_delta", "delta": self.reply[:half]}
        yield {"type": "text_delta", "delta": self.reply[half:]}
        yield {"type": "done", "response": LLMResponse(content=self.reply, usage={"total_tokens": 7})}

    def get_default_model(self):
        return "test/model"


class _Integrations:
    def __init__(self, tools=None, connected=None, fail_check=False):
        self.tools = tools or []
        self.connected = connected or []
        self.fail_check = fail_check
        self.calls: list[str] = []

    async def check_connections(self, user_id):
        self.calls.append("check_connections")
        if self.fail_check:
            raise RuntimeError("provider unreachable")
        return IntegrationResult(True, "ok", {"connected_apps": self.connected})

    async def search(self, user_id, task_description, app_filter=()):
        self.calls.append("search")
        return IntegrationResult(True, "ok", {"results": {}, "tools": self.tools})

    async def initiate_connection(self, user_id, app_name):
        self.calls.append(f"initiate_connection:{app_name}")
        return IntegrationResult(True, f"Connect {app_name}", {"connection_url": f"https://auth/{app_name}"})


class _Client:
    def __init__(self, executed):
        self.executed = executed

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def execute_tools(self, tools, thought="Agent execution"):
        stage = len(self.executed) + 1
        self.executed.append([t.tool_slug for t in tools])
        data = {"stage": stage, "ids": [f"id-{stage}"]}
        return ToolCallOutcome(text=json.dumps(data), data=data)


def _workflow(tmp_path: Path, provider, integrations, executed=None):
    stores = Stores.open(tmp_path)
    sessions = ToolSessionManager(stores.tool_sessions)
    sessions.create_or_refresh("alice", "s1", "https://mcp/s1", ["gmail"])
    executed = executed if executed is not None else []
    workflow = GenerationWorkflow(
        provider=provider,
        model="test/model",
        integrations=integrations,
        sessions=sessions,
        messages=stores.messages,
        tool_recorder=ToolExecutionRecorder(stores.tool_logs),
        usage_recorder=UsageRecorder(stores.usage),
        client_factory=lambda url: _Client(executed),
    )
    return workflow, stores


def test_detect_dependencies_assigns_each_tool_once() -> None:
    tools = [
        {"tool_slug": "GMAIL_SEND_EMAIL"},
        {"tool_slug": "GOOGLEDOCS_GET_DOCUMENT_BY_ID"},
        {"tool_slug": "NOTION_SEARCH_PAGES"},
        {"tool_slug": "GMAIL_FETCH_EMAILS"},
        {"tool_slug": "SLACK_POST_MESSAGE"},
    ]

    stages = detect_dependencies(tools)

    assert [[t["tool_slug"] for t in s] for s in stages] == [
        ["NOTION_SEARCH_PAGES", "GMAIL_FETCH_EMAILS"],
        ["GOOGLEDOCS_GET_DOCUMENT_BY_ID"],
        ["GMAIL_SEND_EMAIL", "SLACK_POST_MESSAGE"],
    ]
    assert sum(len(s) for s in stages) == len(tools)


def test_detect_dependencies_drops_empty_stages() -> None:
    stages = detect_dependencies([{"tool_slug": "SLACK_POST_MESSAGE"}])
    assert stages == [[{"tool_slug": "SLACK_POST_MESSAGE"}]]


@pytest.mark.asyncio
async def test_simple_request_runs_all_four_steps(tmp_path: Path) -> None:
    provider = _Provider(summary="The user wants a haiku.", reply="Autumn moon rises")
    integrations = _Integrations()
    workflow, stores = _workflow(tmp_path, provider, integrations)

    result = await workflow.execute("t1", "alice", "write me a haiku", "msg-1")

    assert result == {"success": True}
    assert integrations.calls == []
    reply = stores.messages.list("t1")[-1]
    assert reply.role == "assistant"
    assert reply.status == "success"
    assert reply.content == "Autumn moon rises"
    assert reply.prompt_message_id == "msg-1"
    agents = [u.agent_name for u in stores.usage.list_by_user("alice")]
    assert agents == ["workflow.summarize_results", "Imi"]


@pytest.mark.asyncio
async def test_app_request_executes_stages_in_order_with_concurrent_arguments(tmp_path: Path) -> None:
    provider = _Provider()
    integrations = _Integrations(
        tools=[
            {"tool_slug": "GMAIL_LIST_THREADS", "input_schema": {"type": "object"}},
            {"tool_slug": "GMAIL_SEARCH_PEOPLE"},
            {"tool_slug": "GMAIL_SEND_EMAIL"},
        ],
        connected=["gmail"],
    )
    executed: list = []
    workflow, stores = _workflow(tmp_path, provider, integrations, executed)

    await workflow.execute("t1", "alice", "reply to Bob's latest email", "msg-1")

    assert integrations.calls == ["check_connections", "search"]
    assert executed == [["GMAIL_LIST_THREADS", "GMAIL_SEARCH_PEOPLE"], ["GMAIL_SEND_EMAIL"]]
    assert provider.max_in_flight == 2
    send_prompt = next(p for p in provider.prompts if "TOOL: GMAIL_SEND_EMAIL" in p)
    assert '"id-1"' in send_prompt
    logs = stores.tool_logs.list_by_user("alice")
    assert [r.tool_name for r in logs] == [MULTI_EXECUTE, MULTI_EXECUTE]
    assert logs[0].args.arguments["tools"][0] == {
        "tool_slug": "GMAIL_LIST_THREADS",
        "arguments": {"for": "GMAIL_LIST_THREADS"},
    }
    summary_prompt = next(p for p in provider.prompts if p.startswith("User asked:"))
    assert '"stage_2"' in summary_prompt


@pytest.mark.asyncio
async def test_failing_step_aborts_the_workflow(tmp_path: Path) -> None:
    provider = _Provider()
    integrations = _Integrations(fail_check=True)
    workflow, stores = _workflow(tmp_path, provider, integrations)

    with pytest.raises(RuntimeError, match="provider unreachable"):
        await workflow.execute("t1", "alice", "check my email", "msg-1")

    assert integrations.calls == ["check_connections"]
    assert provider.prompts == []
    assert stores.messages.list("t1") == []


@pytest.mark.asyncio
async def test_missing_app_connection_produces_auth_link(tmp_path: Path) -> None:
    provider = _Provider(reply="Connect Notion here: https://auth/notion")
    integrations = _Integrations(tools=[], connected=["gmail"])
    workflow, stores = _workflow(tmp_path, provider, integrations)

    await workflow.execute("t1", "alice", "add this to my notion", "msg-1")

    assert integrations.calls == ["check_connections", "search", "initiate_connection:notion"]
    assert "Include this authentication link exactly: https://auth/notion" in provider.prompts[-1]
    assert stores.messages.list("t1")[-1].content == "Connect Notion here: https://auth/notion"


@pytest.mark.asyncio
async def test_connected_app_without_tools_is_an_error_plan(tmp_path: Path) -> None:
    workflow, _ = _workflow(tmp_path, _Provider(), _Integrations(tools=[], connected=["gmail"]))
    ctx = workflow.step_context("t1", "alice")

    plan = await steps.create_plan(ctx, StepBudget(1000), "summarize my gmail")
    results = await steps.execute_tools(ctx, StepBudget(1000), plan)
    summary = await steps.summarize_results(ctx, StepBudget(1000), results, "summarize my gmail")

    assert plan.type == "error"
    assert results.type == "error"
    assert summary.has_error is True
    assert response_prompt(summary).startswith("Something went wrong:")


@pytest.mark.asyncio
async def test_execute_without_session_becomes_error_result(tmp_path: Path) -> None:
    workflow, _ = _workflow(tmp_path, _Provider(), _Integrations())
    ctx = workflow.step_context("t1", "bob")
    plan = Plan(type="app_integration", use_case="email", tools=[{"tool_slug": "GMAIL_SEND_EMAIL"}])

    results = await steps.execute_tools(ctx, StepBudget(1000), plan)

    assert results.type == "error"
    assert "No tool session found" in results.error


@pytest.mark.asyncio
async def test_summary_falls_back_to_raw_results(tmp_path: Path) -> None:
    workflow, _ = _workflow(tmp_path, _Provider(fail_chat=True), _Integrations())
    ctx = workflow.step_context("t1", "alice")
    results = ToolResults(type="app_integration", data={"stage_1": {"emails": ["x" * 300]}})

    summary = await steps.summarize_results(ctx, StepBudget(1000), results, "check email")

    assert summary.summary.startswith('Task completed. Raw results: {"stage_1"')
    assert summary.summary.endswith("...")
    assert summary.has_error is False


@pytest.mark.asyncio
async def test_failed_stream_marks_reply_failed(tmp_path: Path) -> None:
    class _BrokenStream(_Provider):
        async def stream_chat(self, messages, **kwargs):
            yield {"type": "text_delta", "delta": "partial"}
            yield {"type": "done", "response": LLMResponse(content="Error calling LLM: reset", finish_reason="error")}

    workflow, stores = _workflow(tmp_path, _BrokenStream(), _Integrations())

    with pytest.raises(GenerationError):
        await workflow.execute("t1", "alice", "write me a haiku", "msg-1")

    reply = stores.messages.list("t1")[-1]
    assert reply.status == "failed"
    assert reply.content == "partial"
    assert reply.error == "Error calling LLM: reset"


@pytest.mark.asyncio
async def test_steps_need_a_provider(tmp_path: Path) -> None:
    workflow, _ = _workflow(tmp_path, None, _Integrations())

    with pytest.raises(WorkflowStepError) as exc_info:
        await steps.generate_response(
            workflow.step_context("t1", "alice"), StepBudget(1000), steps.Summary("s", "r"), "msg-1",
        )

    assert exc_info.value.step == "generate_response"


@pytest.mark.asyncio
async def test_stream_response_requires_streaming_agent(tmp_path: Path) -> None:
    workflow, _ = _workflow(tmp_path, _Provider(), _Integrations())

    with pytest.raises(GenerationError):
        await workflow.stream_response("t1", "alice", "hi", "msg-1")
