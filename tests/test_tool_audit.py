"""Tests for ToolRegistry audit logging and execution records."""

from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from imibot.agent.tools.base import Tool, ToolExecutionResult
from imibot.agent.tools.memory import MemorySearchTool
from imibot.agent.tools.registry import ToolRegistry
from imibot.storage.memories import MemoryRecordStore
from imibot.storage.models import MemoryRecord
from imibot.storage.telemetry import ToolLogStore
from imibot.telemetry.recorder import ToolExecutionRecorder


class EchoTool(Tool):
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "echoes input"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
            },
            "required": ["query"],
        }

    async def execute(self, **kwargs: Any) -> str:
        return kwargs["query"]


class FailTool(Tool):
    @property
    def name(self) -> str:
        return "fail"

    @property
    def description(self) -> str:
        return "always fails"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"reason": {"type": "string"}}, "required": ["reason"]}

    async def execute(self, **kwargs: Any) -> str:
        raise RuntimeError("boom")


class ExecuteAppTool(Tool):
    """Tool with opaque arguments for redaction testing."""

    @property
    def name(self) -> str:
        return "app_integrations"

    @property
    def description(self) -> str:
        return "runs an app action"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["search", "execute"]},
                "tool_arguments": {"type": "object"},
            },
            "required": ["action"],
        }

    async def execute(self, **kwargs: Any) -> ToolExecutionResult:
        return ToolExecutionResult(text="done", details={"op": "app_integrations", "action": kwargs["action"]})


class SoftErrorTool(Tool):
    @property
    def name(self) -> str:
        return "soft_error"

    @property
    def description(self) -> str:
        return "reports an error without raising"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> ToolExecutionResult:
        return ToolExecutionResult(text="Error: app not connected", is_error=True)


@pytest.fixture
def registry():
    reg = ToolRegistry(audit=True)
    reg.register(EchoTool())
    reg.register(FailTool())
    reg.register(ExecuteAppTool())
    reg.register(SoftErrorTool())
    return reg


@pytest.mark.asyncio
async def test_audit_logs_on_success(registry):
    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        result = await registry.execute_result("echo", {"query": "hello"})

    assert result.text == "hello"
    assert result.is_error is False
    calls = mock_log.info.call_args_list
    assert len(calls) == 2
    assert calls[0].args[0] == "tool_call_started"
    assert calls[0].kwargs["tool"] == "echo"
    assert calls[1].args[0] == "tool_call_completed"
    assert "duration_ms" in calls[1].kwargs
    assert calls[1].kwargs["result_length"] == 5


@pytest.mark.asyncio
async def test_audit_logs_on_failure(registry):
    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        result = await registry.execute_result("fail", {"reason": "test"})

    assert result.is_error is True
    assert "Error executing fail: boom" in result.text
    assert result.text.endswith("[Analyze the error above and try a different approach.]")
    failed = mock_log.warning.call_args_list
    assert len(failed) == 1
    assert failed[0].args[0] == "tool_call_failed"
    assert failed[0].kwargs["error"] == "boom"


@pytest.mark.asyncio
async def test_invalid_params_return_error_result(registry):
    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        result = await registry.execute_result("echo", {})

    assert result.is_error is True
    assert "Invalid parameters" in result.text
    assert "missing required query" in result.text
    assert mock_log.warning.call_args_list[0].kwargs["error"] == "invalid_params"


@pytest.mark.asyncio
async def test_enum_violation_is_reported(registry):
    result = await registry.execute_result("app_integrations", {"action": "delete"})
    assert result.is_error is True
    assert "action must be one of ['search', 'execute']" in result.text


@pytest.mark.asyncio
async def test_unknown_tool_lists_available_tools(registry):
    result = await registry.execute_result("web_fetch", {})
    assert result.is_error is True
    assert "Tool 'web_fetch' not found" in result.text
    assert "memory_search" not in result.text
    assert "echo" in result.text


@pytest.mark.asyncio
async def test_soft_error_gets_retry_hint_once(registry):
    result = await registry.execute_result("soft_error", {})
    assert result.is_error is True
    assert result.text.count("[Analyze the error above") == 1


@pytest.mark.asyncio
async def test_no_audit_when_disabled():
    reg = ToolRegistry(audit=False)
    reg.register(EchoTool())
    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        await reg.execute_result("echo", {"query": "hi"})

    mock_log.info.assert_not_called()
    mock_log.warning.assert_not_called()


@pytest.mark.asyncio
async def test_sanitize_redacts_tool_arguments(registry):
    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        await registry.execute_result(
            "app_integrations", {"action": "execute", "tool_arguments": {"to": "bob@example.com"}},
        )

    params = mock_log.info.call_args_list[0].kwargs["params"]
    assert params["action"] == "execute"
    assert params["tool_arguments"] == f"<{len(str({'to': 'bob@example.com'}))} chars>"
    completed = mock_log.info.call_args_list[1]
    assert completed.kwargs["detail_op"] == "app_integrations"


@pytest.mark.asyncio
async def test_sanitize_truncates_long_query(registry):
    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        await registry.execute_result("echo", {"query": "a" * 300})

    params = mock_log.info.call_args_list[0].kwargs["params"]
    assert params["query"] == "a" * 200 + "..."


@pytest.mark.asyncio
async def test_executions_are_recorded_per_user_and_thread(tmp_path: Path):
    logs = ToolLogStore(tmp_path)
    reg = ToolRegistry(audit=False, recorder=ToolExecutionRecorder(logs), user_id="alice", thread_id="t1")
    reg.register(EchoTool())
    reg.register(FailTool())

    await reg.execute_result("echo", {"query": "diet"})
    await reg.execute_result("fail", {"reason": "x"})

    records = logs.list_by_user("alice")
    assert [r.tool_name for r in records] == ["echo", "fail"]
    assert records[0].success is True
    assert records[0].thread_id == "t1"
    assert records[0].args.arguments == {"query": "diet"}
    assert records[1].success is False
    assert records[1].error.startswith("Error executing fail")


@pytest.mark.asyncio
async def test_memory_search_tool_detail_op(tmp_path: Path):
    memories = MemoryRecordStore(tmp_path)
    memories.add(MemoryRecord(user_id="alice", thread_id="t0", facts=["Alice follows a vegetarian diet"]))
    reg = ToolRegistry(audit=True)
    reg.register(MemorySearchTool(memories, "alice"))

    with patch("imibot.agent.tools.registry.audit_log") as mock_log:
        result = await reg.execute_result("memory_search", {"query": "vegetarian diet"})

    assert result.is_error is False
    assert '"found": true' in result.text
    completed = [c for c in mock_log.info.call_args_list if c.args[0] == "tool_call_completed"]
    assert completed[0].kwargs["detail_op"] == "memory_search"


def test_sanitize_params_unit():
    reg = ToolRegistry(audit=True)
    result = reg._sanitize_params({
        "tool_arguments": "x" * 500,
        "content": "y" * 300,
        "task_description": "short",
        "other": 42,
    })
    assert result["tool_arguments"] == "<500 chars>"
    assert result["content"] == "y" * 200 + "..."
    assert result["task_description"] == "short"
    assert result["other"] == 42


def test_definitions_use_openai_function_schema(registry):
    names = [d["function"]["name"] for d in registry.get_definitions()]
    assert names == ["echo", "fail", "app_integrations", "soft_error"]
    assert "echo" in registry
    assert len(registry) == 4
