"""Tool registry for one agent turn."""

import time
from typing import Any

from imibot.agent.tools.base import Tool, ToolExecutionResult
from imibot.logging import get_logger
from imibot.storage.models import ToolArguments
from imibot.telemetry.recorder import ToolExecutionRecorder

audit_log = get_logger("imibot.audit")

_HINT = "\n\n[Analyze the error above and try a different approach.]"


class ToolRegistry:
    """
    Registry for agent tools.

    Every execution is audit-logged and, when a recorder is attached,
    written to the tool execution log for ``user_id`` / ``thread_id``.
    """

    _TRUNCATE_KEYS = {"query", "task_description", "content"}
    _REDACT_KEYS = {"tool_arguments"}

    def __init__(
        self,
        audit: bool = True,
        recorder: ToolExecutionRecorder | None = None,
        user_id: str = "",
        thread_id: str = "",
    ):
        self._tools: dict[str, Tool] = {}
        self._audit = audit
        self._recorder = recorder
        self._user_id = user_id
        self._thread_id = thread_id

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    def _sanitize_params(self, params: dict) -> dict:
        """Sanitize parameters for audit logging (truncate/redact large values)."""
        sanitized = {}
        for k, v in params.items():
            if k in self._REDACT_KEYS:
                sanitized[k] = f"<{len(str(v))} chars>"
            elif k in self._TRUNCATE_KEYS and isinstance(v, str) and len(v) > 200:
                sanitized[k] = v[:200] + "..."
            else:
                sanitized[k] = v
        return sanitized

    @staticmethod
    def _ensure_result(result: str | ToolExecutionResult) -> ToolExecutionResult:
        if isinstance(result, ToolExecutionResult):
            return result
        return ToolExecutionResult(text=str(result))

    def _record(self, name: str, params: dict[str, Any], t0: float, result: ToolExecutionResult) -> None:
        if self._recorder is None:
            return
        self._recorder.record(
            tool_name=name,
            user_id=self._user_id,
            thread_id=self._thread_id,
            args=ToolArguments(name, dict(params)),
            success=not result.is_error,
            execution_time_ms=(time.monotonic() - t0) * 1000,
            error=result.text[:200] if result.is_error else None,
        )

    async def execute_result(self, name: str, params: dict[str, Any]) -> ToolExecutionResult:
        """Execute a tool and return a structured result. Failures come back as error results."""
        tool = self._tools.get(name)
        if not tool:
            return ToolExecutionResult(
                text=f"Error: Tool '{name}' not found. Available: {', '.join(self.tool_names)}",
                is_error=True,
            )

        if self._audit:
            audit_log.info("tool_call_started", tool=name, params=self._sanitize_params(params))

        t0 = time.monotonic()
        try:
            errors = tool.validate_params(params)
            if errors:
                if self._audit:
                    audit_log.warning("tool_call_failed", tool=name, error="invalid_params")
                result = ToolExecutionResult(
                    text=f"Error: Invalid parameters for tool '{name}': " + "; ".join(errors) + _HINT,
                    is_error=True,
                )
                self._record(name, params, t0, result)
                return result

            result = self._ensure_result(await tool.execute(**params))
            if result.is_error and not result.text.endswith(_HINT):
                result = ToolExecutionResult(text=result.text + _HINT, details=result.details, is_error=True)
            if self._audit:
                audit_log.info(
                    "tool_call_completed",
                    tool=name,
                    duration_ms=round((time.monotonic() - t0) * 1000, 1),
                    result_length=len(result.text),
                    is_error=result.is_error,
                    detail_op=result.details.get("op") if result.details else None,
                )
        except Exception as e:
            if self._audit:
                audit_log.warning(
                    "tool_call_failed",
                    tool=name,
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=round((time.monotonic() - t0) * 1000, 1),
                )
            result = ToolExecutionResult(text=f"Error executing {name}: {str(e)}" + _HINT, is_error=True)
        self._record(name, params, t0, result)
        return result

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
