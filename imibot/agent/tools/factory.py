"""Helpers for creating the per-request agent tool set."""

from __future__ import annotations

from imibot.agent.tools.integrations import AppIntegrationsTool
from imibot.agent.tools.memory import MemorySearchTool
from imibot.agent.tools.registry import ToolRegistry
from imibot.storage.memories import MemoryRecordStore
from imibot.telemetry.recorder import ToolExecutionRecorder
from imibot.tool_router.integrations import AppIntegrations


def create_request_tool_registry(
    *,
    user_id: str,
    thread_id: str,
    memories: MemoryRecordStore,
    integrations: AppIntegrations | None = None,
    recorder: ToolExecutionRecorder | None = None,
    audit_tool_calls: bool = True,
) -> ToolRegistry:
    """Tools bound to one user and thread; ``app_integrations`` only when a service is configured."""
    registry = ToolRegistry(audit=audit_tool_calls, recorder=recorder, user_id=user_id, thread_id=thread_id)
    registry.register(MemorySearchTool(memories, user_id))
    if integrations is not None:
        registry.register(AppIntegrationsTool(integrations, user_id))
    return registry
