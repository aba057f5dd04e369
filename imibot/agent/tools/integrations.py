"""App integrations tool: search, execute and connect external apps."""

import json
from typing import Any

from imibot.agent.tools.base import Tool, ToolExecutionResult
from imibot.agent.tools.tool_details import OP_APP_INTEGRATIONS, details_with_op
from imibot.tool_router.integrations import AppIntegrations

_ACTION_ALIASES = {
    "search": ("search", "search_tools", "find", "discover"),
    "execute": ("execute", "run", "call", "invoke", "execute_tool"),
    "check_connections": ("check", "check_connections", "status", "connections"),
    "initiate_connection": (
        "initiate_connection", "initiate", "connect", "auth", "authorize", "initiate_auth",
        "initiateconnection",
    ),
}


def normalize_action(value: Any) -> str:
    """Map loose model phrasing onto one of the four actions (``search`` by default)."""
    s = str(value or "").lower().replace("-", "_").replace(" ", "_")
    for action, aliases in _ACTION_ALIASES.items():
        if s in aliases:
            return action
    return "search"


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


class AppIntegrationsTool(Tool):
    """Gateway to the user's connected apps (Gmail, Slack, Notion, Google Docs...)."""

    def __init__(self, integrations: AppIntegrations, user_id: str):
        self._integrations = integrations
        self._user_id = user_id

    @property
    def name(self) -> str:
        return "app_integrations"

    @property
    def description(self) -> str:
        return (
            "Access external apps (Gmail, Slack, Notion, Google Docs, etc.). Multi-step workflow: "
            "1) search for tools, 2) check_connections, 3) execute. "
            "Use initiate_connection to get an authentication link for an app."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "description": "search | execute | check_connections | initiate_connection",
                },
                "task_description": {
                    "type": "string",
                    "description": "For 'search': what you want to do (e.g. 'send email via Gmail')",
                },
                "app_filter": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "For 'search': limit to specific apps (e.g. ['gmail'])",
                },
                "app_name": {"type": "string", "description": "For 'initiate_connection': app to connect"},
                "tool_slug": {
                    "type": "string",
                    "description": "For 'execute': tool identifier from search results (e.g. GMAIL_SEND_EMAIL)",
                },
                "tool_arguments": {"type": "object", "description": "For 'execute': arguments of the tool"},
            },
            "required": ["action"],
        }

    async def execute(self, action: str, **kwargs: Any) -> ToolExecutionResult:
        normalized = normalize_action(action)
        if normalized == "search":
            task = kwargs.get("task_description") or kwargs.get("task") or kwargs.get("description") or ""
            result = await self._integrations.search(
                self._user_id, task, _as_list(kwargs.get("app_filter") or kwargs.get("apps")),
            )
        elif normalized == "execute":
            slug = kwargs.get("tool_slug") or kwargs.get("tool") or ""
            if not slug:
                return ToolExecutionResult(text="Error: tool_slug is required for execute", is_error=True)
            arguments = kwargs.get("tool_arguments") or kwargs.get("arguments") or {}
            result = await self._integrations.execute(self._user_id, slug, dict(arguments))
        elif normalized == "check_connections":
            result = await self._integrations.check_connections(self._user_id)
        else:
            app = kwargs.get("app_name") or kwargs.get("app") or ""
            if not app:
                return ToolExecutionResult(text="Error: app_name is required for initiate_connection", is_error=True)
            result = await self._integrations.initiate_connection(self._user_id, app)

        text = json.dumps(result.to_dict(), ensure_ascii=False, default=str)
        return ToolExecutionResult(
            text=text if result.success else f"Error: {text}",
            details=details_with_op(OP_APP_INTEGRATIONS, action=normalized, success=result.success),
            is_error=not result.success,
        )
