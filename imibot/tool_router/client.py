"""MCP client for a user's tool-router session URL."""

from __future__ import annotations

import json
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from imibot.logging import get_logger
from imibot.storage.models import ToolArguments

logger = get_logger(__name__)

SEARCH_TOOLS = "COMPOSIO_SEARCH_TOOLS"
MULTI_EXECUTE = "COMPOSIO_MULTI_EXECUTE_TOOL"
MANAGE_CONNECTIONS = "COMPOSIO_MANAGE_CONNECTIONS"


@dataclass
class ToolCallOutcome:
    """First content block of an MCP tool result, JSON-decoded when possible."""

    text: str
    data: Any = None
    is_error: bool = False


def _parse_result(result: Any) -> ToolCallOutcome:
    blocks = getattr(result, "content", None) or []
    text = ""
    if blocks:
        text = getattr(blocks[0], "text", None) or ""
    data: Any = None
    if text:
        try:
            data = json.loads(text)
        except ValueError:
            data = None
    return ToolCallOutcome(text=text, data=data, is_error=bool(getattr(result, "isError", False)))


class ToolRouterClient:
    """Thin wrapper over an MCP ``ClientSession`` speaking streamable HTTP.

    Use as an async context manager, or call :meth:`connect` and
    :meth:`disconnect` explicitly. Calls connect lazily.
    """

    def __init__(self, session_url: str) -> None:
        self.session_url = session_url
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        if self._session is not None:
            return
        stack = AsyncExitStack()
        try:
            read, write, _ = await stack.enter_async_context(streamablehttp_client(self.session_url))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        logger.debug("tool_router_connected")

    async def disconnect(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()

    async def __aenter__(self) -> ToolRouterClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    async def call(self, name: str, arguments: dict[str, Any]) -> ToolCallOutcome:
        await self.connect()
        assert self._session is not None
        result = await self._session.call_tool(name, arguments)
        outcome = _parse_result(result)
        if outcome.is_error:
            logger.warning("tool_router_call_error", tool=name, preview=outcome.text[:200])
        return outcome

    async def search_tools(self, use_case: str, toolkits: Sequence[str] = ()) -> ToolCallOutcome:
        return await self.call(SEARCH_TOOLS, {
            "use_case": use_case,
            "exploratory_query": False,
            "known_fields": ",".join(toolkits),
            "session": {"generate_id": False},
        })

    async def execute_tools(self, tools: Sequence[ToolArguments], thought: str = "Agent execution") -> ToolCallOutcome:
        return await self.call(MULTI_EXECUTE, {
            "tools": [t.to_dict() for t in tools],
            "sync_response_to_workbench": False,
            "thought": thought,
            "memory": {},
        })

    async def manage_connections(self, toolkits: Sequence[str]) -> ToolCallOutcome:
        return await self.call(MANAGE_CONNECTIONS, {
            "toolkits": list(toolkits),
            "reinitiate_all": False,
        })


ToolRouterClientFactory = Callable[[str], ToolRouterClient]
