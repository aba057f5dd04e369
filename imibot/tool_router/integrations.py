"""App integrations over a user's tool session.

One service backs both the agent-facing ``app_integrations`` tool and the
workflow's plan/execute steps: it resolves (or lazily opens) the user's
session, keeps its connected toolkits in sync with the connection provider,
and exposes search, execute, connection check and connection initiation.
Every operation returns an :class:`IntegrationResult` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from imibot.errors import ConnectionProviderError, ImibotError
from imibot.logging import get_logger
from imibot.storage.models import ToolArguments, ToolSession
from imibot.tool_router.client import ToolRouterClient, ToolRouterClientFactory
from imibot.tool_router.connections import (
    STALE_STATUS,
    ConnectionProviderClient,
    _parse_timestamp_ms,
    active_toolkits,
)
from imibot.tool_router.sessions import ToolSessionManager
from imibot.utils.helpers import now_ms

logger = get_logger(__name__)

DEFAULT_TOOLKITS = ("googledocs", "gmail", "notion", "slack")
_SYNC_INTERVAL_MS = 60_000
_REUSE_INITIATED_MS = 10 * 60_000


@dataclass
class IntegrationResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}


def extract_tools(search_data: Any) -> list[dict[str, Any]]:
    """Tool descriptors from a search response, whichever envelope it uses."""
    if isinstance(search_data, list):
        candidates: Any = search_data
    elif isinstance(search_data, dict):
        inner = search_data.get("data") if isinstance(search_data.get("data"), dict) else {}
        candidates = inner.get("main_tools") or search_data.get("tools") or inner.get("tools") or []
    else:
        candidates = []
    return [t for t in candidates if isinstance(t, dict) and t.get("tool_slug")]


def _redirect_url(data: Any, toolkit: str) -> str | None:
    if not isinstance(data, dict):
        return None
    results = (data.get("data") or {}).get("results") if isinstance(data.get("data"), dict) else None
    if isinstance(results, dict):
        entry = results.get(toolkit)
        if isinstance(entry, dict) and entry.get("redirect_url"):
            return str(entry["redirect_url"])
    for key in ("authUrl", "redirectUrl", "redirect_url", "url"):
        if data.get(key):
            return str(data[key])
    return None


class AppIntegrations:
    def __init__(
        self,
        sessions: ToolSessionManager,
        connections: ConnectionProviderClient | None = None,
        client_factory: ToolRouterClientFactory = ToolRouterClient,
        default_toolkits: Sequence[str] = DEFAULT_TOOLKITS,
        callback_url: str | None = None,
    ) -> None:
        self.sessions = sessions
        self.connections = connections
        self.client_factory = client_factory
        self.default_toolkits = list(default_toolkits)
        self.callback_url = callback_url

    async def ensure_session(self, user_id: str) -> ToolSession:
        """Existing, unexpired session of *user_id*, or a freshly opened one."""
        session = self.sessions.get_by_user(user_id)
        if session is not None and (self.connections is None or not self.sessions.is_expired(session)):
            return session
        if self.connections is None:
            raise ConnectionProviderError("no tool session and no connection provider to open one")
        logger.info("tool_session_opening", user_id=user_id, expired=session is not None)
        opened = await self.connections.create_tool_router_session(
            user_id, self.default_toolkits, self.callback_url,
        )
        toolkits = session.connected_toolkits if session is not None else []
        self.sessions.create_or_refresh(user_id, opened["session_id"], opened["session_url"], toolkits)
        refreshed = self.sessions.get_by_user(user_id)
        assert refreshed is not None
        return refreshed

    async def _sync_toolkits(self, session: ToolSession, force: bool = False) -> list[str]:
        """Refresh connected toolkits from the provider, at most once a minute unless forced."""
        if self.connections is None:
            return list(session.connected_toolkits)
        if not force and now_ms() - (session.last_active_at or 0) <= _SYNC_INTERVAL_MS:
            return list(session.connected_toolkits)
        try:
            accounts = await self.connections.list_connected_accounts(session.user_id)
        except ConnectionProviderError as e:
            logger.warning("toolkit_sync_failed", error=str(e))
            return list(session.connected_toolkits)
        toolkits = active_toolkits(accounts)
        if toolkits and toolkits != session.connected_toolkits:
            self.sessions.update_toolkits(session.user_id, toolkits)
            logger.info("toolkits_synced", toolkits=toolkits)
            return toolkits
        return list(session.connected_toolkits)

    async def check_connections(self, user_id: str) -> IntegrationResult:
        try:
            session = await self.ensure_session(user_id)
        except ImibotError as e:
            return IntegrationResult(False, f"Failed to initialize app integrations: {e}")
        toolkits = await self._sync_toolkits(session, force=True)
        return IntegrationResult(
            True,
            f"Connected to {len(toolkits)} apps",
            {"connected_apps": toolkits, "session_active": True},
        )

    async def search(self, user_id: str, task_description: str, app_filter: Sequence[str] = ()) -> IntegrationResult:
        if not task_description:
            return IntegrationResult(False, "task_description is required for search")
        try:
            session = await self.ensure_session(user_id)
            await self._sync_toolkits(session)
            async with self.client_factory(session.session_url) as client:
                outcome = await client.search_tools(task_description, app_filter)
        except Exception as e:
            logger.warning("tool_search_failed", error=str(e), error_type=type(e).__name__)
            return IntegrationResult(False, f"Tool search failed: {e}")
        if outcome.is_error:
            return IntegrationResult(False, f"Tool search failed: {outcome.text[:200]}")
        data = outcome.data if outcome.data is not None else {"raw": outcome.text}
        return IntegrationResult(
            True,
            f"Found available actions for: {task_description}",
            {"results": data, "tools": extract_tools(data)},
        )

    async def execute(self, user_id: str, tool_slug: str, arguments: dict[str, Any]) -> IntegrationResult:
        try:
            session = await self.ensure_session(user_id)
            async with self.client_factory(session.session_url) as client:
                outcome = await client.execute_tools([ToolArguments(tool_slug, dict(arguments))])
        except Exception as e:
            message = str(e)
            if "not connected" in message or "authentication" in message:
                app = tool_slug.split("_")[0].lower()
                return IntegrationResult(
                    False,
                    f"The user needs to connect their {app} account first.",
                    {"auth_required": {"app": app}},
                )
            logger.warning("tool_execute_failed", tool=tool_slug, error=message)
            return IntegrationResult(False, f"Failed to execute {tool_slug}: {message}")
        if outcome.is_error:
            return IntegrationResult(False, f"{tool_slug} failed: {outcome.text[:200]}")
        return IntegrationResult(True, "Action executed successfully", {"results": outcome.data or outcome.text})

    async def initiate_connection(self, user_id: str, app_name: str) -> IntegrationResult:
        """Start (or reuse) the OAuth flow for *app_name*."""
        toolkit = app_name.lower()
        try:
            session = await self.ensure_session(user_id)
        except ImibotError as e:
            return IntegrationResult(False, f"Failed to initiate connection for {app_name}: {e}")

        reused = await self._existing_connection(user_id, app_name, toolkit)
        if reused is not None:
            return reused

        try:
            async with self.client_factory(session.session_url) as client:
                outcome = await client.manage_connections([toolkit])
        except Exception as e:
            logger.warning("connection_initiate_failed", app=toolkit, error=str(e))
            return IntegrationResult(False, f"Failed to initiate connection for {app_name}: {e}")

        auth_url = _redirect_url(outcome.data, toolkit)
        if not auth_url:
            return IntegrationResult(
                True,
                f"{app_name} is already connected or doesn't require OAuth",
                {"app": app_name, "toolkit": toolkit, "already_connected": True},
            )
        return IntegrationResult(
            True,
            f"Click here to authenticate {app_name}: [Authenticate {app_name}]({auth_url})",
            {"connection_url": auth_url, "app": app_name, "toolkit": toolkit},
        )

    async def _existing_connection(self, user_id: str, app_name: str, toolkit: str) -> IntegrationResult | None:
        """An ACTIVE connection, or a recent INITIATED one whose link can be reused."""
        if self.connections is None:
            return None
        try:
            accounts = await self.connections.list_connected_accounts(user_id)
        except ConnectionProviderError as e:
            logger.warning("connection_dedupe_failed", error=str(e))
            return None
        mine = [
            a for a in accounts
            if str((a.get("toolkit") or {}).get("slug") or a.get("appName") or "").lower() == toolkit
        ]
        active = next((a for a in mine if a.get("status") == "ACTIVE"), None)
        if active is not None:
            return IntegrationResult(
                True,
                f"{app_name} is already connected! No need to authenticate again.",
                {"already_connected": True, "app": app_name, "connection_id": active.get("id")},
            )
        cutoff = now_ms() - _REUSE_INITIATED_MS
        for account in mine:
            created = _parse_timestamp_ms(account.get("created_at"))
            redirect = (account.get("data") or {}).get("redirectUrl")
            if account.get("status") == STALE_STATUS and created is not None and created > cutoff and redirect:
                return IntegrationResult(
                    True,
                    f"Found existing authentication link for {app_name}: [Authenticate {app_name}]({redirect})",
                    {"connection_url": redirect, "app": app_name, "toolkit": toolkit, "reused": True},
                )
        return None
