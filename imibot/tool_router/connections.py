"""Read-only view of the connection provider's connected accounts.

Stale connections are OAuth flows a user started but never finished; they
stay in ``INITIATED`` state on the provider side. The provider offers no API
to delete them, so this module only reports them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from imibot.errors import ConnectionProviderError
from imibot.logging import get_logger
from imibot.utils.helpers import now_ms

logger = get_logger(__name__)

STALE_STATUS = "INITIATED"
NO_DELETE_NOTE = (
    "The connection provider has no API for deleting connected accounts. Stale INITIATED "
    "connections are ignored when picking a user's active connection; remove them from "
    "the provider dashboard if needed."
)


def _parse_timestamp_ms(value: Any) -> int | None:
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass
class StaleConnection:
    id: str
    created_at: str
    age_minutes: int
    redirect_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "age_minutes": self.age_minutes,
            "redirect_url": self.redirect_url,
        }


@dataclass
class StaleConnectionReport:
    total_stale: int
    older_than_minutes: int
    by_app: dict[str, list[StaleConnection]] = field(default_factory=dict)
    summary: list[str] = field(default_factory=list)
    note: str = NO_DELETE_NOTE

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_stale": self.total_stale,
            "older_than_minutes": self.older_than_minutes,
            "by_app": {app: [c.to_dict() for c in conns] for app, conns in self.by_app.items()},
            "summary": list(self.summary),
            "note": self.note,
        }


def build_stale_report(
    accounts: list[dict[str, Any]],
    older_than_minutes: int,
    now: int | None = None,
) -> StaleConnectionReport:
    """Group INITIATED accounts created at least *older_than_minutes* ago by toolkit slug."""
    current = now if now is not None else now_ms()
    cutoff = current - older_than_minutes * 60_000
    by_app: dict[str, list[StaleConnection]] = {}
    for account in accounts:
        if account.get("status") != STALE_STATUS:
            continue
        created_ms = _parse_timestamp_ms(account.get("created_at"))
        if created_ms is None or created_ms > cutoff:
            continue
        app = (account.get("toolkit") or {}).get("slug") or "unknown"
        by_app.setdefault(app, []).append(StaleConnection(
            id=str(account.get("id", "")),
            created_at=str(account.get("created_at")),
            age_minutes=(current - created_ms) // 60_000,
            redirect_url=(account.get("data") or {}).get("redirectUrl"),
        ))
    return StaleConnectionReport(
        total_stale=sum(len(conns) for conns in by_app.values()),
        older_than_minutes=older_than_minutes,
        by_app=by_app,
        summary=[f"{app}: {len(conns)} stale connection(s)" for app, conns in by_app.items()],
    )


class ConnectionProviderClient:
    """Minimal client for the connection provider's REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://backend.composio.dev",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def list_connected_accounts(self, user_id: str) -> list[dict[str, Any]]:
        if not self.api_key:
            raise ConnectionProviderError("COMPOSIO_API_KEY not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.get(
                    f"{self.base_url}/api/v3/connected_accounts",
                    params={"user_ids": user_id},
                    headers={"x-api-key": self.api_key, "Accept": "application/json"},
                )
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            raise ConnectionProviderError(f"API error: {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ConnectionProviderError(f"connected accounts request failed: {e}") from e
        items = data.get("items") if isinstance(data, dict) else None
        return [item for item in items or [] if isinstance(item, dict)]

    async def create_tool_router_session(
        self,
        user_id: str,
        toolkits: list[str],
        callback_url: str | None = None,
    ) -> dict[str, str]:
        """Open a new tool-router session; returns ``session_id`` and ``session_url``."""
        if not self.api_key:
            raise ConnectionProviderError("COMPOSIO_API_KEY not configured")
        body: dict[str, Any] = {
            "user_id": user_id,
            "toolkits": toolkits,
            "config": {"use_default_auth_configs": True},
        }
        if callback_url:
            body["config"]["callback_url"] = callback_url
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(
                    f"{self.base_url}/api/v3/labs/tool_router/session",
                    json=body,
                    headers={"x-api-key": self.api_key},
                )
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            raise ConnectionProviderError(
                f"Failed to create tool session: {e.response.status_code} - {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ConnectionProviderError(f"Failed to create tool session: {e}") from e
        session_url = data.get("chat_session_mcp_url") or data.get("url")
        if not data.get("session_id") or not session_url:
            raise ConnectionProviderError("tool session response is missing session_id or url")
        return {"session_id": str(data["session_id"]), "session_url": str(session_url)}

    async def stale_connections(self, user_id: str, older_than_minutes: int = 10) -> StaleConnectionReport:
        accounts = await self.list_connected_accounts(user_id)
        report = build_stale_report(accounts, older_than_minutes)
        logger.info(
            "stale_connections_listed",
            user_id=user_id,
            total_accounts=len(accounts),
            total_stale=report.total_stale,
        )
        return report


def active_toolkits(accounts: list[dict[str, Any]]) -> list[str]:
    """Toolkit slugs of ACTIVE connected accounts, in provider order."""
    slugs: list[str] = []
    for account in accounts:
        if str(account.get("status", "")).upper() != "ACTIVE":
            continue
        slug = (account.get("toolkit") or {}).get("slug") or account.get("appName")
        if slug and slug not in slugs:
            slugs.append(slug)
    return slugs
