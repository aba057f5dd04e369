"""Per-user tool-execution sessions and their background worker configs.

Each user owns at most one session. Creating a session for a user who already
has one refreshes it in place, keeping its original ``created_at`` and its
workers. Expiry is reported by :meth:`ToolSessionManager.describe` but never
enforced: nothing here evicts a session.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from imibot.errors import ConnectionProviderError, SessionNotFoundError, WorkerNotFoundError
from imibot.logging import get_logger
from imibot.storage.models import BackgroundWorkerConfig, ToolSession, new_id
from imibot.storage.sessions import ToolSessionStore
from imibot.tool_router.connections import ConnectionProviderClient, StaleConnectionReport
from imibot.utils.helpers import now_ms

logger = get_logger(__name__)

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS


@dataclass(frozen=True)
class SessionHandle:
    user_id: str
    session_id: str
    created: bool


@dataclass(frozen=True)
class DeleteResult:
    deleted: bool
    message: str
    prior_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.deleted, "message": self.message}
        if self.prior_session_id:
            data["deleted_session_id"] = self.prior_session_id
        return data


def _iso(ms: int | None) -> str | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


class ToolSessionManager:
    """Lifecycle of tool sessions: create/refresh, toolkits, workers, delete, reports."""

    def __init__(
        self,
        store: ToolSessionStore,
        connections: ConnectionProviderClient | None = None,
        expiry_days: int = 7,
    ) -> None:
        self.store = store
        self.connections = connections
        self.expiry_days = expiry_days

    def create_or_refresh(
        self,
        user_id: str,
        session_id: str,
        session_url: str,
        toolkits: Sequence[str] = (),
        created_at: int | None = None,
        last_active_at: int | None = None,
    ) -> SessionHandle:
        now = now_ms()
        existing = self.store.get(user_id)
        if existing is not None:
            existing.session_id = session_id
            existing.session_url = session_url
            existing.connected_toolkits = list(toolkits)
            existing.last_active_at = last_active_at if last_active_at is not None else now
            self.store.put(existing)
            logger.info("tool_session_refreshed", user_id=user_id, session_id=session_id)
            return SessionHandle(user_id=user_id, session_id=session_id, created=False)

        self.store.put(ToolSession(
            user_id=user_id,
            session_id=session_id,
            session_url=session_url,
            connected_toolkits=list(toolkits),
            created_at=created_at if created_at is not None else now,
            last_active_at=last_active_at if last_active_at is not None else now,
        ))
        logger.info("tool_session_created", user_id=user_id, session_id=session_id)
        return SessionHandle(user_id=user_id, session_id=session_id, created=True)

    def get_by_user(self, user_id: str) -> ToolSession | None:
        return self.store.get(user_id)

    def _require(self, user_id: str) -> ToolSession:
        session = self.store.get(user_id)
        if session is None:
            raise SessionNotFoundError(user_id)
        return session

    def update_toolkits(self, user_id: str, toolkits: Sequence[str]) -> dict[str, bool]:
        session = self._require(user_id)
        session.connected_toolkits = list(toolkits)
        session.last_active_at = now_ms()
        self.store.put(session)
        return {"success": True}

    def update_worker_config(
        self,
        user_id: str,
        worker_id: str,
        enabled: bool,
        config: dict[str, Any],
    ) -> dict[str, bool]:
        """Replace ``enabled`` and ``config`` of one worker; other fields stay as they are."""
        session = self._require(user_id)
        worker = session.background_workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(user_id, worker_id)
        session.background_workers[worker_id] = BackgroundWorkerConfig(
            id=worker.id,
            type=worker.type,
            enabled=enabled,
            config=dict(config),
        )
        self.store.put(session)
        logger.info("worker_config_updated", user_id=user_id, worker_id=worker_id, enabled=enabled)
        return {"success": True}

    def add_worker(
        self,
        user_id: str,
        worker_type: str,
        config: dict[str, Any] | None = None,
        enabled: bool = True,
        worker_id: str | None = None,
    ) -> BackgroundWorkerConfig:
        session = self._require(user_id)
        worker = BackgroundWorkerConfig(
            id=worker_id or new_id("worker"),
            type=worker_type,
            enabled=enabled,
            config=dict(config or {}),
        )
        session.background_workers[worker.id] = worker
        self.store.put(session)
        logger.info("worker_added", user_id=user_id, worker_id=worker.id, worker_type=worker_type)
        return worker

    def delete_by_user(self, user_id: str) -> DeleteResult:
        session = self.store.get(user_id)
        if session is None or not self.store.delete(user_id):
            return DeleteResult(deleted=False, message="No session found for this user")
        logger.info("tool_session_deleted", user_id=user_id, session_id=session.session_id)
        return DeleteResult(
            deleted=True,
            message="Session deleted. A new session will be created on next use.",
            prior_session_id=session.session_id,
        )

    def is_expired(self, session: ToolSession, now: int | None = None) -> bool:
        current = now if now is not None else now_ms()
        reference = session.last_active_at or session.created_at
        return current - reference > self.expiry_days * _DAY_MS

    def describe(self, user_id: str, now: int | None = None) -> dict[str, Any]:
        """Diagnostic view of one user's session."""
        session = self.store.get(user_id)
        if session is None:
            return {"found": False, "message": "No session found for this user"}
        return {"found": True, **self._describe(session, now if now is not None else now_ms())}

    def list_sessions(self, now: int | None = None) -> list[dict[str, Any]]:
        current = now if now is not None else now_ms()
        return [self._describe(s, current) for s in self.store.list_all()]

    def _describe(self, session: ToolSession, now: int) -> dict[str, Any]:
        if session.last_active_at:
            since_active = f"{(now - session.last_active_at) // _HOUR_MS} hours ago"
        else:
            since_active = "never active"
        return {
            "user_id": session.user_id,
            "session_id": session.session_id,
            "session_url": session.session_url,
            "connected_toolkits": list(session.connected_toolkits),
            "workers": [w.to_dict() for w in session.background_workers.values()],
            "created_at": _iso(session.created_at),
            "last_active_at": _iso(session.last_active_at),
            "age_in_hours": (now - session.created_at) // _HOUR_MS,
            "time_since_last_active": since_active,
            "is_expired": self.is_expired(session, now),
        }

    async def list_stale_connections(self, user_id: str, older_than_minutes: int = 10) -> StaleConnectionReport:
        """Report INITIATED connections older than *older_than_minutes*. There is no delete counterpart."""
        if self.connections is None:
            raise ConnectionProviderError("connection provider is not configured")
        return await self.connections.stale_connections(user_id, older_than_minutes)
