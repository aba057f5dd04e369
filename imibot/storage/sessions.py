"""Tool sessions keyed by user id (unique per user)."""

from __future__ import annotations

from pathlib import Path

from imibot.storage.models import ToolSession
from imibot.storage.store import DocumentStore


class ToolSessionStore:
    def __init__(self, root: Path) -> None:
        self._docs: DocumentStore[ToolSession] = DocumentStore(
            root, "tool_sessions", ToolSession.from_dict, key_of=lambda s: s.user_id,
        )

    def get(self, user_id: str) -> ToolSession | None:
        return self._docs.get(user_id)

    def put(self, session: ToolSession) -> None:
        self._docs.put(session.user_id, session)

    def delete(self, user_id: str) -> bool:
        return self._docs.delete(user_id)

    def list_all(self) -> list[ToolSession]:
        return self._docs.list_all()
