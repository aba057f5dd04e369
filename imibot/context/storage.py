"""TTL'd context entries per thread."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from imibot.storage.models import ContextEntry
from imibot.storage.store import RecordStore
from imibot.utils.helpers import now_ms


def _by_relevance(entry: ContextEntry) -> tuple[float, int]:
    return (entry.relevance_score or 0.0, entry.created_at)


class ContextStore:
    """Context entries partitioned by thread; expired entries are ignored on read."""

    def __init__(self, root: Path) -> None:
        self._records: RecordStore[ContextEntry] = RecordStore(root, "thread_context", ContextEntry.from_dict)

    def store_context(
        self,
        thread_id: str,
        user_id: str,
        context_type: str,
        summary: str,
        *,
        relevant_to: str | None = None,
        relevance_score: float = 0.5,
        raw_data: dict[str, Any] | None = None,
        ttl_minutes: float = 5,
        now: int | None = None,
    ) -> ContextEntry:
        created = now if now is not None else now_ms()
        entry = ContextEntry(
            thread_id=thread_id,
            user_id=user_id,
            context_type=context_type,
            summary=summary,
            relevant_to=relevant_to,
            relevance_score=relevance_score,
            raw_data=dict(raw_data or {}),
            created_at=created,
            expires_at=created + int(ttl_minutes * 60_000),
        )
        return self._records.append(thread_id, entry)

    def has_fresh_context(
        self,
        thread_id: str,
        message_id: str | None = None,
        max_age_ms: int = 90_000,
        now: int | None = None,
    ) -> bool:
        """True when an entry younger than *max_age_ms* exists (for *message_id*, when given)."""
        lower_bound = (now if now is not None else now_ms()) - max_age_ms
        fresh = [e for e in self._records.list(thread_id) if e.created_at >= lower_bound]
        if not fresh:
            return False
        if message_id is None:
            return True
        return any(e.relevant_to == message_id for e in fresh)

    def get_recent_context(
        self,
        thread_id: str,
        context_types: Sequence[str] | None = None,
        limit: int | None = None,
        now: int | None = None,
    ) -> list[ContextEntry]:
        """Unexpired entries, most relevant first, newest first on ties."""
        current = now if now is not None else now_ms()
        entries = [e for e in self._records.list(thread_id) if e.expires_at >= current]
        if context_types:
            entries = [e for e in entries if e.context_type in context_types]
        entries.sort(key=_by_relevance, reverse=True)
        return entries[:limit] if limit else entries

    def get_context_summary(
        self,
        thread_id: str,
        context_types: Sequence[str] | None = None,
        now: int | None = None,
    ) -> str | None:
        entries = self.get_recent_context(thread_id, context_types, now=now)
        if not entries:
            return None
        return "\n\n".join(f"[{e.context_type.upper()}] {e.summary}" for e in entries)

    def cleanup_expired(self, now: int | None = None) -> int:
        """Drop expired entries from every thread; returns how many were removed."""
        current = now if now is not None else now_ms()
        removed = 0
        for thread_id in self._records.partitions():
            entries = self._records.list(thread_id)
            live = [e for e in entries if e.expires_at >= current]
            if len(live) != len(entries):
                removed += len(entries) - len(live)
                self._records.replace_all(thread_id, live)
        return removed

    def clear_thread(self, thread_id: str) -> int:
        entries = self._records.list(thread_id)
        if entries:
            self._records.replace_all(thread_id, [])
        return len(entries)
