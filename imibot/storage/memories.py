"""User memory records (read-only to the routing core, soft-delete only)."""

from __future__ import annotations

from pathlib import Path

from imibot.storage.models import MemoryRecord
from imibot.storage.store import RecordStore
from imibot.utils.helpers import now_ms


class MemoryRecordStore:
    def __init__(self, root: Path) -> None:
        self._records: RecordStore[MemoryRecord] = RecordStore(root, "memories", MemoryRecord.from_dict)

    def add(self, record: MemoryRecord) -> MemoryRecord:
        return self._records.append(record.user_id, record)

    def recent(self, user_id: str, limit: int = 50) -> list[MemoryRecord]:
        """Non-deleted memories of *user_id*, newest first."""
        live = [r for r in self._records.list(user_id) if not r.deleted]
        live.sort(key=lambda r: r.timestamp, reverse=True)
        return live[:limit]

    def soft_delete(self, user_id: str, memory_id: str) -> bool:
        def _mark(record: MemoryRecord) -> None:
            record.deleted = True
            record.deleted_at = now_ms()

        return self._records.update(user_id, memory_id, _mark) is not None
