"""Append-only usage and tool-execution logs, partitioned by user."""

from __future__ import annotations

from pathlib import Path

from imibot.storage.models import ToolLogRecord, UsageRecord
from imibot.storage.store import RecordStore


class UsageStore:
    def __init__(self, root: Path) -> None:
        self._records: RecordStore[UsageRecord] = RecordStore(root, "usage", UsageRecord.from_dict)

    def insert(self, record: UsageRecord) -> UsageRecord:
        return self._records.append(record.user_id, record)

    def list_by_user(self, user_id: str) -> list[UsageRecord]:
        return self._records.list(user_id)


class ToolLogStore:
    def __init__(self, root: Path) -> None:
        self._records: RecordStore[ToolLogRecord] = RecordStore(root, "tool_logs", ToolLogRecord.from_dict)

    def insert(self, record: ToolLogRecord) -> ToolLogRecord:
        return self._records.append(record.user_id, record)

    def list_by_user(self, user_id: str) -> list[ToolLogRecord]:
        return self._records.list(user_id)
