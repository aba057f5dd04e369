"""Background task records, partitioned by user."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from imibot.storage.models import BackgroundTask
from imibot.storage.store import RecordStore


class BackgroundTaskStore:
    def __init__(self, root: Path) -> None:
        self._records: RecordStore[BackgroundTask] = RecordStore(root, "background_tasks", BackgroundTask.from_dict)

    def insert(self, task: BackgroundTask) -> BackgroundTask:
        return self._records.append(task.user_id, task)

    def list_by_user(self, user_id: str) -> list[BackgroundTask]:
        return self._records.list(user_id)

    def update(self, user_id: str, task_id: str, mutate: Callable[[BackgroundTask], None]) -> BackgroundTask | None:
        return self._records.update(user_id, task_id, mutate)
