"""Log of background tasks run by workers on behalf of a user."""

from __future__ import annotations

from typing import Any

from imibot.logging import get_logger
from imibot.storage.models import BackgroundTask, TaskStatus
from imibot.storage.tasks import BackgroundTaskStore
from imibot.utils.helpers import now_ms

logger = get_logger(__name__)


class BackgroundTaskLog:
    def __init__(self, store: BackgroundTaskStore) -> None:
        self.store = store

    def create(
        self,
        *,
        user_id: str,
        session_id: str,
        worker_id: str,
        task_type: str,
        status: TaskStatus = "running",
        tools_called: list[str] | None = None,
        results: Any = None,
        error: str | None = None,
        notification_message: str | None = None,
        started_at: int | None = None,
        completed_at: int | None = None,
    ) -> BackgroundTask:
        task = BackgroundTask(
            user_id=user_id,
            session_id=session_id,
            worker_id=worker_id,
            task_type=task_type,
            status=status,
            tools_called=list(tools_called or []),
            results=results,
            error=error,
            notification_message=notification_message,
            started_at=started_at if started_at is not None else now_ms(),
            completed_at=completed_at,
        )
        self.store.insert(task)
        logger.info("background_task_recorded", task_id=task.id, worker_id=worker_id, status=status)
        return task

    def get_recent_by_user(self, user_id: str, limit: int = 10) -> list[BackgroundTask]:
        """Most recent first."""
        tasks = self.store.list_by_user(user_id)
        # Stable on equal start times: later inserts sort first
        ordered = sorted(enumerate(tasks), key=lambda it: (it[1].started_at, it[0]), reverse=True)
        return [task for _, task in ordered[:limit]]

    def complete(
        self,
        user_id: str,
        task_id: str,
        *,
        status: TaskStatus,
        results: Any = None,
        error: str | None = None,
        tools_called: list[str] | None = None,
    ) -> BackgroundTask | None:
        def _finish(task: BackgroundTask) -> None:
            task.status = status
            task.completed_at = now_ms()
            if results is not None:
                task.results = results
            if error is not None:
                task.error = error
            if tools_called is not None:
                task.tools_called = list(tools_called)

        return self.store.update(user_id, task_id, _finish)

    def mark_notified(self, user_id: str, task_id: str, message: str | None = None) -> bool:
        def _notify(task: BackgroundTask) -> None:
            task.user_notified = True
            if message is not None:
                task.notification_message = message

        return self.store.update(user_id, task_id, _notify) is not None
