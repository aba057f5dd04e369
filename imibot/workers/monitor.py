"""Periodic background workers over every tool session.

The monitor runs in its own asyncio task, independent of request handling.
Each tick visits every session and runs each enabled worker it knows how to
run; every run is recorded as a completed or failed background task, and one
failing worker never stops the rest of the tick.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from imibot.errors import ToolSessionError
from imibot.logging import get_logger
from imibot.storage.models import BackgroundTask, BackgroundWorkerConfig, ToolArguments, ToolSession
from imibot.tool_router.client import ToolRouterClient, ToolRouterClientFactory
from imibot.tool_router.sessions import ToolSessionManager
from imibot.tool_router.tasks import BackgroundTaskLog
from imibot.utils.helpers import now_ms

logger = get_logger(__name__)

TWITTER_MONITOR = "twitter_monitor"
TWITTER_GET_MENTIONS = "TWITTER_GET_MENTIONS"


@dataclass
class WorkerRun:
    tools_called: list[str] = field(default_factory=list)
    results: Any = None


WorkerHandler = Callable[[ToolRouterClient, ToolSession, BackgroundWorkerConfig], Awaitable[WorkerRun]]


class BackgroundWorkerMonitor:
    def __init__(
        self,
        sessions: ToolSessionManager,
        task_log: BackgroundTaskLog,
        client_factory: ToolRouterClientFactory = ToolRouterClient,
        interval_s: float = 300.0,
        mentions_count: int = 10,
    ) -> None:
        self.sessions = sessions
        self.task_log = task_log
        self.client_factory = client_factory
        self.interval_s = interval_s
        self.mentions_count = mentions_count
        self.handlers: dict[str, WorkerHandler] = {TWITTER_MONITOR: self._twitter_monitor}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        """Start the tick loop; a second call returns the running task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("worker_monitor_started", interval_s=self.interval_s)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("worker_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick_once()
            except Exception as e:
                logger.exception("worker_tick_failed", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.interval_s)

    async def tick_once(self) -> list[BackgroundTask]:
        """Run every enabled worker of every session once."""
        recorded: list[BackgroundTask] = []
        for session in self.sessions.store.list_all():
            for worker in session.background_workers.values():
                if not worker.enabled:
                    continue
                handler = self.handlers.get(worker.type)
                if handler is None:
                    logger.debug("worker_type_unknown", worker_type=worker.type, worker_id=worker.id)
                    continue
                recorded.append(await self._run_worker(session, worker, handler))
        logger.info("worker_tick_completed", tasks=len(recorded))
        return recorded

    async def _run_worker(
        self,
        session: ToolSession,
        worker: BackgroundWorkerConfig,
        handler: WorkerHandler,
    ) -> BackgroundTask:
        started = now_ms()
        try:
            async with self.client_factory(session.session_url) as client:
                run = await handler(client, session, worker)
        except Exception as e:
            logger.warning(
                "worker_run_failed",
                user_id=session.user_id,
                worker_id=worker.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self.task_log.create(
                user_id=session.user_id,
                session_id=session.session_id,
                worker_id=worker.id,
                task_type=worker.type,
                status="failed",
                results={},
                error=str(e),
                started_at=started,
                completed_at=now_ms(),
            )
        return self.task_log.create(
            user_id=session.user_id,
            session_id=session.session_id,
            worker_id=worker.id,
            task_type=worker.type,
            status="completed",
            tools_called=run.tools_called,
            results=run.results,
            started_at=started,
            completed_at=now_ms(),
        )

    async def _twitter_monitor(
        self,
        client: ToolRouterClient,
        session: ToolSession,
        worker: BackgroundWorkerConfig,
    ) -> WorkerRun:
        call = ToolArguments(TWITTER_GET_MENTIONS, {
            "count": self.mentions_count,
            "since_id": worker.config.get("lastProcessedId"),
        })
        outcome = await client.execute_tools([call], thought="Check Twitter mentions")
        if outcome.is_error:
            raise ToolSessionError(f"{TWITTER_GET_MENTIONS} failed: {outcome.text[:200]}")
        return WorkerRun(
            tools_called=[TWITTER_GET_MENTIONS],
            results=outcome.data if outcome.data is not None else outcome.text,
        )
