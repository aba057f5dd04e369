import asyncio
from pathlib import Path

import pytest

from imibot.storage.sessions import ToolSessionStore
from imibot.storage.tasks import BackgroundTaskStore
from imibot.tool_router.client import ToolCallOutcome
from imibot.tool_router.sessions import ToolSessionManager
from imibot.tool_router.tasks import BackgroundTaskLog
from imibot.workers.monitor import TWITTER_GET_MENTIONS, BackgroundWorkerMonitor


class _Client:
    def __init__(self, url, outcomes, calls):
        self.url = url
        self.outcomes = outcomes
        self.calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def execute_tools(self, tools, thought="Agent execution"):
        self.calls.append((self.url, [t.to_dict() for t in tools]))
        outcome = self.outcomes[self.url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _monitor(tmp_path: Path, outcomes):
    sessions = ToolSessionManager(ToolSessionStore(tmp_path))
    task_log = BackgroundTaskLog(BackgroundTaskStore(tmp_path))
    calls: list = []
    monitor = BackgroundWorkerMonitor(
        sessions,
        task_log,
        client_factory=lambda url: _Client(url, outcomes, calls),
        interval_s=0.01,
        mentions_count=5,
    )
    return monitor, sessions, task_log, calls


@pytest.mark.asyncio
async def test_tick_records_completed_twitter_run(tmp_path: Path) -> None:
    mentions = {"data": [{"id": "42", "text": "@alice hi"}]}
    monitor, sessions, task_log, calls = _monitor(
        tmp_path, {"https://mcp/s1": ToolCallOutcome(text="ok", data=mentions)},
    )
    sessions.create_or_refresh("alice", "s1", "https://mcp/s1", ["twitter"])
    sessions.add_worker("alice", "twitter_monitor", {"lastProcessedId": "40"}, worker_id="w1")

    recorded = await monitor.tick_once()

    assert [t.status for t in recorded] == ["completed"]
    assert calls == [(
        "https://mcp/s1",
        [{"tool_slug": TWITTER_GET_MENTIONS, "arguments": {"count": 5, "since_id": "40"}}],
    )]
    task = task_log.get_recent_by_user("alice")[0]
    assert task.worker_id == "w1"
    assert task.session_id == "s1"
    assert task.tools_called == [TWITTER_GET_MENTIONS]
    assert task.results == mentions
    assert task.completed_at is not None


@pytest.mark.asyncio
async def test_failing_worker_does_not_stop_the_tick(tmp_path: Path) -> None:
    monitor, sessions, task_log, calls = _monitor(tmp_path, {
        "https://mcp/s1": RuntimeError("router unavailable"),
        "https://mcp/s2": ToolCallOutcome(text="Error: rate limited", is_error=True),
        "https://mcp/s3": ToolCallOutcome(text="[]", data=[]),
    })
    for user, sid in (("alice", "s1"), ("bob", "s2"), ("carol", "s3")):
        sessions.create_or_refresh(user, sid, f"https://mcp/{sid}")
        sessions.add_worker(user, "twitter_monitor", worker_id=f"w-{user}")

    recorded = await monitor.tick_once()

    assert sorted(t.status for t in recorded) == ["completed", "failed", "failed"]
    alice = task_log.get_recent_by_user("alice")[0]
    assert alice.status == "failed"
    assert alice.error == "router unavailable"
    bob = task_log.get_recent_by_user("bob")[0]
    assert TWITTER_GET_MENTIONS in bob.error
    assert task_log.get_recent_by_user("carol")[0].status == "completed"


@pytest.mark.asyncio
async def test_disabled_and_unknown_workers_are_skipped(tmp_path: Path) -> None:
    monitor, sessions, task_log, calls = _monitor(tmp_path, {})
    sessions.create_or_refresh("alice", "s1", "https://mcp/s1")
    sessions.add_worker("alice", "twitter_monitor", enabled=False, worker_id="w1")
    sessions.add_worker("alice", "calendar_digest", worker_id="w2")

    recorded = await monitor.tick_once()

    assert recorded == []
    assert calls == []
    assert task_log.get_recent_by_user("alice") == []


@pytest.mark.asyncio
async def test_start_and_stop_run_the_loop(tmp_path: Path) -> None:
    monitor, sessions, task_log, _ = _monitor(
        tmp_path, {"https://mcp/s1": ToolCallOutcome(text="[]", data=[])},
    )
    sessions.create_or_refresh("alice", "s1", "https://mcp/s1")
    sessions.add_worker("alice", "twitter_monitor", worker_id="w1")

    task = monitor.start()
    assert monitor.start() is task
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert monitor.running is False
    assert len(task_log.get_recent_by_user("alice", limit=100)) >= 1
