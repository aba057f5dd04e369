"""All persistent stores of one workspace, opened together."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from imibot.context.storage import ContextStore
from imibot.storage.memories import MemoryRecordStore
from imibot.storage.sessions import ToolSessionStore
from imibot.storage.tasks import BackgroundTaskStore
from imibot.storage.telemetry import ToolLogStore, UsageStore
from imibot.storage.threads import MessageStore, ThreadStore
from imibot.utils.helpers import ensure_dir


@dataclass
class Stores:
    root: Path
    threads: ThreadStore
    messages: MessageStore
    memories: MemoryRecordStore
    tool_sessions: ToolSessionStore
    tasks: BackgroundTaskStore
    usage: UsageStore
    tool_logs: ToolLogStore
    context: ContextStore

    @classmethod
    def open(cls, workspace: Path) -> Stores:
        root = ensure_dir(Path(workspace).expanduser() / "data")
        return cls(
            root=root,
            threads=ThreadStore(root),
            messages=MessageStore(root),
            memories=MemoryRecordStore(root),
            tool_sessions=ToolSessionStore(root),
            tasks=BackgroundTaskStore(root),
            usage=UsageStore(root),
            tool_logs=ToolLogStore(root),
            context=ContextStore(root),
        )
