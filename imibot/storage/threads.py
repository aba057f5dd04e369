"""Thread metadata and thread messages."""

from __future__ import annotations

from pathlib import Path

from imibot.storage.models import MessageStatus, Thread, ThreadMessage
from imibot.storage.store import DocumentStore, RecordStore


class ThreadStore:
    """Thread metadata keyed by thread id."""

    def __init__(self, root: Path) -> None:
        self._docs: DocumentStore[Thread] = DocumentStore(root, "threads", Thread.from_dict, key_of=lambda t: t.id)

    def get(self, thread_id: str) -> Thread | None:
        return self._docs.get(thread_id)

    def get_or_create(self, thread_id: str, user_id: str, agent_type: str = "casual") -> Thread:
        thread = self._docs.get(thread_id)
        if thread is None:
            thread = Thread(id=thread_id, user_id=user_id, agent_type=agent_type)
            self._docs.put(thread_id, thread)
        return thread

    def touch(self, thread_id: str, user_id: str) -> Thread:
        thread = self.get_or_create(thread_id, user_id)
        thread.touch()
        self._docs.put(thread_id, thread)
        return thread

    def list_by_user(self, user_id: str) -> list[Thread]:
        threads = [t for t in self._docs.list_all() if t.user_id == user_id]
        return sorted(threads, key=lambda t: t.last_message_at, reverse=True)


class MessageStore:
    """Messages of each thread, oldest first."""

    def __init__(self, root: Path) -> None:
        self._records: RecordStore[ThreadMessage] = RecordStore(root, "messages", ThreadMessage.from_dict)

    def add(self, message: ThreadMessage) -> ThreadMessage:
        return self._records.append(message.thread_id, message)

    def list(self, thread_id: str) -> list[ThreadMessage]:
        return self._records.list(thread_id)

    def recent(self, thread_id: str, limit: int) -> list[ThreadMessage]:
        return self._records.list(thread_id)[-limit:] if limit > 0 else []

    def create_pending(
        self,
        thread_id: str,
        *,
        prompt_message_id: str | None,
        agent_name: str | None = None,
    ) -> ThreadMessage:
        """Create an empty assistant message that streaming deltas are written into."""
        return self.add(ThreadMessage(
            thread_id=thread_id,
            role="assistant",
            content="",
            status="pending",
            prompt_message_id=prompt_message_id,
            agent_name=agent_name,
        ))

    def update(
        self,
        thread_id: str,
        message_id: str,
        *,
        content: str | None = None,
        status: MessageStatus | None = None,
        error: str | None = None,
    ) -> ThreadMessage | None:
        def _patch(msg: ThreadMessage) -> None:
            if content is not None:
                msg.content = content
            if status is not None:
                msg.status = status
            if error is not None:
                msg.error = error

        return self._records.update(thread_id, message_id, _patch)
