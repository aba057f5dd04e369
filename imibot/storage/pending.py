"""Pending assistant message that streamed text is written into."""

from __future__ import annotations

from imibot.storage.models import ThreadMessage
from imibot.storage.threads import MessageStore

_FLUSH_EVERY_CHARS = 80


class PendingMessage:
    """Create a pending assistant message, patch it as deltas arrive, then finalise it.

    Deltas are buffered and written every few dozen characters; :meth:`succeed`
    and :meth:`fail` always write.
    """

    def __init__(
        self,
        messages: MessageStore,
        thread_id: str,
        *,
        prompt_message_id: str | None,
        agent_name: str | None = None,
    ) -> None:
        self._messages = messages
        self._message: ThreadMessage = messages.create_pending(
            thread_id, prompt_message_id=prompt_message_id, agent_name=agent_name,
        )
        self._text = ""
        self._unflushed = 0

    @property
    def id(self) -> str:
        return self._message.id

    @property
    def thread_id(self) -> str:
        return self._message.thread_id

    @property
    def text(self) -> str:
        return self._text

    async def append(self, delta: str) -> None:
        if not delta:
            return
        self._text += delta
        self._unflushed += len(delta)
        if self._unflushed >= _FLUSH_EVERY_CHARS:
            self.flush()

    def flush(self) -> None:
        self._messages.update(self.thread_id, self.id, content=self._text, status="pending")
        self._unflushed = 0

    def succeed(self, final_text: str | None = None) -> None:
        if final_text is not None:
            self._text = final_text
        self._messages.update(self.thread_id, self.id, content=self._text, status="success")

    def fail(self, error: str) -> None:
        self._messages.update(self.thread_id, self.id, content=self._text, status="failed", error=error)
