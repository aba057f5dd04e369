"""Layer 1 context: fetch memory facts relevant to the incoming message.

Two search paths share the same scorer. The fast path searches with the
message alone; the smart path first rewrites the message into several
variations (aware of recent turns and of facts already delivered to the
thread) and searches with all of them. A fetch for the same message within
the freshness window is served from the context store without searching.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Literal

from imibot.config.schema import ContextConfig
from imibot.context import memory_search
from imibot.context.query_analyzer import analyze
from imibot.context.query_rewriter import QueryRewriter
from imibot.context.storage import ContextStore
from imibot.errors import ContextFetchError
from imibot.logging import get_logger
from imibot.storage.memories import MemoryRecordStore
from imibot.storage.threads import MessageStore
from imibot.utils.helpers import now_ms, truncate

logger = get_logger(__name__)

SearchPath = Literal["fast", "smart", "cached"]

MEMORY_CONTEXT_TYPE = "memory"
_HISTORY_CONTENT_CHARS = 500


@dataclass
class ContextResult:
    search_path: SearchPath
    memories_found: int = 0
    latency_ms: float = 0.0
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "search_path": self.search_path,
            "memories_found": self.memories_found,
            "latency_ms": self.latency_ms,
        }


class ContextProvider:
    def __init__(
        self,
        *,
        memories: MemoryRecordStore,
        messages: MessageStore,
        context_store: ContextStore,
        rewriter: QueryRewriter | None = None,
        config: ContextConfig | None = None,
    ) -> None:
        self.memories = memories
        self.messages = messages
        self.context_store = context_store
        self.rewriter = rewriter or QueryRewriter()
        self.config = config or ContextConfig()

    async def provide_context(
        self,
        thread_id: str,
        user_id: str,
        user_message: str,
        message_id: str,
    ) -> ContextResult:
        """Fetch (or reuse) memory context for *message_id*.

        Raises:
            ContextFetchError: on any failure; callers treat it as empty context.
        """
        try:
            return await self._provide(thread_id, user_id, user_message, message_id)
        except ContextFetchError:
            raise
        except Exception as e:
            raise ContextFetchError(f"context fetch failed: {e}") from e

    def cached_summary(self, thread_id: str) -> str | None:
        """Unexpired memory context of *thread_id*, formatted for the system prompt."""
        return self.context_store.get_context_summary(thread_id, [MEMORY_CONTEXT_TYPE])

    async def _provide(
        self,
        thread_id: str,
        user_id: str,
        user_message: str,
        message_id: str,
    ) -> ContextResult:
        started = time.perf_counter()
        cfg = self.config

        if self.context_store.has_fresh_context(thread_id, message_id, max_age_ms=int(cfg.fresh_window_s * 1000)):
            logger.info("context_cache_hit", message_id=message_id)
            return ContextResult(
                search_path="cached",
                latency_ms=_elapsed_ms(started),
                summary=self.cached_summary(thread_id),
            )

        history = self._recent_history(thread_id, message_id)
        analysis = analyze(user_message, history)
        search_path: SearchPath = "smart" if (analysis.needs_rewrite or cfg.force_smart_path) else "fast"
        logger.info(
            "context_path_selected",
            search_path=search_path,
            query_type=analysis.query_type,
            confidence=analysis.confidence,
        )

        if search_path == "smart":
            rewrites = await self.rewriter.rewrite(user_message, history, self._previous_facts(thread_id))
            queries = rewrites.all_queries
            threshold = cfg.smart_threshold
            logger.debug("context_rewrites", strategy=rewrites.strategy, variations=len(rewrites.variations))
        else:
            queries = [user_message]
            threshold = cfg.fast_threshold

        pool = self.memories.recent(user_id, limit=cfg.memory_pool_size)
        found = memory_search.search(pool, queries, threshold=threshold, max_results=cfg.max_results)

        if not found.results:
            logger.info("context_no_memories", search_path=search_path, pool_size=len(pool))
            return ContextResult(search_path=search_path, latency_ms=_elapsed_ms(started))

        summary = memory_search.format_results(found.results)
        self.context_store.store_context(
            thread_id,
            user_id,
            MEMORY_CONTEXT_TYPE,
            summary,
            relevant_to=message_id,
            relevance_score=found.results[0].score,
            ttl_minutes=cfg.ttl_minutes,
            raw_data={
                "search_path": search_path,
                "memories_count": len(found.results),
                "duplicates_removed": found.duplicates_removed,
                "search_latency_ms": found.search_latency_ms,
                "query_variations": len(queries),
            },
        )
        latency_ms = _elapsed_ms(started)
        logger.info(
            "context_stored",
            search_path=search_path,
            memories_found=len(found.results),
            latency_ms=latency_ms,
        )
        return ContextResult(
            search_path=search_path,
            memories_found=len(found.results),
            latency_ms=latency_ms,
            summary=summary,
        )

    def _recent_history(self, thread_id: str, message_id: str) -> list[dict[str, str]]:
        recent = self.messages.recent(thread_id, self.config.recent_messages + 1)
        return [
            {
                "role": "user" if m.role == "user" else "assistant",
                "content": truncate(m.content, _HISTORY_CONTENT_CHARS),
            }
            for m in recent
            if m.id != message_id and m.content
        ][-self.config.recent_messages:]

    def _previous_facts(self, thread_id: str) -> list[str]:
        cutoff = now_ms() - int(self.config.previous_context_window_s * 1000)
        entries = self.context_store.get_recent_context(thread_id, [MEMORY_CONTEXT_TYPE], limit=10)
        return [e.summary for e in entries if e.created_at >= cutoff]


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)
