"""Lexical memory search over several query variations with merge and dedupe.

Every fact of every candidate memory is scored against every query. Scores
combine token Jaccard overlap with a recency rank, later query variations are
penalised slightly, and the merged list is deduplicated (exactly, then by
near-identical wording) before a diversity pass spreads results over distinct
memories and threads.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Sequence

from imibot.storage.models import MemoryRecord
from imibot.utils.helpers import truncate

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")

LEXICAL_WEIGHT = 0.75
RECENCY_WEIGHT = 0.25
KEYWORD_BOOST = 0.05
KEYWORD_MIN_LEN = 4
QUERY_INDEX_PENALTY = 0.02
FALLBACK_BASE = 0.25
FALLBACK_RECENCY_WEIGHT = 0.15
NEAR_DUPLICATE_SIMILARITY = 0.95


@dataclass
class SearchResult:
    memory_id: str
    fact: str
    score: float
    source: str
    thread_id: str | None = None
    timestamp: int | None = None


@dataclass
class MergedResults:
    results: list[SearchResult] = field(default_factory=list)
    total_searched: int = 0
    duplicates_removed: int = 0
    search_latency_ms: float = 0.0


def tokenize(value: str) -> set[str]:
    return {t for t in _NON_ALNUM.sub(" ", value.lower()).split() if len(t) > 1}


def _jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _recency(rank: int, total: int) -> float:
    return 1.0 if total <= 1 else 1 - rank / total


def score_fact(query_tokens: set[str], fact_tokens: set[str], recency_rank: int, total_memories: int) -> float:
    """Score one fact; zero when query and fact share no token."""
    lexical = _jaccard(query_tokens, fact_tokens)
    if lexical == 0:
        return 0.0
    boost = KEYWORD_BOOST if any(len(t) >= KEYWORD_MIN_LEN and t in fact_tokens for t in query_tokens) else 0.0
    return min(1.0, lexical * LEXICAL_WEIGHT + _recency(recency_rank, total_memories) * RECENCY_WEIGHT + boost)


def word_similarity(a: str, b: str) -> float:
    """Jaccard similarity of whitespace-separated lowercase words."""
    return _jaccard(set(a.lower().split()), set(b.lower().split()))


def _fallback_results(memories: Sequence[MemoryRecord], max_results: int) -> list[SearchResult]:
    fallback: list[SearchResult] = []
    for index, memory in enumerate(memories):
        score = min(1.0, FALLBACK_BASE + _recency(index, len(memories)) * FALLBACK_RECENCY_WEIGHT)
        for fact in memory.facts:
            if len(fallback) >= max_results:
                return fallback
            fallback.append(SearchResult(
                memory_id=memory.id,
                fact=fact,
                score=score,
                source="recent_memory",
                thread_id=memory.thread_id,
                timestamp=memory.timestamp,
            ))
    return fallback


def _near_dedupe(results: list[SearchResult], threshold: float) -> list[SearchResult]:
    kept: list[SearchResult] = []
    for current in results:
        for i, existing in enumerate(kept):
            if word_similarity(current.fact, existing.fact) >= threshold:
                if current.score > existing.score:
                    kept[i] = current
                break
        else:
            kept.append(current)
    return kept


def _diversify(results: list[SearchResult], max_results: int) -> list[SearchResult]:
    selected: list[SearchResult] = []
    used_memories: set[str] = set()
    used_threads: set[str] = set()
    for result in results:
        if len(selected) >= max_results:
            break
        new_memory = result.memory_id not in used_memories
        new_thread = bool(result.thread_id) and result.thread_id not in used_threads
        if new_memory or new_thread or len(selected) < max_results / 2:
            selected.append(result)
            used_memories.add(result.memory_id)
            if result.thread_id:
                used_threads.add(result.thread_id)
    for result in results:
        if len(selected) >= max_results:
            break
        if not any(r is result for r in selected):
            selected.append(result)
    return selected


def merge_and_dedupe(
    results: list[SearchResult],
    *,
    max_results: int,
    threshold: float,
    boost_diversity: bool = True,
) -> list[SearchResult]:
    if not results:
        return []
    by_fact: dict[str, SearchResult] = {}
    for result in results:
        key = result.fact.lower().strip()
        existing = by_fact.get(key)
        if existing is None or result.score > existing.score:
            by_fact[key] = result
    deduped = _near_dedupe(list(by_fact.values()), NEAR_DUPLICATE_SIMILARITY)
    filtered = sorted((r for r in deduped if r.score >= threshold), key=lambda r: r.score, reverse=True)
    if boost_diversity:
        return _diversify(filtered, max_results)
    return filtered[:max_results]


def search(
    memories: Sequence[MemoryRecord],
    queries: Sequence[str],
    *,
    threshold: float = 0.2,
    max_results: int = 10,
    boost_diversity: bool = True,
) -> MergedResults:
    """Search *memories* (newest first, already filtered to live records) for *queries*."""
    started = time.perf_counter()
    if not memories:
        return MergedResults()

    candidates: list[SearchResult] = []
    for query_index, query in enumerate(queries):
        query_tokens = tokenize(query)
        if not query_tokens:
            continue
        for rank, memory in enumerate(memories):
            for fact in memory.facts:
                fact_tokens = tokenize(fact)
                if not fact_tokens:
                    continue
                score = score_fact(query_tokens, fact_tokens, rank, len(memories)) - query_index * QUERY_INDEX_PENALTY
                if score <= 0:
                    continue
                candidates.append(SearchResult(
                    memory_id=memory.id,
                    fact=fact,
                    score=score,
                    source=f"query_{query_index}: {truncate(query, 30)}",
                    thread_id=memory.thread_id,
                    timestamp=memory.timestamp,
                ))

    if not candidates:
        candidates = _fallback_results(memories, max_results)
    if not candidates:
        return MergedResults(search_latency_ms=_elapsed_ms(started))

    merged = merge_and_dedupe(candidates, max_results=max_results, threshold=threshold, boost_diversity=boost_diversity)
    if not merged:
        pool = _fallback_results(memories, max_results * 2)
        merged = merge_and_dedupe(pool, max_results=max_results, threshold=threshold, boost_diversity=boost_diversity)

    return MergedResults(
        results=merged,
        total_searched=len(candidates),
        duplicates_removed=len(candidates) - len(merged),
        search_latency_ms=_elapsed_ms(started),
    )


def format_results(results: Sequence[SearchResult]) -> str:
    """Numbered list of facts, one per line."""
    return "\n".join(f"{i}. {r.fact}" for i, r in enumerate(results, start=1))


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
