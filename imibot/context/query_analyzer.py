"""Pick the memory search path (fast or smart) from message signals."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Sequence

QueryType = Literal["simple", "conversational", "followup", "recall", "multi_concept"]

_FOLLOWUP = (
    re.compile(r"\b(tell me more|what else|anything else|more about|elaborate|continue|go on)\b", re.I),
    re.compile(r"\b(other|another|different|additional)\b.*\b(info|information|details|facts)\b", re.I),
)
_CONVERSATIONAL = (
    re.compile(r"\b(we talked|we discussed|you said|you mentioned|remember when|last time)\b", re.I),
    re.compile(r"\b(earlier|before|previously|past conversation)\b", re.I),
)
_RECALL = (
    re.compile(r"\b(what do you know|tell me about|remind me|recall|remember)\b", re.I),
    re.compile(r"\b(my|i|me)\b.*\b(preference|favorite|like|about)\b", re.I),
)
_MULTI_CONCEPT = (
    re.compile(r" and ", re.I),
    re.compile(r" & "),
    re.compile(r" or ", re.I),
    re.compile(r",.*,"),
)

_VAGUE_RECALL_MAX_WORDS = 8
_MULTI_CONCEPT_MIN_WORDS = 5
_IMPLICIT_FOLLOWUP_MAX_WORDS = 5
_IMPLICIT_FOLLOWUP_MIN_REPLY_CHARS = 200
_LONG_QUERY_MIN_WORDS = 15


@dataclass(frozen=True)
class QueryAnalysis:
    is_complex: bool
    query_type: QueryType
    needs_rewrite: bool
    reasoning: str
    confidence: float


def _any(patterns: Sequence[re.Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _role(message: Any) -> str:
    return message.get("role", "") if isinstance(message, dict) else getattr(message, "role", "")


def _content(message: Any) -> str:
    value = message.get("content") if isinstance(message, dict) else getattr(message, "content", "")
    return value or ""


def analyze(user_message: str, recent_messages: Sequence[Any] = ()) -> QueryAnalysis:
    """Classify *user_message*; anything needing a rewrite goes down the smart path.

    *recent_messages* are ``{"role", "content"}`` dicts or objects with those
    attributes, oldest first.
    """
    message = user_message.strip().lower()
    word_count = len(message.split()) if message else 0

    if _any(_FOLLOWUP, message):
        return QueryAnalysis(True, "followup", True, "follow-up question needs new facts on the same topic", 0.9)

    if _any(_CONVERSATIONAL, message):
        return QueryAnalysis(True, "conversational", True, "references an earlier conversation", 0.85)

    if _any(_RECALL, message) and word_count <= _VAGUE_RECALL_MAX_WORDS:
        return QueryAnalysis(True, "recall", True, "vague recall question benefits from query expansion", 0.8)

    if _any(_MULTI_CONCEPT, message) and word_count >= _MULTI_CONCEPT_MIN_WORDS:
        return QueryAnalysis(True, "multi_concept", True, "several concepts are searched separately", 0.75)

    last_reply = next((m for m in reversed(recent_messages) if _role(m) == "assistant"), None)
    if (
        last_reply is not None
        and word_count <= _IMPLICIT_FOLLOWUP_MAX_WORDS
        and len(_content(last_reply)) > _IMPLICIT_FOLLOWUP_MIN_REPLY_CHARS
    ):
        return QueryAnalysis(True, "followup", True, "short query after a detailed reply", 0.7)

    if word_count >= _LONG_QUERY_MIN_WORDS:
        return QueryAnalysis(True, "multi_concept", True, "long query is rewritten for precision", 0.65)

    return QueryAnalysis(False, "simple", False, "direct query, single search is enough", 0.8)
