"""Generate memory search variations for complex queries."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Sequence

import json_repair

from imibot.logging import get_logger

if TYPE_CHECKING:
    from imibot.providers.base import LLMProvider

logger = get_logger(__name__)

RewriteStrategy = Literal["expansion", "conversation_context", "multi_concept", "follow_up"]
_STRATEGIES = ("expansion", "conversation_context", "multi_concept", "follow_up")

_MAX_VARIATIONS = 5
_HISTORY_MESSAGES = 5

_ABBREVIATIONS = (
    (re.compile(r"\bML\b", re.I), "machine learning"),
    (re.compile(r"\bAI\b", re.I), "artificial intelligence"),
    (re.compile(r"\bAPI\b", re.I), "application programming interface"),
    (re.compile(r"\bUI\b", re.I), "user interface"),
    (re.compile(r"\bUX\b", re.I), "user experience"),
)
_FILLER = re.compile(
    r"\b(tell me|what do you know|what|when|where|why|how|is|are|the|a|an|do|does|can|could|would|should)\b",
    re.I,
)
_FIRST_PERSON = re.compile(r"\b(my|me|i)\b", re.I)
_SPACES = re.compile(r"\s+")

_PROMPT = """You are the context engine of a personal assistant with access to the user's stored memories.

USER'S CURRENT QUESTION:
"{message}"

RECENT CONVERSATION:
{history}

FACTS ALREADY RETRIEVED (do not search for these again):
- {previous}

Write 3-4 short search queries that find relevant facts NOT already retrieved.
Expand abbreviations, split multi-concept questions into focused searches, and
for follow-ups ("tell me more", "what else") search related or deeper aspects.

Reply with JSON only:
{{"variations": ["..."], "strategy": "expansion|conversation_context|multi_concept|follow_up", "reasoning": "..."}}"""


@dataclass
class QueryRewrites:
    original: str
    variations: list[str] = field(default_factory=list)
    strategy: RewriteStrategy = "expansion"
    reasoning: str = ""

    @property
    def all_queries(self) -> list[str]:
        """Original first, then variations, without repeats."""
        return list(dict.fromkeys([self.original, *self.variations]))


def quick_rewrite(message: str) -> list[str]:
    """Heuristic variations: the message, abbreviations expanded, filler words dropped."""
    variations = [message]
    expanded = message
    for pattern, replacement in _ABBREVIATIONS:
        expanded = pattern.sub(replacement, expanded)
    if expanded != message:
        variations.append(expanded)
    keywords = _SPACES.sub(" ", _FILLER.sub("", message.lower())).strip()
    if keywords and keywords != message.lower():
        variations.append(keywords)
    return list(dict.fromkeys(variations))


def _format_history(history: Sequence[dict[str, Any]]) -> str:
    if not history:
        return "No prior conversation"
    return "\n".join(f"{m.get('role')}: {m.get('content')}" for m in history[-_HISTORY_MESSAGES:])


def fallback_rewrites(message: str, history: Sequence[dict[str, Any]] = ()) -> QueryRewrites:
    """Deterministic variations used when no model is available or it fails."""
    variations = quick_rewrite(message)
    shifted = _FIRST_PERSON.sub("user", message)
    if shifted != message:
        variations.append(shifted)
    strategy: RewriteStrategy = "expansion"
    previous_user = next(
        (m.get("content") for m in reversed(history) if m.get("role") == "user" and m.get("content") != message),
        None,
    )
    if previous_user:
        # Follow-ups rarely name their topic; borrow it from the previous user turn
        variations.append(f"{previous_user} {message}")
        strategy = "conversation_context"
    return QueryRewrites(
        original=message,
        variations=list(dict.fromkeys(variations))[:_MAX_VARIATIONS],
        strategy=strategy,
        reasoning="heuristic variations",
    )


class QueryRewriter:
    """LLM-backed rewriter with a deterministic fallback."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        model: str | None = None,
        temperature: float = 0.7,
    ) -> None:
        self.provider = provider
        self.model = model
        self.temperature = temperature

    async def rewrite(
        self,
        message: str,
        history: Sequence[dict[str, Any]] = (),
        previous_facts: Sequence[str] = (),
    ) -> QueryRewrites:
        if self.provider is None:
            return fallback_rewrites(message, history)

        prompt = _PROMPT.format(
            message=message,
            history=_format_history(history),
            previous="\n- ".join(previous_facts) if previous_facts else "No previous facts fetched",
        )
        try:
            response = await self.provider.chat(
                messages=[{"role": "user", "content": prompt}],
                model=self.model,
                max_tokens=400,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.warning("query_rewrite_failed", error=str(e), error_type=type(e).__name__)
            return fallback_rewrites(message, history)

        if response.finish_reason == "error" or not response.content:
            logger.warning("query_rewrite_failed", error=response.content or "empty response")
            return fallback_rewrites(message, history)

        try:
            data = json_repair.loads(response.content)
        except Exception:
            data = None
        variations = data.get("variations") if isinstance(data, dict) else None
        if not isinstance(variations, list):
            logger.warning("query_rewrite_unparseable", preview=response.content[:120])
            return fallback_rewrites(message, history)

        clean = [v.strip() for v in variations if isinstance(v, str) and v.strip()][:_MAX_VARIATIONS]
        if not clean:
            return fallback_rewrites(message, history)
        strategy = data.get("strategy")
        return QueryRewrites(
            original=message,
            variations=clean,
            strategy=strategy if strategy in _STRATEGIES else "expansion",
            reasoning=str(data.get("reasoning") or ""),
        )
