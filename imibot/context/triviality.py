"""Cheap heuristic deciding whether a message plausibly needs prior memory."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

TrivialityReason = Literal["empty", "greeting", "keyword", "short", "long"]

_GREETING_MAX_LEN = 24
_SHORT_MAX_LEN = 120

_GREETING = re.compile(r"^(hi|hey|hello|yo|sup|ping|test)\b", re.IGNORECASE)
_MEMORY_KEYWORDS = re.compile(
    r"(@|\bremember\b|\bsummary\b|\bsearch\b|\bemail\b|\bnotion\b|\bslack\b"
    r"|\btwitter\b|\broast\b|\bplan\b|\bfind\b|\blook up\b)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TrivialityResult:
    trivial: bool
    reason: TrivialityReason


def classify(message: str) -> TrivialityResult:
    """Classify *message*; the first matching rule wins.

    Keywords override length, so a long message mentioning ``email`` and a
    two-word ``find it`` are both non-trivial.
    """
    text = (message or "").strip()
    if not text:
        return TrivialityResult(True, "empty")
    if len(text) <= _GREETING_MAX_LEN and _GREETING.match(text):
        return TrivialityResult(True, "greeting")
    if _MEMORY_KEYWORDS.search(text):
        return TrivialityResult(False, "keyword")
    if len(text) < _SHORT_MAX_LEN:
        return TrivialityResult(True, "short")
    return TrivialityResult(False, "long")


def is_trivial(message: str) -> bool:
    return classify(message).trivial
