"""Shared constants/helpers for structured tool result details."""

from __future__ import annotations

from typing import Any

OP_MEMORY_SEARCH = "memory_search"
OP_APP_INTEGRATIONS = "app_integrations"


def details_with_op(op: str, **fields: Any) -> dict[str, Any]:
    """Build a structured details payload with a normalized ``op`` field."""
    return {"op": op, **fields}
