"""Append-only tool-execution and model-usage records.

Recording is best-effort: a failed write is logged and dropped, never
raised into the generation path that produced it.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import litellm

from imibot.logging import get_logger
from imibot.storage.models import ToolArguments, ToolLogRecord, UsageRecord
from imibot.storage.telemetry import ToolLogStore, UsageStore

logger = get_logger(__name__)


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """USD cost from LiteLLM's price table; 0.0 for models it does not know."""
    try:
        prompt_cost, completion_cost = litellm.cost_per_token(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
    except Exception:
        return 0.0
    return float(prompt_cost + completion_cost)


def provider_of(model: str) -> str:
    return model.split("/", 1)[0] if "/" in model else "unknown"


class UsageRecorder:
    def __init__(self, store: UsageStore) -> None:
        self.store = store

    def record(
        self,
        *,
        user_id: str,
        agent_name: str,
        model: str,
        usage: dict[str, int] | None,
        thread_id: str | None = None,
    ) -> UsageRecord | None:
        usage = usage or {}
        prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
        completion_tokens = int(usage.get("completion_tokens", 0) or 0)
        record = UsageRecord(
            user_id=user_id,
            agent_name=agent_name,
            model=model,
            provider=provider_of(model),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(usage.get("total_tokens", 0) or 0) or prompt_tokens + completion_tokens,
            estimated_cost=estimate_cost(model, prompt_tokens, completion_tokens),
            thread_id=thread_id,
        )
        try:
            self.store.insert(record)
        except OSError as e:
            logger.warning("usage_record_failed", error=str(e), error_type=type(e).__name__)
            return None
        return record


class ToolExecutionRecorder:
    def __init__(self, store: ToolLogStore) -> None:
        self.store = store

    def record(
        self,
        *,
        tool_name: str,
        user_id: str,
        thread_id: str,
        args: ToolArguments,
        success: bool,
        execution_time_ms: float = 0.0,
        error: str | None = None,
        job_id: str | None = None,
    ) -> ToolLogRecord | None:
        record = ToolLogRecord(
            tool_name=tool_name,
            user_id=user_id,
            thread_id=thread_id,
            args=args,
            success=success,
            execution_time_ms=round(execution_time_ms, 1),
            error=error,
            job_id=job_id,
        )
        try:
            self.store.insert(record)
        except OSError as e:
            logger.warning("tool_log_failed", tool=tool_name, error=str(e), error_type=type(e).__name__)
            return None
        return record

    @asynccontextmanager
    async def timed(
        self,
        *,
        tool_name: str,
        user_id: str,
        thread_id: str,
        args: ToolArguments,
    ) -> AsyncIterator[dict[str, Any]]:
        """Record one execution around the ``async with`` body.

        The body may set ``outcome["success"] = False`` and ``outcome["error"]``
        for soft failures; an exception is recorded as a failure and re-raised.
        """
        outcome: dict[str, Any] = {"success": True, "error": None}
        started = time.perf_counter()
        try:
            yield outcome
        except Exception as e:
            outcome["success"] = False
            outcome["error"] = str(e)
            raise
        finally:
            self.record(
                tool_name=tool_name,
                user_id=user_id,
                thread_id=thread_id,
                args=args,
                success=bool(outcome["success"]),
                execution_time_ms=(time.perf_counter() - started) * 1000,
                error=outcome["error"],
            )
