"""Memory search tool: recall facts from the user's past conversations."""

import json
from typing import Any

from imibot.agent.tools.base import Tool, ToolExecutionResult
from imibot.agent.tools.tool_details import OP_MEMORY_SEARCH, details_with_op
from imibot.context import memory_search
from imibot.storage.memories import MemoryRecordStore


class MemorySearchTool(Tool):
    """Search the user's stored memory records (soft-deleted ones excluded)."""

    def __init__(self, memories: MemoryRecordStore, user_id: str, pool_size: int = 50, max_results: int = 10):
        self._memories = memories
        self._user_id = user_id
        self._pool_size = pool_size
        self._max_results = max_results

    @property
    def name(self) -> str:
        return "memory_search"

    @property
    def description(self) -> str:
        return (
            "Search the user's conversation history and stored memories. "
            "Use when you need context from past discussions."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Keywords to search for (e.g. 'email preferences', 'project deadlines')",
                    "minLength": 1,
                },
            },
            "required": ["query"],
        }

    async def execute(self, query: str, **kwargs: Any) -> ToolExecutionResult:
        records = self._memories.recent(self._user_id, limit=self._pool_size)
        if not records:
            return ToolExecutionResult(
                text=json.dumps({
                    "found": False,
                    "message": "No stored memories yet.",
                }),
                details=details_with_op(OP_MEMORY_SEARCH, found=False, searched=0),
            )

        merged = memory_search.search(records, [query], max_results=self._max_results)
        if not merged.results:
            return ToolExecutionResult(
                text=json.dumps({"found": False, "message": f'Nothing about "{query}" in past conversations.'}),
                details=details_with_op(OP_MEMORY_SEARCH, found=False, searched=merged.total_searched),
            )
        top = merged.results[0]
        return ToolExecutionResult(
            text=json.dumps({
                "found": True,
                "facts": [r.fact for r in merged.results],
                "thread_id": top.thread_id,
            }, ensure_ascii=False),
            details=details_with_op(
                OP_MEMORY_SEARCH,
                found=True,
                searched=merged.total_searched,
                result_count=len(merged.results),
            ),
        )
