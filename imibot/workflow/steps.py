"""The four steps of the generation workflow.

Each step is a plain coroutine taking an explicit :class:`StepContext` and its
own :class:`StepBudget`, so large intermediate artifacts (raw tool output)
never have to fit into the final response's context. Steps hand typed values
to each other: :class:`Plan` -> :class:`ToolResults` -> :class:`Summary`.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Literal

import json_repair

from imibot.errors import GenerationError, WorkflowStepError
from imibot.logging import get_logger
from imibot.providers.base import LLMProvider, LLMResponse
from imibot.storage.models import ThreadMessage, ToolArguments
from imibot.storage.pending import PendingMessage
from imibot.storage.threads import MessageStore
from imibot.telemetry.recorder import ToolExecutionRecorder, UsageRecorder
from imibot.tool_router.client import MULTI_EXECUTE, ToolRouterClientFactory
from imibot.tool_router.integrations import AppIntegrations
from imibot.tool_router.sessions import ToolSessionManager
from imibot.utils.helpers import truncate

logger = get_logger(__name__)

APP_KEYWORDS = ("email", "gmail", "docs", "document", "google", "notion", "slack")

_LIST_MARKERS = ("LIST", "SEARCH", "GET_")
_FETCH_MARKERS = ("GET_DOCUMENT", "GET_EMAIL", "GET_PAGE", "FIND_FILE")
_ACT_MARKERS = ("SEND", "CREATE", "POST", "UPDATE")


@dataclass
class StepBudget:
    max_input_chars: int
    max_output_tokens: int = 1024


@dataclass
class StepContext:
    """Everything a step may touch for one request."""

    user_id: str
    thread_id: str
    provider: LLMProvider | None
    model: str
    integrations: AppIntegrations
    sessions: ToolSessionManager
    client_factory: ToolRouterClientFactory
    messages: MessageStore
    tool_recorder: ToolExecutionRecorder
    usage_recorder: UsageRecorder
    agent_name: str = "Imi"
    temperature: float = 0.3


PlanType = Literal["simple", "app_integration", "needs_connection", "error"]


@dataclass
class Plan:
    type: PlanType
    use_case: str = ""
    tools: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    app: str | None = None
    connected_apps: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class ToolResults:
    type: PlanType
    data: Any = None
    stages: list[Any] = field(default_factory=list)
    use_case: str = ""
    app: str | None = None
    error: str | None = None


@dataclass
class Summary:
    summary: str
    original_request: str
    has_error: bool = False
    needs_auth: bool = False
    auth_url: str | None = None
    app: str | None = None


def is_app_task(message: str) -> bool:
    lower = message.lower()
    return any(keyword in lower for keyword in APP_KEYWORDS)


def needed_app(message: str) -> str:
    lower = message.lower()
    if "email" in lower or "gmail" in lower:
        return "gmail"
    if "notion" in lower:
        return "notion"
    if "slack" in lower:
        return "slack"
    if "docs" in lower or "document" in lower:
        return "googledocs"
    return "gmail"


def detect_dependencies(tools: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    """Group tools into list -> fetch -> act stages.

    Each tool lands in exactly one stage: fetch markers win over list markers,
    list markers over act markers, and unmatched tools join the first stage.
    Empty stages are dropped.
    """
    list_stage: list[dict[str, Any]] = []
    fetch_stage: list[dict[str, Any]] = []
    act_stage: list[dict[str, Any]] = []
    for tool in tools:
        slug = str(tool.get("tool_slug", "")).upper()
        if any(m in slug for m in _FETCH_MARKERS):
            fetch_stage.append(tool)
        elif any(m in slug for m in _LIST_MARKERS):
            list_stage.append(tool)
        elif any(m in slug for m in _ACT_MARKERS):
            act_stage.append(tool)
        else:
            list_stage.append(tool)
    stages = [s for s in (list_stage, fetch_stage, act_stage) if s]
    logger.debug("tool_stages_detected", stages=[len(s) for s in stages])
    return stages or [list(tools)]


async def _complete(
    ctx: StepContext,
    prompt: str,
    budget: StepBudget,
    *,
    step: str,
    system: str | None = None,
) -> str:
    """One bounded, non-streaming completion; usage is recorded."""
    if ctx.provider is None:
        raise WorkflowStepError(step, "no LLM provider configured")
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": truncate(prompt, budget.max_input_chars)})
    response = await ctx.provider.chat(
        messages=messages,
        model=ctx.model,
        max_tokens=budget.max_output_tokens,
        temperature=ctx.temperature,
    )
    if response.is_error:
        raise GenerationError(response.content or "LLM call failed")
    ctx.usage_recorder.record(
        user_id=ctx.user_id,
        agent_name=f"workflow.{step}",
        model=ctx.model,
        usage=response.usage,
        thread_id=ctx.thread_id,
    )
    return response.content or ""


# -- step 1 -----------------------------------------------------------------


async def create_plan(ctx: StepContext, budget: StepBudget, user_message: str) -> Plan:
    if not is_app_task(user_message):
        return Plan(type="simple", use_case=user_message, actions=[{"tool": "respond", "args": {"query": user_message}}])

    connections = await ctx.integrations.check_connections(ctx.user_id)
    connected = list(connections.data.get("connected_apps") or [])
    search = await ctx.integrations.search(
        ctx.user_id, truncate(user_message, budget.max_input_chars), connected,
    )
    if not search.success:
        logger.warning("plan_tool_search_failed", error=search.message)
        return Plan(type="error", use_case=user_message, error=search.message)

    tools = list(search.data.get("tools") or [])
    logger.info("plan_tools_found", count=len(tools))
    if tools:
        return Plan(type="app_integration", use_case=user_message, tools=tools, connected_apps=connected)

    app = needed_app(user_message)
    if app not in connected:
        return Plan(type="needs_connection", use_case=user_message, app=app, connected_apps=connected)
    return Plan(
        type="error",
        use_case=user_message,
        error=f"No tools found for this request, even though {app} is connected",
    )


# -- step 2 -----------------------------------------------------------------


async def _generate_arguments(
    ctx: StepContext,
    budget: StepBudget,
    plan: Plan,
    tool: dict[str, Any],
    stage_index: int,
    previous: Any,
) -> ToolArguments:
    slug = str(tool["tool_slug"])
    prior = (
        f"PREVIOUS STAGE RESULTS (use these for IDs and data):\n{json.dumps(previous, default=str)}"
        if stage_index > 0
        else "This is the first stage - no previous results yet."
    )
    prompt = (
        f"You generate arguments for one tool call in stage {stage_index + 1}.\n\n"
        f"USER ID: {ctx.user_id}\n"
        f'USER REQUEST: "{plan.use_case}"\n\n'
        f"TOOL: {slug}\n"
        f"DESCRIPTION: {tool.get('description', '')}\n"
        f"INPUT SCHEMA:\n{json.dumps(tool.get('input_schema') or {}, indent=2)}\n\n"
        f"{prior}\n\n"
        'Reply with JSON only: {"arguments": {...}}. Never use placeholder values.'
    )
    text = await _complete(ctx, prompt, budget, step="execute_tools")
    parsed = json_repair.loads(text) if text else {}
    arguments = parsed.get("arguments", parsed) if isinstance(parsed, dict) else {}
    return ToolArguments(slug, arguments if isinstance(arguments, dict) else {})


async def _run_stage(
    ctx: StepContext,
    budget: StepBudget,
    plan: Plan,
    client: Any,
    stage: list[dict[str, Any]],
    stage_index: int,
    previous: Any,
) -> Any:
    calls = await asyncio.gather(*(
        _generate_arguments(ctx, budget, plan, tool, stage_index, previous) for tool in stage
    ))
    batch = ToolArguments(MULTI_EXECUTE, {"tools": [c.to_dict() for c in calls]})
    async with ctx.tool_recorder.timed(
        tool_name=MULTI_EXECUTE,
        user_id=ctx.user_id,
        thread_id=ctx.thread_id,
        args=batch,
    ) as outcome:
        result = await client.execute_tools(calls, thought=f"Stage {stage_index + 1} of: {plan.use_case}")
        if result.is_error:
            outcome["success"] = False
            outcome["error"] = truncate(result.text, 200)
    logger.info("tool_stage_completed", stage=stage_index + 1, tools=[c.tool_slug for c in calls])
    return result.data if result.data is not None else result.text


async def execute_tools(ctx: StepContext, budget: StepBudget, plan: Plan) -> ToolResults:
    if plan.type == "error":
        return ToolResults(type="error", error=plan.error, use_case=plan.use_case)

    if plan.type == "needs_connection":
        assert plan.app is not None
        connection = await ctx.integrations.initiate_connection(ctx.user_id, plan.app)
        return ToolResults(type="needs_connection", data=connection.to_dict(), app=plan.app, use_case=plan.use_case)

    if plan.type == "simple":
        return ToolResults(type="simple", data={"actions": plan.actions}, use_case=plan.use_case)

    try:
        if not plan.tools:
            raise WorkflowStepError("execute_tools", "No tools found in plan")
        session = ctx.sessions.get_by_user(ctx.user_id)
        if session is None:
            raise WorkflowStepError("execute_tools", "No tool session found")
        stages = detect_dependencies(plan.tools)
        stage_results: list[Any] = []
        async with ctx.client_factory(session.session_url) as client:
            for index, stage in enumerate(stages):
                previous = stage_results[index - 1] if index > 0 else None
                stage_results.append(await _run_stage(ctx, budget, plan, client, stage, index, previous))
    except Exception as e:
        logger.warning("tool_execution_failed", error=str(e), error_type=type(e).__name__)
        return ToolResults(type="error", error=str(e), use_case=plan.use_case)

    return ToolResults(
        type="app_integration",
        data={f"stage_{i + 1}": result for i, result in enumerate(stage_results)},
        stages=stage_results,
        use_case=plan.use_case,
    )


# -- step 3 -----------------------------------------------------------------


async def summarize_results(
    ctx: StepContext,
    budget: StepBudget,
    results: ToolResults,
    user_message: str,
) -> Summary:
    if results.type == "error":
        return Summary(
            summary=f"There was an error executing the task: {results.error}",
            original_request=user_message,
            has_error=True,
        )

    if results.type == "needs_connection":
        connection = results.data or {}
        auth_url = (connection.get("data") or {}).get("connection_url")
        if connection.get("success") and auth_url:
            return Summary(
                summary=(
                    f"To complete this task, you need to connect your {results.app} account first. "
                    f"{connection.get('message', '')}"
                ).strip(),
                original_request=user_message,
                needs_auth=True,
                auth_url=auth_url,
                app=results.app,
            )
        return Summary(
            summary=f"You need to connect your {results.app} account to complete this task.",
            original_request=user_message,
            has_error=True,
            app=results.app,
        )

    raw = json.dumps(results.data, default=str)
    prompt = (
        f'User asked: "{user_message}"\n\n'
        f"Tool execution returned this data:\n{raw}\n\n"
        "Summarize the key findings: what was accomplished, the important data, "
        f"and any actions taken. Keep it under {budget.max_output_tokens} tokens."
    )
    try:
        text = await _complete(ctx, prompt, budget, step="summarize_results")
    except Exception as e:
        logger.warning("summary_fallback", error=str(e), error_type=type(e).__name__)
        return Summary(summary=f"Task completed. Raw results: {raw[:200]}...", original_request=user_message)
    return Summary(summary=text, original_request=user_message)


# -- step 4 -----------------------------------------------------------------


def response_prompt(summary: Summary) -> str:
    if summary.has_error:
        return f"Something went wrong: {summary.summary}\n\nExplain this to the user in a friendly way."
    prompt = (
        "I completed the task. Here's what happened:\n\n"
        f"{summary.summary}\n\n"
        "Format this nicely for the user. Keep it conversational."
    )
    if summary.auth_url:
        prompt += f"\n\nInclude this authentication link exactly: {summary.auth_url}"
    return prompt


async def generate_response(
    ctx: StepContext,
    budget: StepBudget,
    summary: Summary,
    prompt_message_id: str,
) -> ThreadMessage:
    """Stream the user-facing reply into a pending message of the thread."""
    if ctx.provider is None:
        raise WorkflowStepError("generate_response", "no LLM provider configured")

    pending = PendingMessage(
        ctx.messages, ctx.thread_id, prompt_message_id=prompt_message_id, agent_name=ctx.agent_name,
    )
    messages = [{"role": "user", "content": truncate(response_prompt(summary), budget.max_input_chars)}]
    response: LLMResponse | None = None
    try:
        async for event in ctx.provider.stream_chat(
            messages=messages,
            model=ctx.model,
            max_tokens=budget.max_output_tokens,
            temperature=ctx.temperature,
        ):
            if event["type"] == "text_delta":
                await pending.append(event["delta"])
            elif event["type"] == "done":
                response = event["response"]
        if response is None or response.is_error:
            raise GenerationError((response.content if response else None) or "stream ended without a response")
    except Exception as e:
        pending.fail(str(e))
        raise

    pending.succeed(response.content or pending.text)
    ctx.usage_recorder.record(
        user_id=ctx.user_id,
        agent_name=ctx.agent_name,
        model=ctx.model,
        usage=response.usage,
        thread_id=ctx.thread_id,
    )
    return next(m for m in reversed(ctx.messages.list(ctx.thread_id)) if m.id == pending.id)
