"""Generation workflow: plan -> execute tools -> summarize -> respond."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from imibot.config.schema import WorkflowConfig
from imibot.errors import GenerationError
from imibot.logging import get_logger
from imibot.providers.base import LLMProvider
from imibot.storage.threads import MessageStore
from imibot.telemetry.recorder import ToolExecutionRecorder, UsageRecorder
from imibot.tool_router.client import ToolRouterClient, ToolRouterClientFactory
from imibot.tool_router.integrations import AppIntegrations
from imibot.tool_router.sessions import ToolSessionManager
from imibot.workflow.steps import (
    StepBudget,
    StepContext,
    create_plan,
    execute_tools,
    generate_response,
    summarize_results,
)

if TYPE_CHECKING:
    from imibot.agent.streaming import StreamingAgent, StreamResult

logger = get_logger(__name__)

T = TypeVar("T")


class GenerationWorkflow:
    """Constructed once at startup and shared by every request.

    :meth:`execute` runs the four steps strictly in sequence; the first step
    that raises aborts the run and its exception reaches the caller unchanged.
    :meth:`stream_response` is the streaming entry point used as the primary
    generation path.
    """

    def __init__(
        self,
        *,
        provider: LLMProvider | None,
        model: str,
        integrations: AppIntegrations,
        sessions: ToolSessionManager,
        messages: MessageStore,
        tool_recorder: ToolExecutionRecorder,
        usage_recorder: UsageRecorder,
        client_factory: ToolRouterClientFactory = ToolRouterClient,
        config: WorkflowConfig | None = None,
        streaming_agent: StreamingAgent | None = None,
        agent_name: str = "Imi",
        temperature: float = 0.3,
    ) -> None:
        self.provider = provider
        self.model = model
        self.integrations = integrations
        self.sessions = sessions
        self.messages = messages
        self.tool_recorder = tool_recorder
        self.usage_recorder = usage_recorder
        self.client_factory = client_factory
        self.config = config or WorkflowConfig()
        self.streaming_agent = streaming_agent
        self.agent_name = agent_name
        self.temperature = temperature

        cfg = self.config
        self.budgets = {
            "create_plan": StepBudget(cfg.plan_max_input_chars),
            "execute_tools": StepBudget(cfg.execute_max_input_chars),
            "summarize_results": StepBudget(cfg.summary_max_input_chars, cfg.summary_max_tokens),
            "generate_response": StepBudget(cfg.summary_max_input_chars, cfg.respond_max_tokens),
        }

    def step_context(self, thread_id: str, user_id: str) -> StepContext:
        return StepContext(
            user_id=user_id,
            thread_id=thread_id,
            provider=self.provider,
            model=self.config.helper_model or self.model,
            integrations=self.integrations,
            sessions=self.sessions,
            client_factory=self.client_factory,
            messages=self.messages,
            tool_recorder=self.tool_recorder,
            usage_recorder=self.usage_recorder,
            agent_name=self.agent_name,
            temperature=self.temperature,
        )

    async def _run_step(self, name: str, step: Callable[..., Awaitable[T]], *args: Any) -> T:
        logger.info("workflow_step_started", step=name)
        t0 = time.monotonic()
        try:
            result = await step(*args)
        except Exception as e:
            logger.warning(
                "workflow_step_failed",
                step=name,
                duration_ms=round((time.monotonic() - t0) * 1000, 1),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        logger.info("workflow_step_completed", step=name, duration_ms=round((time.monotonic() - t0) * 1000, 1))
        return result

    async def execute(
        self,
        thread_id: str,
        user_id: str,
        user_message: str,
        prompt_message_id: str,
    ) -> dict[str, bool]:
        ctx = self.step_context(thread_id, user_id)
        b = self.budgets
        plan = await self._run_step("create_plan", create_plan, ctx, b["create_plan"], user_message)
        results = await self._run_step("execute_tools", execute_tools, ctx, b["execute_tools"], plan)
        summary = await self._run_step(
            "summarize_results", summarize_results, ctx, b["summarize_results"], results, user_message,
        )
        await self._run_step(
            "generate_response", generate_response, ctx, b["generate_response"], summary, prompt_message_id,
        )
        return {"success": True}

    async def stream_response(
        self,
        thread_id: str,
        user_id: str,
        user_message: str,
        prompt_message_id: str,
        max_iterations: int = 10,
    ) -> StreamResult:
        if self.streaming_agent is None:
            raise GenerationError("streaming agent is not configured")
        return await self.streaming_agent.run(
            thread_id=thread_id,
            user_id=user_id,
            user_message=user_message,
            prompt_message_id=prompt_message_id,
            max_iterations=max_iterations,
        )
