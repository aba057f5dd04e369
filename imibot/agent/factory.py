"""Wire the router and its collaborators from configuration, once per process."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from imibot.agent.router import AgentRouter
from imibot.agent.streaming import StreamingAgent
from imibot.config.schema import Config
from imibot.context.provider import ContextProvider
from imibot.context.query_rewriter import QueryRewriter
from imibot.providers.base import LLMProvider
from imibot.providers.litellm_provider import LiteLLMProvider
from imibot.storage.workspace import Stores
from imibot.telemetry.recorder import ToolExecutionRecorder, UsageRecorder
from imibot.tool_router.client import ToolRouterClient, ToolRouterClientFactory
from imibot.tool_router.connections import ConnectionProviderClient
from imibot.tool_router.integrations import AppIntegrations
from imibot.tool_router.sessions import ToolSessionManager
from imibot.tool_router.tasks import BackgroundTaskLog
from imibot.workers.monitor import BackgroundWorkerMonitor
from imibot.workflow.orchestration import GenerationWorkflow


@dataclass
class Services:
    config: Config
    stores: Stores
    sessions: ToolSessionManager
    task_log: BackgroundTaskLog
    integrations: AppIntegrations
    workflow: GenerationWorkflow
    router: AgentRouter
    monitor: BackgroundWorkerMonitor


def make_provider(config: Config) -> LLMProvider:
    p = config.get_provider()
    return LiteLLMProvider(
        api_key=p.resolved_api_key if p else None,
        api_base=p.api_base if p else None,
        default_model=config.agent.model,
        extra_headers=p.extra_headers if p else None,
        langfuse_config=config.observability.langfuse,
        resilience_config=p.resilience if p else config.providers.openrouter.resilience,
    )


def build_services(
    config: Config,
    workspace: Path | None = None,
    *,
    provider: LLMProvider | None = None,
    connections: ConnectionProviderClient | None = None,
    client_factory: ToolRouterClientFactory = ToolRouterClient,
) -> Services:
    stores = Stores.open(workspace or config.workspace_path)
    provider = provider or make_provider(config)
    model = config.agent.model

    tr = config.tool_router
    if connections is None and tr.resolved_api_key:
        connections = ConnectionProviderClient(tr.resolved_api_key, tr.base_url, tr.request_timeout_s)
    sessions = ToolSessionManager(stores.tool_sessions, connections, expiry_days=tr.session_expiry_days)
    integrations = AppIntegrations(sessions, connections, client_factory=client_factory)

    usage_recorder = UsageRecorder(stores.usage)
    tool_recorder = ToolExecutionRecorder(stores.tool_logs)

    context = ContextProvider(
        memories=stores.memories,
        messages=stores.messages,
        context_store=stores.context,
        rewriter=QueryRewriter(provider, config.context.rewrite_model or model),
        config=config.context,
    )
    agent = StreamingAgent(
        provider=provider,
        threads=stores.threads,
        messages=stores.messages,
        memories=stores.memories,
        context=context,
        usage_recorder=usage_recorder,
        tool_recorder=tool_recorder,
        integrations=integrations,
        model=model,
        temperature=config.agent.temperature,
        max_tokens=config.agent.max_tokens,
        agent_name=config.agent.agent_name,
    )
    workflow = GenerationWorkflow(
        provider=provider,
        model=model,
        integrations=integrations,
        sessions=sessions,
        messages=stores.messages,
        tool_recorder=tool_recorder,
        usage_recorder=usage_recorder,
        client_factory=client_factory,
        config=config.workflow,
        streaming_agent=agent,
        agent_name=config.agent.agent_name,
        temperature=config.agent.temperature,
    )
    task_log = BackgroundTaskLog(stores.tasks)
    return Services(
        config=config,
        stores=stores,
        sessions=sessions,
        task_log=task_log,
        integrations=integrations,
        workflow=workflow,
        router=AgentRouter(context=context, workflow=workflow, config=config.router),
        monitor=BackgroundWorkerMonitor(
            sessions,
            task_log,
            client_factory=client_factory,
            interval_s=config.workers.tick_interval_s,
            mentions_count=config.workers.twitter_mentions_count,
        ),
    )


def build_router(config: Config, workspace: Path | None = None, **kwargs) -> AgentRouter:
    return build_services(config, workspace, **kwargs).router
