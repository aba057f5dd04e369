"""Per-user external tool sessions: lifecycle, MCP transport, connection reports, task log."""

from imibot.tool_router.client import ToolCallOutcome, ToolRouterClient
from imibot.tool_router.connections import ConnectionProviderClient, StaleConnectionReport
from imibot.tool_router.integrations import AppIntegrations, IntegrationResult
from imibot.tool_router.sessions import DeleteResult, SessionHandle, ToolSessionManager
from imibot.tool_router.tasks import BackgroundTaskLog

__all__ = [
    "AppIntegrations",
    "BackgroundTaskLog",
    "ConnectionProviderClient",
    "DeleteResult",
    "IntegrationResult",
    "SessionHandle",
    "StaleConnectionReport",
    "ToolCallOutcome",
    "ToolRouterClient",
    "ToolSessionManager",
]
