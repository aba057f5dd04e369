"""Agent tools module."""

from imibot.agent.tools.base import Tool, ToolExecutionResult
from imibot.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolExecutionResult", "ToolRegistry"]
