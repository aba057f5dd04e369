"""Agent: routing, streaming path and tools."""

from imibot.agent.router import AgentRouter, RouteResult

__all__ = ["AgentRouter", "RouteResult"]
