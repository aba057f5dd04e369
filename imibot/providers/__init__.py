"""LLM provider abstraction module."""

from imibot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from imibot.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider", "ToolCallRequest"]
