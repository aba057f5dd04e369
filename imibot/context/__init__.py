"""Layer 1 memory context: triviality, search path selection, retrieval and caching."""

from imibot.context.provider import ContextProvider, ContextResult
from imibot.context.triviality import TrivialityResult, classify

__all__ = ["ContextProvider", "ContextResult", "TrivialityResult", "classify"]
