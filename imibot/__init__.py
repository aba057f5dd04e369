"""imibot: orchestration layer of a conversational assistant."""

__version__ = "0.1.0"
