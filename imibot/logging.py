"""Structured logging for imibot, built on structlog."""

import json
import logging
import re
import sys

import structlog

# Substrings that look like credentials for the providers imibot talks to
_SECRET_PATTERNS = [
    re.compile(r"sk-[A-Za-z0-9_-]{10,}"),           # OpenAI / OpenRouter / Anthropic
    re.compile(r"Bearer\s+[A-Za-z0-9_\-.]{10,}"),    # Authorization headers
    re.compile(r"ak_[A-Za-z0-9_-]{10,}"),            # Composio API keys
    re.compile(r"pk-lf-[A-Za-z0-9_-]{10,}"),         # Langfuse public key
    re.compile(r"sk-lf-[A-Za-z0-9_-]{10,}"),         # Langfuse secret key
]

# Keys whose values are never logged verbatim, whatever they look like
_SECRET_KEYS = frozenset({"api_key", "x-api-key", "authorization", "secret_key"})


def mask_secret(value: str) -> str:
    """Mask a secret value, keeping first 4 and last 4 chars visible.

    >>> mask_secret("ak_abc123456789xyz")
    'ak_a****9xyz'
    """
    if len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def _redact_value(value: str) -> str:
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(lambda m: mask_secret(m.group(0)), value)
    return value


def _redact_event(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Structlog processor that redacts secrets from string values."""
    for key, val in event_dict.items():
        if not isinstance(val, str):
            continue
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = mask_secret(val)
        else:
            event_dict[key] = _redact_value(val)
    return event_dict


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog with a stdlib logging backend.

    Args:
        json_output: Emit JSON lines when True, a human-readable console format otherwise.
        level: Log level for the ``imibot`` logger hierarchy.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _redact_event,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer(
            serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, default=str, **kw)
        )
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger("imibot")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))


def bind_request_context(**fields: str) -> None:
    """Reset and bind per-request context (thread, user, prompt message) for every log line."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in fields.items() if v is not None})


def get_logger(name: str = "imibot") -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger for the given name."""
    return structlog.get_logger(name)
