"""LiteLLM provider implementation for multi-provider support."""

import asyncio
import json
import os
import time
from typing import Any, AsyncIterator

import json_repair
import litellm
import structlog
from litellm import acompletion

from imibot.logging import get_logger, mask_secret
from imibot.providers.base import LLMProvider, LLMResponse, ToolCallRequest

logger = get_logger("imibot.providers.litellm")

# Standard OpenAI chat-completion message keys; anything else is stripped before the call.
_ALLOWED_MSG_KEYS = frozenset({"role", "content", "tool_calls", "tool_call_id", "name"})


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM.

    Model names carry their provider prefix (``openrouter/...``,
    ``anthropic/...``) and are passed to LiteLLM unchanged.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openrouter/z-ai/glm-4.5",
        extra_headers: dict[str, str] | None = None,
        request_extras: dict[str, Any] | None = None,
        langfuse_config: Any | None = None,
        resilience_config: Any | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.request_extras = request_extras or {}
        self._langfuse_enabled = False

        self._resilience = resilience_config
        self._consecutive_failures: int = 0
        self._circuit_open_until: float = 0.0

        if api_key:
            logger.info("provider_initialized", model=default_model, api_key=mask_secret(api_key))

        litellm.suppress_debug_info = True
        litellm.drop_params = True

        if langfuse_config is not None:
            self._setup_langfuse(langfuse_config)

    def _setup_langfuse(self, config: Any) -> None:
        """Register LiteLLM's Langfuse callbacks when enabled and keyed."""
        if not getattr(config, "enabled", False):
            return

        public_key = config.public_key or os.environ.get("LANGFUSE_PUBLIC_KEY", "")
        secret_key = config.secret_key or os.environ.get("LANGFUSE_SECRET_KEY", "")
        host = config.host or os.environ.get("LANGFUSE_HOST", "")

        if not public_key or not secret_key:
            logger.warning("langfuse_missing_keys", hint="Set public_key and secret_key or LANGFUSE_PUBLIC_KEY/LANGFUSE_SECRET_KEY env vars")
            return

        os.environ.setdefault("LANGFUSE_PUBLIC_KEY", public_key)
        os.environ.setdefault("LANGFUSE_SECRET_KEY", secret_key)
        if host:
            os.environ.setdefault("LANGFUSE_HOST", host)

        if "langfuse" not in litellm.success_callback:
            litellm.success_callback.append("langfuse")
        if "langfuse" not in litellm.failure_callback:
            litellm.failure_callback.append("langfuse")

        self._langfuse_enabled = True
        logger.info("langfuse_enabled", host=host or "(default)")

    def _build_langfuse_metadata(self) -> dict[str, Any] | None:
        """Trace metadata (user, thread, prompt message) from the bound request context."""
        if not self._langfuse_enabled:
            return None

        ctx = structlog.contextvars.get_contextvars()
        if not ctx:
            return None

        metadata: dict[str, Any] = {}
        if ctx.get("user_id"):
            metadata["trace_user_id"] = ctx["user_id"]
        if ctx.get("thread_id"):
            metadata["trace_session_id"] = ctx["thread_id"]
        tags = []
        if ctx.get("route"):
            tags.append(f"route:{ctx['route']}")
        if ctx.get("workflow_step"):
            tags.append(f"step:{ctx['workflow_step']}")
        if tags:
            metadata["trace_tags"] = tags
        return metadata or None

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Strip non-standard keys and ensure assistant messages have a content key."""
        sanitized = []
        for msg in messages:
            clean = {k: v for k, v in msg.items() if k in _ALLOWED_MSG_KEYS}
            if clean.get("role") == "assistant" and "content" not in clean:
                clean["content"] = None
            if clean.get("tool_calls"):
                fixed_calls = []
                for tc in clean["tool_calls"]:
                    tc = dict(tc)
                    if "function" in tc:
                        fn = dict(tc["function"])
                        if isinstance(fn.get("arguments"), dict):
                            fn["arguments"] = json.dumps(fn["arguments"], ensure_ascii=False)
                        tc["function"] = fn
                    fixed_calls.append(tc)
                clean["tool_calls"] = fixed_calls
            sanitized.append(clean)
        return sanitized

    @staticmethod
    def _value(obj: Any, key: str, default: Any = None) -> Any:
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if not isinstance(raw, str) or not raw:
            return {}
        try:
            parsed = json_repair.loads(raw)
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    @classmethod
    def _extract_tool_calls_from_message(cls, message: Any) -> list[ToolCallRequest]:
        tool_calls: list[ToolCallRequest] = []
        for idx, tc in enumerate(cls._value(message, "tool_calls") or []):
            fn = cls._value(tc, "function") or {}
            name = cls._value(fn, "name")
            if not isinstance(name, str) or not name:
                continue
            call_id = cls._value(tc, "id") or f"call_{idx}"
            tool_calls.append(ToolCallRequest(
                id=str(call_id),
                name=name,
                arguments=cls._parse_arguments(cls._value(fn, "arguments")),
            ))
        return tool_calls

    @classmethod
    def _extract_delta_text(cls, delta: Any) -> str:
        content = cls._value(delta, "content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                text = cls._value(item, "text")
                if isinstance(text, str) and text:
                    parts.append(text)
            return "".join(parts)
        return ""

    @classmethod
    def _accumulate_stream_tool_call_deltas(
        cls,
        delta: Any,
        buffers: dict[str, dict[str, str]],
    ) -> None:
        raw_tool_calls = cls._value(delta, "tool_calls")
        if not isinstance(raw_tool_calls, list):
            return
        for idx, tc in enumerate(raw_tool_calls):
            tc_id = cls._value(tc, "id")
            tc_index = cls._value(tc, "index")
            # Later chunks of the same call carry only the index
            key = f"idx_{tc_index}" if tc_index is not None else str(tc_id or f"seq_{idx}")
            buf = buffers.setdefault(key, {"id": "", "name": "", "arguments": ""})
            if tc_id:
                buf["id"] = str(tc_id)
            fn = cls._value(tc, "function") or {}
            name = cls._value(fn, "name")
            if isinstance(name, str) and name:
                buf["name"] = name
            args_piece = cls._value(fn, "arguments")
            if isinstance(args_piece, str) and args_piece:
                buf["arguments"] += args_piece

    @classmethod
    def _tool_calls_from_stream_buffers(cls, buffers: dict[str, dict[str, str]]) -> list[ToolCallRequest]:
        tool_calls: list[ToolCallRequest] = []
        for buf in buffers.values():
            if not buf["name"]:
                continue
            tool_calls.append(ToolCallRequest(
                id=buf["id"] or f"call_{len(tool_calls)}",
                name=buf["name"],
                arguments=cls._parse_arguments(buf["arguments"] or "{}"),
            ))
        return tool_calls

    def _check_circuit_breaker(self) -> str | None:
        """Return an error message if the circuit is open, else None."""
        rc = self._resilience
        if not rc or rc.circuit_breaker_threshold <= 0:
            return None
        if self._consecutive_failures < rc.circuit_breaker_threshold:
            return None
        now = time.monotonic()
        if now < self._circuit_open_until:
            return (
                f"Circuit breaker open: {self._consecutive_failures} consecutive failures. "
                f"Retry after {int(self._circuit_open_until - now)}s cooldown."
            )
        # Cooldown expired: half-open, allow one probe
        return None

    def _record_result(self, success: bool) -> None:
        rc = self._resilience
        if not rc or rc.circuit_breaker_threshold <= 0:
            return
        if success:
            self._consecutive_failures = 0
            self._circuit_open_until = 0.0
            return
        self._consecutive_failures += 1
        if self._consecutive_failures >= rc.circuit_breaker_threshold:
            self._circuit_open_until = time.monotonic() + rc.circuit_breaker_cooldown
            logger.warning(
                "circuit_breaker_opened",
                failures=self._consecutive_failures,
                cooldown=rc.circuit_breaker_cooldown,
            )

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(self._sanitize_empty_content(messages)),
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
        }
        if stream:
            kwargs["stream"] = True
            kwargs["stream_options"] = {"include_usage": True}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        for key, value in self.request_extras.items():
            kwargs.setdefault(key, value)
        langfuse_metadata = self._build_langfuse_metadata()
        if langfuse_metadata:
            kwargs["metadata"] = langfuse_metadata
        rc = self._resilience
        if rc:
            kwargs["request_timeout"] = rc.timeout
            kwargs["num_retries"] = rc.max_retries
        return kwargs

    async def _call(self, kwargs: dict[str, Any]) -> Any:
        rc = self._resilience
        coro = acompletion(**kwargs)
        if rc:
            return await asyncio.wait_for(coro, timeout=rc.timeout + 30)
        return await coro

    def _error_text(self, error: Exception) -> str:
        error_msg = str(error)
        if self.api_key and self.api_key in error_msg:
            error_msg = error_msg.replace(self.api_key, mask_secret(self.api_key))
        return error_msg

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            tools: Optional list of tool definitions in OpenAI format.
            model: Model identifier (e.g., 'openrouter/z-ai/glm-4.5').
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.

        Returns:
            LLMResponse with content and/or tool calls.
        """
        model = model or self.default_model
        kwargs = self._build_kwargs(messages, tools, model, max_tokens, temperature, stream=False)

        cb_error = self._check_circuit_breaker()
        if cb_error:
            return LLMResponse(content=f"Error calling LLM: {cb_error}", finish_reason="error")

        try:
            response = await self._call(kwargs)
        except asyncio.TimeoutError:
            self._record_result(False)
            logger.error("llm_call_timeout", model=model)
            return LLMResponse(content="Error calling LLM: request timed out", finish_reason="error")
        except Exception as e:
            self._record_result(False)
            error_msg = self._error_text(e)
            logger.error("llm_call_failed", model=model, error=error_msg)
            return LLMResponse(content=f"Error calling LLM: {error_msg}", finish_reason="error")

        self._record_result(True)
        return self._parse_response(response)

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream chat completion as provider-agnostic events."""
        model = model or self.default_model
        kwargs = self._build_kwargs(messages, tools, model, max_tokens, temperature, stream=True)

        cb_error = self._check_circuit_breaker()
        if cb_error:
            yield {
                "type": "done",
                "response": LLMResponse(content=f"Error calling LLM: {cb_error}", finish_reason="error"),
            }
            return

        content_parts: list[str] = []
        buffers: dict[str, dict[str, str]] = {}
        final_finish_reason = "stop"
        final_usage: dict[str, int] = {}
        fallback_tool_calls: list[ToolCallRequest] = []

        try:
            stream = await self._call(kwargs)
            async for chunk in stream:
                usage = self._value(chunk, "usage")
                if usage is not None:
                    final_usage = {
                        "prompt_tokens": int(self._value(usage, "prompt_tokens", 0) or 0),
                        "completion_tokens": int(self._value(usage, "completion_tokens", 0) or 0),
                        "total_tokens": int(self._value(usage, "total_tokens", 0) or 0),
                    }
                choices = self._value(chunk, "choices") or []
                if not choices:
                    continue
                choice = choices[0]
                finish_reason = self._value(choice, "finish_reason")
                if isinstance(finish_reason, str) and finish_reason:
                    final_finish_reason = finish_reason

                delta = self._value(choice, "delta") or {}
                text = self._extract_delta_text(delta)
                if text:
                    content_parts.append(text)
                    yield {"type": "text_delta", "delta": text}
                self._accumulate_stream_tool_call_deltas(delta, buffers)

                msg = self._value(choice, "message")
                if msg is not None:
                    fallback_tool_calls = self._extract_tool_calls_from_message(msg)
        except asyncio.TimeoutError:
            self._record_result(False)
            logger.error("llm_stream_timeout", model=model)
            yield {
                "type": "done",
                "response": LLMResponse(content="Error calling LLM: request timed out", finish_reason="error"),
            }
            return
        except Exception as e:
            self._record_result(False)
            error_msg = self._error_text(e)
            logger.error("llm_stream_failed", model=model, error=error_msg)
            yield {
                "type": "done",
                "response": LLMResponse(content=f"Error calling LLM: {error_msg}", finish_reason="error"),
            }
            return

        self._record_result(True)
        yield {
            "type": "done",
            "response": LLMResponse(
                content="".join(content_parts) or None,
                tool_calls=self._tool_calls_from_stream_buffers(buffers) or fallback_tool_calls,
                finish_reason=final_finish_reason or "stop",
                usage=final_usage,
            ),
        }

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=message.content,
            tool_calls=self._extract_tool_calls_from_message(message),
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
            reasoning_content=getattr(message, "reasoning_content", None) or None,
        )

    def get_default_model(self) -> str:
        return self.default_model
