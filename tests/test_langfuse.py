"""Tests for Langfuse observability integration."""

import os
from unittest.mock import patch

import litellm
import pytest
import structlog

from imibot.config.schema import Config, LangfuseConfig, ObservabilityConfig
from imibot.logging import bind_request_context
from imibot.providers.litellm_provider import LiteLLMProvider


@pytest.fixture(autouse=True)
def _clean_litellm_callbacks():
    """Reset litellm callbacks before/after each test."""
    original_success = litellm.success_callback[:]
    original_failure = litellm.failure_callback[:]
    yield
    litellm.success_callback = original_success
    litellm.failure_callback = original_failure


@pytest.fixture(autouse=True)
def _clean_env():
    """Remove Langfuse env vars and bound context after each test."""
    yield
    for key in ("LANGFUSE_PUBLIC_KEY", "LANGFUSE_SECRET_KEY", "LANGFUSE_HOST"):
        os.environ.pop(key, None)
    structlog.contextvars.clear_contextvars()


class TestLangfuseConfig:
    def test_default_disabled(self):
        cfg = LangfuseConfig()
        assert cfg.enabled is False
        assert cfg.public_key == ""
        assert cfg.secret_key == ""
        assert cfg.host == ""

    def test_config_has_observability(self):
        cfg = Config()
        assert isinstance(cfg.observability, ObservabilityConfig)
        assert cfg.observability.langfuse.enabled is False


class TestLangfuseCallbackSetup:
    @patch.dict(os.environ, {}, clear=False)
    def test_enabled_with_keys_registers_callbacks(self):
        cfg = LangfuseConfig(
            enabled=True,
            public_key="pk-test-123",
            secret_key="sk-test-456",
            host="https://langfuse.example.com",
        )
        provider = LiteLLMProvider(langfuse_config=cfg)
        assert "langfuse" in litellm.success_callback
        assert "langfuse" in litellm.failure_callback
        assert provider._langfuse_enabled is True
        assert os.environ["LANGFUSE_PUBLIC_KEY"] == "pk-test-123"
        assert os.environ["LANGFUSE_HOST"] == "https://langfuse.example.com"

    def test_disabled_no_callbacks(self):
        cfg = LangfuseConfig(enabled=False, public_key="pk", secret_key="sk")
        provider = LiteLLMProvider(langfuse_config=cfg)
        assert "langfuse" not in litellm.success_callback
        assert provider._langfuse_enabled is False

    def test_enabled_missing_keys_warns_no_callback(self):
        cfg = LangfuseConfig(enabled=True, public_key="", secret_key="")
        provider = LiteLLMProvider(langfuse_config=cfg)
        assert "langfuse" not in litellm.success_callback
        assert provider._langfuse_enabled is False

    @patch.dict(os.environ, {
        "LANGFUSE_PUBLIC_KEY": "env-pk",
        "LANGFUSE_SECRET_KEY": "env-sk",
    }, clear=False)
    def test_enabled_falls_back_to_env_vars(self):
        provider = LiteLLMProvider(langfuse_config=LangfuseConfig(enabled=True))
        assert "langfuse" in litellm.success_callback
        assert provider._langfuse_enabled is True


class TestLangfuseMetadata:
    def _make_provider(self) -> LiteLLMProvider:
        return LiteLLMProvider(langfuse_config=LangfuseConfig(enabled=True, public_key="pk", secret_key="sk"))

    def test_metadata_from_request_context(self):
        provider = self._make_provider()
        bind_request_context(thread_id="thread-7", user_id="alice", prompt_message_id="msg-1")
        structlog.contextvars.bind_contextvars(route="streaming", workflow_step="create_plan")

        meta = provider._build_langfuse_metadata()

        assert meta is not None
        assert meta["trace_user_id"] == "alice"
        assert meta["trace_session_id"] == "thread-7"
        assert meta["trace_tags"] == ["route:streaming", "step:create_plan"]

    def test_bind_request_context_resets_previous_request(self):
        provider = self._make_provider()
        bind_request_context(thread_id="t1", user_id="alice")
        bind_request_context(thread_id="t2", user_id=None)

        meta = provider._build_langfuse_metadata()

        assert meta == {"trace_session_id": "t2"}

    def test_metadata_without_contextvars(self):
        provider = self._make_provider()
        structlog.contextvars.clear_contextvars()
        assert provider._build_langfuse_metadata() is None

    def test_metadata_disabled_returns_none(self):
        provider = LiteLLMProvider(langfuse_config=None)
        bind_request_context(user_id="alice")
        assert provider._build_langfuse_metadata() is None
