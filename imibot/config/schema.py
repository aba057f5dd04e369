"""Configuration schema using Pydantic."""

from __future__ import annotations

import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_REF = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; unset variables leave the value unchanged."""
    if not value:
        return value
    match = _ENV_REF.match(value.strip())
    if not match:
        return value
    return os.environ.get(match.group(1), value)


class Base(BaseModel):
    """Accept camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResilienceConfig(Base):
    timeout: int = 120
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: int = 60


class ProviderConfig(Base):
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key)


class ProvidersConfig(Base):
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)


class AgentConfig(Base):
    workspace: str = "~/.imibot/workspace"
    model: str = "openrouter/z-ai/glm-4.5"
    temperature: float = 0.3
    max_tokens: int = 4096
    agent_name: str = "Imi"


class RouterConfig(BaseSettings):
    """Generation path toggles, read from the environment.

    ``PRIMARY_GENERATION_ENABLED`` gates the streaming path (default on),
    ``SECONDARY_GENERATION_ENABLED`` gates the fallback path (default off).
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)

    primary_generation_enabled: bool = True
    secondary_generation_enabled: bool = False
    primary_max_iterations: int = 10


class ContextConfig(Base):
    fresh_window_s: float = 60.0
    previous_context_window_s: float = 120.0
    ttl_minutes: int = 3
    recent_messages: int = 5
    memory_pool_size: int = 50
    max_results: int = 10
    fast_threshold: float = 0.2
    smart_threshold: float = 0.6
    force_smart_path: bool = False
    rewrite_model: str | None = None


class ToolRouterConfig(Base):
    api_key: str = ""
    base_url: str = "https://backend.composio.dev"
    request_timeout_s: float = 15.0
    session_expiry_days: int = 7
    stale_after_minutes: int = 10

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key) or os.environ.get("COMPOSIO_API_KEY", "")


class WorkflowConfig(Base):
    plan_max_input_chars: int = 8_000
    execute_max_input_chars: int = 16_000
    summary_max_input_chars: int = 24_000
    summary_max_tokens: int = 500
    respond_max_tokens: int = 1_024
    helper_model: str | None = None


class WorkersConfig(Base):
    tick_interval_s: float = 300.0
    twitter_mentions_count: int = 10


class LangfuseConfig(Base):
    enabled: bool = False
    public_key: str = ""
    secret_key: str = ""
    host: str = ""


class ObservabilityConfig(Base):
    langfuse: LangfuseConfig = Field(default_factory=LangfuseConfig)


class LoggingConfig(Base):
    json_output: bool = True
    level: str = "INFO"


class Config(Base):
    """Root configuration for imibot."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tool_router: ToolRouterConfig = Field(default_factory=ToolRouterConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        return Path(self.agent.workspace).expanduser()

    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """Pick the provider config whose name prefixes *model*, else the first one with a key."""
        model = (model or self.agent.model).lower()
        for name in type(self.providers).model_fields:
            if model.startswith(f"{name}/"):
                provider = getattr(self.providers, name)
                if provider.resolved_api_key:
                    return provider
        for name in type(self.providers).model_fields:
            provider = getattr(self.providers, name)
            if provider.resolved_api_key:
                return provider
        return None
