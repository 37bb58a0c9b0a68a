"""Settings via pydantic-settings with TECHNE_ env prefix.

Provider keys and DB connection fields use validation_alias to read the
same unprefixed env vars (ANTHROPIC_API_KEY, DB_PASSWORD, etc.) that the
deployment uses, so a single .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTIONS = (
    "You are an expert application builder. You turn the user's request into a "
    "working React + TypeScript + Tailwind application by calling the provided "
    "tools. Write complete files with write_file. To change part of an existing "
    "file use line_replace; never write placeholders such as "
    "'// ... keep existing code'. UI primitives live under src/components/ui/. "
    "If you need a component that is not in context, call load_component. "
    "When the application is complete, reply with a short summary and no tool calls."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TECHNE_", env_file=".env")

    # DB connection (fingerprint store); unprefixed aliases match deployment env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("techne", validation_alias="DB_USER")
    db_password: str = Field("techne_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("techne", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Backends
    fingerprint_backend: Literal["memory", "postgres"] = "memory"
    file_backend: Literal["memory", "local"] = "local"
    workspace_dir: str = "/tmp/techne-workspaces"
    template_dir: str = ""  # empty = no shared template library

    # Model transport
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 16000
    temperature: float = 0.7

    # Extended thinking
    thinking_mode: Literal["off", "adaptive", "manual"] = "manual"
    thinking_budget: int = 8000  # budget_tokens for manual mode (min 1024)

    # Retry policy (transport + fingerprint compare-and-set)
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    cas_max_attempts: int = 8

    # Agent loop
    max_iterations: int = 8
    max_continuations: int = 2
    tool_timeout: float = 60.0  # seconds per tool call
    parallel_tools: bool = True
    system_instructions: str = DEFAULT_INSTRUCTIONS
    entry_file: str = "src/App.tsx"

    # Cache tiers (lifetimes in seconds)
    cache_ttl_stable: int = 3600
    cache_ttl_semi_stable: int = 1800
    cache_ttl_active: int = 300
    cache_min_tokens: int = 1024  # provider minimum for a cache breakpoint
    context_warn_tokens: int = 120_000
    context_hard_limit_tokens: int = 180_000

    # Change tracking / tier promotion
    volatile_window: int = 300  # seconds a just-written file stays VOLATILE
    promote_after: int = 1800  # seconds unchanged before promotion by one tier
    promote_min_score: float = 8.0  # stability score required for promotion
    fingerprint_ttl: int = 86400  # baseline fingerprints outlive a generation session
    change_log_ttl: int = 86400
    change_log_max: int = 1000

    # Web tools
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    web_search_daily_limit: int = 100  # Max web searches per day
    web_fetch_max_chars: int = 10000  # Default max chars for web_fetch

    # Image tools
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    image_model: str = "gpt-image-1"
    image_api_base_url: str = "https://api.openai.com/v1"

    # Preview telemetry (console logs, network requests, analytics)
    telemetry_base_url: str = ""
    telemetry_token: str = Field("", validation_alias="TELEMETRY_TOKEN")

    # Event bus
    event_bus_enabled: bool = True

    @model_validator(mode="after")
    def _validate_thinking(self) -> "Settings":
        if self.thinking_mode == "manual":
            if self.thinking_budget < 1024:
                raise ValueError("thinking_budget must be >= 1024 (API minimum)")
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self

    @model_validator(mode="after")
    def _validate_tiers(self) -> "Settings":
        if not (self.cache_ttl_stable >= self.cache_ttl_semi_stable >= self.cache_ttl_active > 0):
            raise ValueError(
                "cache lifetimes must satisfy stable >= semi_stable >= active > 0"
            )
        if self.context_warn_tokens > self.context_hard_limit_tokens:
            raise ValueError("context_warn_tokens must not exceed context_hard_limit_tokens")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
