"""Application settings using Pydantic BaseSettings."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOCAL_CORS_ORIGINS = [
    "http://127.0.0.1:3000",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://localhost:5173",
]


class Settings(BaseSettings):
    """Application configuration loaded from BRON_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BRON_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    cors_origins: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_file: str | None = Field(default=None)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./bron_dev.db")
    database_echo: bool = Field(default=False)
    auto_create_tables: bool = Field(default=True)

    # Streaming
    sse_heartbeat_seconds: float = Field(default=15.0)
    sse_poll_interval_seconds: float = Field(default=0.5)
    sse_batch_size: int = Field(default=50)
    events_page_default: int = Field(default=100)
    events_page_max: int = Field(default=500)
    eventbus_backlog: int = Field(default=1000)

    # Execution loop limits
    run_max_turns: int = Field(default=20)
    run_max_tool_calls: int = Field(default=50)
    run_timeout_ms: int = Field(default=300_000)
    log_preview_chars: int = Field(default=200)
    history_message_limit: int = Field(default=20)
    memory_summary_max_chars: int = Field(default=2000)

    # Child runs
    child_await_timeout_ms: int = Field(default=300_000)
    child_poll_interval_ms: int = Field(default=1000)
    child_autostart: bool = Field(default=True)

    # Approvals
    approval_require_token: bool = Field(default=True)

    # Reasoning provider
    provider_mode: str = Field(default="anthropic")
    anthropic_base_url: str = Field(default="https://api.anthropic.com")
    anthropic_api_key: str = Field(default="")
    anthropic_model: str = Field(default="claude-sonnet-4-20250514")
    anthropic_max_tokens: int = Field(default=4096)
    anthropic_version: str = Field(default="2023-06-01")
    provider_timeout_seconds: float = Field(default=60.0)

    # Mail API
    gmail_api_base: str = Field(default="https://gmail.googleapis.com/gmail/v1/users/me")
    gmail_access_token: str = Field(default="")
    gmail_timeout_seconds: float = Field(default=30.0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production, test")
        return vv

    @field_validator("provider_mode")
    @classmethod
    def validate_provider_mode(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"anthropic", "mock"}:
            raise ValueError("PROVIDER_MODE must be one of: anthropic, mock")
        return vv

    @field_validator("run_max_turns", "run_max_tool_calls", "run_timeout_ms", "sse_batch_size", "events_page_max")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        raw = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        if any(o == "*" for o in raw):
            raise ValueError("BRON_CORS_ORIGINS must not include wildcard '*'")
        if raw:
            return raw
        return list(_LOCAL_CORS_ORIGINS)

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
