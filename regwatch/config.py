"""
Application configuration using Pydantic Settings.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ResilienceSettings(BaseSettings):
    """Retry, timeout and circuit breaker parameters for upstream calls."""

    model_config = SettingsConfigDict(env_prefix="RESILIENCE_")

    # Retrying fetcher
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the first attempt for 429, 5xx and network errors",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    backoff_base_seconds: float = Field(
        default=1.0,
        description="Backoff for attempt n is base * 2^n, capped at backoff_max_seconds",
    )
    backoff_max_seconds: float = Field(default=30.0)
    backoff_jitter_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Upper bound of the uniform random jitter added to each backoff",
    )
    max_retry_after_seconds: float = Field(
        default=300.0,
        description="Longest upstream Retry-After we are willing to sleep for",
    )

    # Circuit breaker
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_open_timeout_seconds: float = Field(default=60.0, gt=0)
    breaker_half_open_successes: int = Field(default=3, ge=1)

    @field_validator("backoff_max_seconds")
    @classmethod
    def validate_ceiling(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Backoff ceiling must be positive")
        return v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "RegWatch"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: Literal["development", "staging", "production"] = "development"

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="JSON lines instead of console output")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./regwatch.db",
        description="Async database URL (SQLAlchemy format)",
    )

    # Sources
    sources_file: str | None = Field(
        default=None,
        description="JSON file with source definitions; the built-in catalog is used when unset",
    )

    # API Keys (all optional)
    fda_api_key: str | None = Field(default=None)
    anthropic_api_key: str | None = Field(default=None)
    openai_api_key: str | None = Field(default=None)

    # Pipeline
    dedup_window_days: int = Field(
        default=7,
        ge=1,
        description="Trailing window in which matching titles from one source are duplicates",
    )
    summary_max_chars: int = Field(default=500, ge=20)
    title_max_chars: int = Field(default=200, ge=20)
    max_concurrency: int = Field(default=5, ge=1)
    batch_deadline_seconds: float | None = Field(
        default=None,
        description="Sources not started before this many seconds are skipped",
    )
    same_host_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum spacing between requests from different sources to one host",
    )

    # Scheduler
    schedule_interval_minutes: int = Field(default=30, ge=1)

    # Enrichment
    enrichment_enabled: bool = Field(default=False)
    enrichment_timeout_seconds: float = Field(default=10.0, gt=0)

    # Resilience (nested)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
