"""
SparkGate -- Centralised configuration via pydantic-settings.

Every tunable knob lives here.  Environment variables override defaults
using the ``SPARKGATE_`` prefix (e.g. ``SPARKGATE_ENVIRONMENT=production``).

Usage:
    from sparkgate.config.settings import get_settings
    settings = get_settings()          # cached singleton
    print(settings.api_base_url)
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SECRET_LENGTH = 32


class SparkGateSettings(BaseSettings):
    """Top-level configuration for the spark tool gateway."""

    # ------------------------------------------------------------------
    # General
    # ------------------------------------------------------------------
    instance_id: str = "sparkgate-1"
    environment: str = "development"  # production | staging | development
    api_base_url: str = "http://localhost:3000"
    backend_api_key: str = ""

    # ------------------------------------------------------------------
    # Discovery tokens
    # ------------------------------------------------------------------
    discovery_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limits (requests per window)
    # ------------------------------------------------------------------
    rate_limit_unauthenticated: int = 100
    rate_limit_authenticated: int = 1000
    rate_limit_window_seconds: float = 60.0
    rate_limit_operations: dict[str, int] = Field(
        default={
            "create_ai_persona_or_digital_twin": 20,
            "talk_to_ai_persona": 60,
            "tools/call": 100,
        },
    )

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_reset_timeout_seconds: float = 30.0
    circuit_breaker_success_threshold: int = 2

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------
    dedup_ttl_seconds: float = 10.0
    sweep_interval_seconds: float = 60.0

    # ------------------------------------------------------------------
    # Timeouts (seconds)
    # ------------------------------------------------------------------
    default_api_timeout_seconds: float = 30.0
    creation_timeout_seconds: float = 60.0
    chat_timeout_seconds: float = 45.0
    polling_timeout_seconds: float = 5.0
    status_poll_interval_seconds: float = 2.0
    status_poll_max_attempts: int = 30

    # ------------------------------------------------------------------
    # Name matching
    # ------------------------------------------------------------------
    fuzzy_min_score: float = 50.0

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    prometheus_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"  # json | text

    # ------------------------------------------------------------------
    # Pydantic-settings config
    # ------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_prefix="SPARKGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @field_validator("discovery_secret")
    @classmethod
    def _secret_strength(cls, value: str) -> str:
        if value and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"discovery_secret must be at least {MIN_SECRET_LENGTH} characters long"
            )
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> SparkGateSettings:
    """Return a cached singleton of the application settings.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    return SparkGateSettings()
