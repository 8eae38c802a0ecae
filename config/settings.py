"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``NARI_SURAKSHA_`` prefix; infrastructure settings use
their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class BackendMode(StrEnum):
    """Which family of collaborators the service is wired against."""

    DEMO = "demo"
    LIVE = "live"


class Settings(BaseSettings):
    """Central configuration for the Nari Suraksha backend.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``NARI_SURAKSHA_``; infra keys
    use their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="NARI_SURAKSHA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"
    mode: Literal["demo", "live"] = "demo"
    site_url: str = Field(default="http://localhost:8000", validation_alias="SITE_URL")

    # ── Redis (live persistence) ───────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    redis_namespace: str = "nari:"

    # ── Firebase Cloud Messaging ───────────────────────────────────────
    fcm_project_id: str = Field(default="", validation_alias="FCM_PROJECT_ID")
    google_application_credentials: str = Field(default="", validation_alias="GOOGLE_APPLICATION_CREDENTIALS")
    push_timeout_seconds: float = 10.0

    # ── Trip monitoring ────────────────────────────────────────────────
    timer_tick_seconds: float = Field(default=1.0, gt=0)
    demo_location_interval_seconds: float = Field(default=10.0, gt=0)
    location_stale_seconds: float = Field(default=120.0, gt=0)  # older samples are not "fresh"

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")

    # ── Rate Limiting ──────────────────────────────────────────────────
    rate_limit_per_minute: int = Field(default=120, validation_alias="RATE_LIMIT_PER_MINUTE")
    trusted_proxy_count: int = Field(
        default=1,
        ge=0,
        validation_alias="TRUSTED_PROXY_COUNT",
    )

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def is_demo(self) -> bool:
        return self.mode == BackendMode.DEMO

    @property
    def eta_presets(self) -> list[int]:
        """ETA choices offered to the client, in minutes."""
        return [1, 2, 5] if self.is_demo else [15, 30, 45, 60]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton, import ``settings`` everywhere.
settings = Settings()
