"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``LANE_`` prefix; infrastructure settings use their
canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the LANE SOS escalation service.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``LANE_``; infra keys use their
    standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="LANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Redis ──────────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    snapshot_namespace: str = "lane-sos:"

    # ── Admin API Key ──────────────────────────────────────────────────
    admin_api_key: str = Field(default="", validation_alias="ADMIN_API_KEY")

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Escalation timetable (minutes after trigger) ───────────────────
    escalation_level1_minutes: float = Field(default=2.0, gt=0)
    escalation_level2_minutes: float = Field(default=5.0, gt=0)
    escalation_level3_minutes: float = Field(default=10.0, gt=0)
    escalation_level4_minutes: float = Field(default=15.0, gt=0)
    recover_on_startup: bool = True
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0)

    # ── Notification delivery ──────────────────────────────────────────
    notification_gateway: Literal["mock", "webhook"] = "mock"
    notification_webhook_url: str = ""
    notification_webhook_token: str = ""
    notification_timeout_seconds: float = Field(default=10.0, gt=0)

    # Comma-separated "name:address" entries.
    admin_recipients: str = ""
    authority_recipients: str = ""
    dispatch_recipients: str = ""

    # ── False-alarm scoring ────────────────────────────────────────────
    false_alarm_quick_resolution_seconds: int = 60
    false_alarm_window_hours: int = 24
    false_alarm_flag_threshold: int = Field(default=50, ge=0, le=100)

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def escalation_deadlines_minutes(self) -> tuple[float, float, float, float]:
        return (
            self.escalation_level1_minutes,
            self.escalation_level2_minutes,
            self.escalation_level3_minutes,
            self.escalation_level4_minutes,
        )


# Module-level singleton: import ``settings`` everywhere.
settings = Settings()
