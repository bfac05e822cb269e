"""Runtime settings, loaded from GEOWORK_* environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from geowork.domain.models import RuleType


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GEOWORK_",
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    app_name: str = "GeoWork Scheduling Service"
    log_level: str = "INFO"
    # Calendar-day boundaries for the daily hour limit are taken in this zone.
    timezone: str = "UTC"
    default_recurrence_months: int = Field(default=3, ge=1)

    daily_hour_limit: float = Field(default=8, gt=0)
    weekly_hour_limit: float = Field(default=40, gt=0)
    minimum_break_minutes: int = Field(default=480, ge=0)
    travel_buffer_minutes: int = Field(default=30, ge=0)
    disabled_rules: list[RuleType] = Field(default_factory=list)


@lru_cache
def get_settings() -> Settings:
    return Settings()
