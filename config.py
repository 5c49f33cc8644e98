"""
Matching engine configuration.

Every tunable of the engine lives on one settings object that is passed to
the engine (and from there to each component) at invocation time. Values are
read from ``COMMUTE_*`` environment variables or a local ``.env`` file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MatchingConfig(BaseSettings):
    """Settings for matching, confirmation, sweeps and notifications."""

    model_config = SettingsConfigDict(
        env_prefix="COMMUTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Grouping
    default_driver_capacity: int = Field(default=4, ge=2)  # seats incl. driver

    # Acceptance / confirmation
    acceptance_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    confirmation_window_minutes: int = Field(default=30, gt=0)
    min_confirmed_riders: int = Field(default=1, ge=1)

    # External compatibility scorer
    scorer_url: Optional[str] = None
    scorer_api_key: Optional[str] = None
    scorer_timeout_seconds: float = 10.0
    scorer_max_retries: int = Field(default=1, ge=0)
    scorer_workers: int = Field(default=4, ge=1)

    # Local fallback heuristic
    fallback_confidence: float = Field(default=0.4, ge=0.0, le=1.0)
    cost_per_km: float = 10.0
    average_speed_kmh: float = Field(default=25.0, gt=0)
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None

    # Retry & cleanup
    retry_after_hours: int = 2
    max_match_retries: int = 3
    retention_days: int = 30

    # Notifications
    telegram_bot_token: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    # Opt-in validation and schedules
    min_window_minutes: int = 15
    max_window_minutes: int = 180
    max_days_ahead: int = 30
    scheduled_window_minutes: int = 60

    matching_lock_timeout_seconds: float = 5.0

    @property
    def destination(self) -> Optional[tuple[float, float]]:
        """Common drop-off point, if one is configured."""
        if self.destination_lat is None or self.destination_lng is None:
            return None
        return (self.destination_lat, self.destination_lng)


@lru_cache
def get_settings() -> MatchingConfig:
    """
    Get cached settings instance.

    Uses lru_cache so the environment is only read once per process.
    """
    return MatchingConfig()
