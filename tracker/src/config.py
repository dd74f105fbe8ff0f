from __future__ import annotations

from datetime import timedelta
from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracker.src.contracts.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./tracker.db"

    # Polling
    poll_interval_minutes: float = Field(default=60.0, gt=0)
    auction_urgent_interval_minutes: float = Field(default=5.0, gt=0)
    auction_urgent_threshold_minutes: float = Field(default=60.0, gt=0)
    max_concurrent_fetches: int = Field(default=4, ge=1, le=64)
    fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    dispatch_interval_seconds: float = Field(default=5.0, gt=0)

    # Backoff
    backoff_base_seconds: float = Field(default=60.0, gt=0)
    backoff_cap_seconds: float = Field(default=1800.0, gt=0)
    backoff_jitter: float = Field(default=0.2, ge=0, lt=1)
    max_consecutive_failures: int = Field(default=5, ge=1)

    # Per-source circuit breaker
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_seconds: float = Field(default=300.0, gt=0)

    # Detection / alerts
    price_epsilon: float = Field(default=0.01, ge=0)
    dedup_cooldown_hours: float = Field(default=6.0, ge=0)
    alert_retention_count: int = Field(default=200, ge=1)
    sink_queue_size: int = Field(default=100, ge=1)

    # Alert preferences
    notify_price_drops: bool = True
    notify_price_increases: bool = True
    notify_stock_changes: bool = True
    notify_auction_updates: bool = True
    min_price_drop_percent: float = Field(default=0.0, ge=0, le=100)
    min_price_drop_amount: float = Field(default=0.0, ge=0)

    # History
    history_retention_days: float = Field(default=30.0, gt=0)
    history_point_cap: int = Field(default=500, ge=2)
    history_bucket_hours: float = Field(default=24.0, gt=0)

    # Retailers / delivery
    retailer_endpoints: dict[str, str] = Field(
        default_factory=dict,
        description="Mapping of retailer source key to the base URL of its normalized snapshot API",
    )
    webhook_url: str | None = None

    @model_validator(mode="after")
    def _check_intervals(self) -> "Settings":
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        if self.auction_urgent_interval_minutes > self.poll_interval_minutes:
            raise ValueError("auction_urgent_interval_minutes must not exceed poll_interval_minutes")
        return self

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(minutes=self.poll_interval_minutes)

    @property
    def auction_urgent_interval(self) -> timedelta:
        return timedelta(minutes=self.auction_urgent_interval_minutes)

    @property
    def auction_urgent_threshold(self) -> timedelta:
        return timedelta(minutes=self.auction_urgent_threshold_minutes)

    @property
    def backoff_base(self) -> timedelta:
        return timedelta(seconds=self.backoff_base_seconds)

    @property
    def backoff_cap(self) -> timedelta:
        return timedelta(seconds=self.backoff_cap_seconds)

    @property
    def circuit_recovery_timeout(self) -> timedelta:
        return timedelta(seconds=self.circuit_recovery_seconds)

    @property
    def dedup_cooldown(self) -> timedelta:
        return timedelta(hours=self.dedup_cooldown_hours)

    @property
    def history_retention_window(self) -> timedelta:
        return timedelta(days=self.history_retention_days)

    @property
    def history_bucket(self) -> timedelta:
        return timedelta(hours=self.history_bucket_hours)


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, failing fast on invalid values."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


settings = load_settings()
