"""Application configuration settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = ".env"
ENV_FILE_ENCODING = "utf-8"


class Settings(BaseSettings):
    """Notification pipeline configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=ENV_FILE,
        env_file_encoding=ENV_FILE_ENCODING,
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite:///./notifyhub.db",
        description="Database connection URL used by SQLAlchemy for the notification store",
        min_length=1,
    )
    redis_url: str | None = Field(
        default=None,
        description=(
            "Redis URL shared by the dispatch queue, the realtime broker and the read cache. "
            "When unset the service runs as a single instance with in-process backends."
        ),
    )
    app_timezone: str = Field(default="UTC", description="Timezone used for stored timestamps")
    allowed_origins: str = Field(
        default="http://localhost:4200",
        description="Comma separated list of origins allowed by CORS",
    )

    identity_secret_key: str = Field(
        default="change-me",
        description="Key used to verify identity assertions issued by the identity provider",
        min_length=1,
    )
    identity_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    identity_issuer: str | None = Field(
        default=None, description="Expected ``iss`` claim of identity assertions"
    )

    worker_enabled: bool = Field(
        default=True,
        description="Start the dispatch worker pool inside this process",
    )
    queue_name: str = Field(default="notifications", min_length=1)
    queue_concurrency: int = Field(default=5, gt=0, description="Jobs in flight per process")
    queue_default_attempts: int = Field(default=3, gt=0)
    queue_default_timeout_ms: int = Field(default=20_000, gt=0)
    queue_lock_duration_ms: int = Field(default=20_000, gt=0)
    queue_lock_renew_ms: int = Field(default=10_000, gt=0)
    queue_stalled_interval_ms: int = Field(default=30_000, gt=0)
    queue_poll_interval_ms: int = Field(default=250, gt=0)
    queue_keep_finished: int = Field(
        default=1000,
        ge=0,
        description="Finished jobs kept for inspection (seconds of retention on Redis)",
    )

    retry_base_delay_ms: int = Field(default=1000, gt=0)
    retry_max_delay_ms: int = Field(default=30_000, gt=0)
    retry_jitter_ratio: float = Field(default=0.2, ge=0, le=1)
    priority_delay_scale: float = Field(
        default=1.0,
        ge=0,
        description="Multiplier applied to the fixed priority delay table",
    )

    rate_limit_max_events: int = Field(default=100, gt=0)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    broker_reconnect_base_delay_ms: int = Field(default=500, gt=0)
    broker_reconnect_max_delay_ms: int = Field(default=30_000, gt=0)
    broadcast_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single fan-out to local connections",
    )

    cache_ttl_seconds: int = Field(default=300, ge=0)
    default_page_size: int = Field(default=10, gt=0)
    max_page_size: int = Field(default=100, gt=0)
    max_batch_size: int = Field(default=100, gt=0)

    @model_validator(mode="after")
    def _validate_queue_timings(self) -> "Settings":
        if self.queue_lock_renew_ms >= self.queue_lock_duration_ms:
            raise ValueError("QUEUE_LOCK_RENEW_MS must be lower than QUEUE_LOCK_DURATION_MS")
        if self.retry_base_delay_ms > self.retry_max_delay_ms:
            raise ValueError("RETRY_BASE_DELAY_MS cannot exceed RETRY_MAX_DELAY_MS")
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE")
        return self

    def origins(self) -> list[str]:
        """Return the configured CORS origins as a list."""

        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the settings cache to force reloading from the environment."""

    get_settings.cache_clear()


__all__ = ["Settings", "get_settings", "reset_settings_cache"]
