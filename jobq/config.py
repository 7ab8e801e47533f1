"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(
        default=True, description="Render logs as JSON (false = console renderer)"
    )

    # Database Configuration
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL. Unset = in-memory store (single process)",
    )
    db_pool_min_size: int = Field(default=2, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")

    # Worker Configuration
    worker_id: Optional[str] = Field(
        default=None, description="Worker identity (default: hostname:pid)"
    )
    worker_max_concurrency: int = Field(
        default=16, ge=1, description="Max concurrent handler invocations per process"
    )
    lease_duration_s: float = Field(
        default=60.0, gt=0, description="Lease length granted on claim and heartbeat"
    )
    scheduler_tick_s: float = Field(
        default=1.0, gt=0, description="Upper bound on dispatcher sleep between passes"
    )
    sweep_interval_s: float = Field(
        default=15.0, gt=0, description="Interval between expired-lease sweeps"
    )
    ready_batch_limit: int = Field(
        default=200, ge=1, description="Max ready jobs loaded per scheduling pass"
    )

    # Retry Policy
    default_max_attempts: int = Field(default=5, ge=1, description="Default max attempts")
    retry_base_delay_s: float = Field(default=5.0, ge=0, description="Backoff base delay")
    retry_max_delay_s: float = Field(default=300.0, ge=0, description="Backoff cap")
    retry_jitter_ratio: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Max fraction of the delay removed at random (0 = no jitter)",
    )

    # Dead letter policy
    dead_letter_mode: Literal["immediate", "grace", "disabled"] = Field(
        default="immediate",
        description="When failed jobs move to the dead-letter sink",
    )
    dead_letter_grace_s: float = Field(
        default=3600.0, ge=0, description="Grace window for dead_letter_mode=grace"
    )

    # Deduplication
    dedup_window_s: Optional[float] = Field(
        default=None,
        description="Optional debounce window layered on active-until-terminal dedup",
    )

    # Fairness weights, highest class first: critical, high, normal, low
    fairness_weights: list[int] = Field(
        default=[8, 4, 2, 1],
        description="Weighted round-robin weights per priority class",
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN for handler crash tracking"
    )
    sentry_environment: str = Field(
        default="development", description="Sentry environment tag"
    )

    # Prometheus
    metrics_port: Optional[int] = Field(
        default=None, description="Expose Prometheus metrics on this port when set"
    )

    @field_validator("fairness_weights")
    @classmethod
    def _check_weights(cls, value: list[int]) -> list[int]:
        if len(value) != 4 or any(w < 1 for w in value):
            raise ValueError("fairness_weights needs 4 positive integers")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
