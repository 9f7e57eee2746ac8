"""
Centralized settings for renderq.

All fields can be set via ``RENDERQ_*`` environment variables (e.g.
``RENDERQ_MAX_CONCURRENT_JOBS_PER_USER=5``) or a ``.env`` file.
Durations are in seconds unless the field name says otherwise.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

INLINE_WAIT_MAX_MS = 5000


class RenderqSettings(BaseSettings):
    """Validated configuration for every renderq component."""

    model_config = SettingsConfigDict(
        env_prefix="RENDERQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Meta ─────────────────────────────────────────────────────
    environment: str = Field(default="development", description="development/staging/production")
    service_name: str = "renderq"
    log_level: str = "INFO"
    json_logs: bool | None = Field(default=None, description="None = JSON when stdout is not a tty")

    # ── Stores ───────────────────────────────────────────────────
    database_url: str = "sqlite:///renderq.db"
    redis_url: str | None = Field(default=None, description="Pub/sub transport; None = in-process")
    queue_name: str = "render-video"
    queue_backend: str = Field(default="sql", description="sql | memory")

    # ── Admission ────────────────────────────────────────────────
    max_concurrent_jobs_per_user: int = Field(default=3, ge=1)
    stale_job_minutes: float = Field(default=10.0, gt=0)
    inline_wait_ms: int = 500

    # ── Queue retry / expiry ─────────────────────────────────────
    retry_limit: int = Field(default=5, ge=1)
    retry_delay_seconds: float = Field(default=30.0, ge=0)
    retry_backoff: bool = True
    retry_delay_cap_seconds: float = Field(default=3600.0, gt=0)
    expire_in_seconds: int = Field(default=7200, gt=0)
    dead_letter_enabled: bool = True

    # ── Submission protection ────────────────────────────────────
    breaker_failure_threshold: int = Field(default=3, ge=1)
    breaker_reset_timeout: float = Field(default=60.0, gt=0)
    enqueue_attempts: int = Field(default=3, ge=1)
    enqueue_retry_base: float = Field(default=0.2, ge=0)

    # ── Worker ───────────────────────────────────────────────────
    worker_concurrency: int = Field(default=2, ge=1)
    poll_interval: float = Field(default=2.0, gt=0)
    drain_timeout: float = Field(default=30.0, ge=0)
    maintenance_interval: float = Field(default=60.0, gt=0)

    # ── Notification channel ─────────────────────────────────────
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    reconnect_jitter: float = Field(default=1.0, ge=0)
    keepalive_interval: float = Field(default=15.0, gt=0)

    # ── Completion waiters ───────────────────────────────────────
    poll_initial_interval: float = Field(default=5.0, gt=0)
    poll_backoff_factor: float = Field(default=1.5, ge=1.0)
    poll_max_interval: float = Field(default=60.0, gt=0)
    wait_timeout: float = Field(default=900.0, gt=0)

    # ── Health / alerting ────────────────────────────────────────
    health_enabled: bool = False
    health_interval: float = Field(default=30.0, gt=0)
    pending_backlog_threshold: int = 100
    failure_margin: int = 10
    dlq_warning_count: int = 10
    housekeeping_threshold: int = 10_000
    retention_hours: float = 168.0
    alert_error_rate: float = 0.1
    alert_response_time_ms: float = 30_000.0
    alert_active_jobs: int = 50
    alert_queue_depth: int = 100

    @field_validator("inline_wait_ms")
    @classmethod
    def _clamp_inline_wait(cls, value: int) -> int:
        return max(0, min(INLINE_WAIT_MAX_MS, value))

    @field_validator("queue_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("sql", "memory"):
            raise ValueError(f"unknown queue backend: {value}")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def health_sampling_enabled(self) -> bool:
        """Periodic health sampling runs only where its load is acceptable."""
        return self.health_enabled or self.is_production


@lru_cache(maxsize=1)
def get_settings() -> RenderqSettings:
    """Return the process-wide settings, parsed once."""
    return RenderqSettings()


def clear_settings_cache() -> None:
    """Forget cached settings (tests, reloads)."""
    get_settings.cache_clear()


def clamp_inline_wait_ms(value: int | None, default: int) -> int:
    """Clamp a caller-supplied inline wait to the supported range."""
    if value is None:
        value = default
    return max(0, min(INLINE_WAIT_MAX_MS, int(value)))
