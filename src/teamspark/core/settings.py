"""
Centralized settings for the job core.

All fields can be set through ``TEAMSPARK_*`` environment variables or a
``.env`` file. A few values also honour the bare variable names the rest
of the platform already exports (``REDIS_URL``, ``EMAIL_FROM``,
``RESEND_API_KEY``).

The concurrency, rate-limit, and retry numbers below are tuned defaults
carried over from production, not derived requirements. Override them per
deployment.
"""

from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class JobSettings(BaseSettings):
    """Job core configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TEAMSPARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ── Backend connection ───────────────────────────────────────
    redis_url: str = Field(
        default="redis://localhost:6379",
        validation_alias=AliasChoices("TEAMSPARK_REDIS_URL", "REDIS_URL"),
    )
    redis_max_retries: int = Field(default=3, ge=0)
    redis_backoff_base_ms: int = Field(default=50, ge=1)
    redis_backoff_cap_ms: int = Field(default=2000, ge=1)
    key_prefix: str = Field(default="tsq")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="auto, json or console")
    service_name: str = Field(default="teamspark-jobs")

    # ── Providers ────────────────────────────────────────────────
    email_from: str = Field(
        default="noreply@teamspark.ai",
        validation_alias=AliasChoices("TEAMSPARK_EMAIL_FROM", "EMAIL_FROM"),
    )
    resend_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TEAMSPARK_RESEND_API_KEY", "RESEND_API_KEY"),
    )
    app_url: str = Field(default="http://localhost:3000")
    datastore: str | None = Field(
        default=None, description="module:attribute import path of the data store factory"
    )
    provider_timeout_seconds: float = Field(default=10.0)

    # ── Worker loop ──────────────────────────────────────────────
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    lock_duration_ms: int = Field(default=30_000, ge=1000)
    stalled_interval_ms: int = Field(default=30_000, ge=1000)
    max_stalled_count: int = Field(default=1, ge=0)
    metrics_interval_seconds: float = Field(default=60.0, gt=0)
    unschedule_on_shutdown: bool = Field(default=True)

    # ── Per-pool tuning ──────────────────────────────────────────
    email_concurrency: int = Field(default=5, ge=1)
    email_rate_max: int = Field(default=10, ge=1)
    email_rate_window_ms: int = Field(default=1000, ge=1)
    sync_concurrency: int = Field(default=2, ge=1)
    sync_rate_max: int = Field(default=5, ge=1)
    sync_rate_window_ms: int = Field(default=60_000, ge=1)
    metrics_concurrency: int = Field(default=3, ge=1)
    maintenance_concurrency: int = Field(default=1, ge=1)
    notification_concurrency: int = Field(default=5, ge=1)
    report_concurrency: int = Field(default=2, ge=1)

    @property
    def json_logs(self) -> bool | None:
        """Translate ``log_format`` for :func:`configure_logging`."""
        fmt = self.log_format.lower()
        if fmt == "json":
            return True
        if fmt == "console":
            return False
        return None


_settings: JobSettings | None = None


def get_settings(*, _force_reload: bool = False) -> JobSettings:
    """Load and cache a :class:`JobSettings` instance."""
    global _settings
    if _settings is None or _force_reload:
        _settings = JobSettings()
    return _settings


__all__ = ["JobSettings", "get_settings"]
