"""
Centralized settings for conductor.

All fields can be set via ``CONDUCTOR_*`` environment variables (e.g.
``CONDUCTOR_WORKER_CONCURRENCY=8``) or a ``.env`` file. Intervals and
concurrency limits are tunables; none of them affects correctness.

Tags:
    conductor, configuration, settings, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConductorSettings(BaseSettings):
    """Conductor engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Executor ─────────────────────────────────────────────────
    worker_concurrency: int = Field(default=4, ge=1)
    default_timeout_seconds: float = Field(default=300.0, gt=0)
    cancel_grace_seconds: float = Field(default=5.0, ge=0)
    progress_persist_interval: float = Field(default=1.0, ge=0)
    queue_poll_seconds: float = Field(default=0.5, gt=0)

    # ── Scheduler ────────────────────────────────────────────────
    scheduler_enabled: bool = Field(default=True)
    scheduler_interval_seconds: float = Field(default=10.0, gt=0)
    timezone: str = Field(default="UTC")

    # ── Workflows ────────────────────────────────────────────────
    workflow_concurrency: int = Field(default=2, ge=1)

    # ── Storage ──────────────────────────────────────────────────
    database_path: str | None = Field(
        default=None,
        description="SQLite file for durable state; None keeps everything in memory",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @model_validator(mode="after")
    def _validate_log_settings(self) -> ConductorSettings:
        self.log_level = self.log_level.upper()
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {self.log_level}")
        if self.log_format not in {"console", "json"}:
            raise ValueError(f"log_format must be 'console' or 'json', got {self.log_format!r}")
        return self

    @property
    def is_persistent(self) -> bool:
        return self.database_path is not None


@lru_cache(maxsize=1)
def get_settings() -> ConductorSettings:
    """Load and cache settings from the environment."""
    return ConductorSettings()


def clear_settings_cache() -> None:
    """Drop the cached settings (tests and CLI overrides)."""
    get_settings.cache_clear()
