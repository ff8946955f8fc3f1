"""Environment-driven defaults for the mapping engine.

Components are configured programmatically; ``EngineSettings`` only supplies
the defaults they fall back to. Values are read from ``MAPSPINE_*``
environment variables and an optional ``.env`` file.

Examples:
    >>> import os
    >>> os.environ["MAPSPINE_DLQ_MAX_SIZE"] = "500"
    >>> clear_settings_cache()
    >>> get_settings().dlq_max_size
    500

Tags:
    settings, configuration, pydantic, environment, mapspine
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Defaults for every engine component.

    Fields
    ──────
    log_level / log_format        : structlog configuration
    retry_*                       : RetryManager defaults (seconds)
    breaker_*                     : CircuitBreaker defaults (seconds)
    dlq_*                         : DeadLetterQueue defaults
    rollback_*                    : RollbackManager defaults
    batch_size / parallelism      : executor batch defaults
    include_stack_traces          : expose tracebacks in result objects
    """

    model_config = SettingsConfigDict(
        env_prefix="MAPSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["json", "console", "auto"] = "auto"
    include_stack_traces: bool = False

    # ── Retry ────────────────────────────────────────────────────
    retry_max_retries: int = Field(default=3, ge=0)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_factor: float = Field(default=2.0, gt=0)
    retry_jitter: bool = True

    # ── Circuit breaker ──────────────────────────────────────────
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout: float = Field(default=60.0, ge=0)
    breaker_monitoring_period: float = Field(default=10.0, gt=0)
    breaker_minimum_requests: int = Field(default=10, ge=0)

    # ── Dead-letter queue ────────────────────────────────────────
    dlq_max_size: int = Field(default=10_000, ge=1)
    dlq_retention_seconds: float = Field(default=7 * 24 * 3600.0, gt=0)
    dlq_flush_interval: float = Field(default=60.0, gt=0)
    dlq_storage: Literal["memory", "file"] = "memory"
    dlq_storage_path: Path = Field(
        default_factory=lambda: Path.home() / ".mapspine" / "dlq",
        description="Directory for the file-backed DLQ",
    )
    dlq_fsync: bool = False

    # ── Rollback ─────────────────────────────────────────────────
    rollback_max_history: int = Field(default=1000, ge=1)
    rollback_snapshots: bool = True
    rollback_snapshot_interval: int = Field(default=100, ge=1)

    # ── Pipeline ─────────────────────────────────────────────────
    batch_size: int = Field(default=100, ge=1)
    parallelism: int = Field(default=1, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return the process-wide settings (cached)."""
    return EngineSettings()


def clear_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()


__all__ = ["EngineSettings", "get_settings", "clear_settings_cache"]
