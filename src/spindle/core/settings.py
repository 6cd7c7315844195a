"""
Runtime settings for the Spindle engine.

Values come from ``SPINDLE_*`` environment variables or a ``.env`` file.
The engine and the state store read their defaults from here when the caller
does not pass explicit arguments.

Example:
    $ export SPINDLE_MAX_CONCURRENCY=16
    $ export SPINDLE_STATE_CACHE_MAX_SIZE=5000

    >>> from spindle.core.settings import get_settings
    >>> get_settings().max_concurrency
    16
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpindleSettings(BaseSettings):
    """Engine-wide settings.

    Fields
    ──────
    log_level                        : Structlog log level
    log_json                         : Force JSON (True) / console (False) logs; None = auto
    max_concurrency                  : Worker threads per execution
    poll_interval_seconds            : Scheduler wake-up interval for cancel/pause/deadline checks
    state_cache_max_size             : LRU bound on cached execution states
    state_cache_ttl_seconds          : Optional expiry for cached states
    state_history_limit              : Default page size for state history queries
    default_workflow_timeout_seconds : Overall deadline applied when none is given
    """

    model_config = SettingsConfigDict(
        env_prefix="SPINDLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Scheduler ────────────────────────────────────────────────
    max_concurrency: int = Field(default=8, ge=1)
    poll_interval_seconds: float = Field(default=0.05, gt=0)
    default_workflow_timeout_seconds: float | None = Field(default=None, gt=0)

    # ── State store ──────────────────────────────────────────────
    state_cache_max_size: int = Field(default=1024, ge=1)
    state_cache_ttl_seconds: int | None = Field(default=None, ge=1)
    state_history_limit: int = Field(default=10, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> SpindleSettings:
    """Return the process-wide settings (loaded once)."""
    return SpindleSettings()
