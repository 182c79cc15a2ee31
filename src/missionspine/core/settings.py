"""Environment-driven settings for mission-spine.

Every executor default that an operator may want to change without code
lives here: data directory, persistence, webhook base URL, and the
resilience defaults applied to sources that do not configure their own.

Values come from ``MISSION_*`` environment variables or a ``.env`` file;
``ExecutorConfig`` fields left as ``None`` fall back to these.

Examples:
    >>> import os
    >>> os.environ["MISSION_DATA_DIR"] = "/var/lib/missions"
    >>> reset_settings()
    >>> get_settings().data_dir
    PosixPath('/var/lib/missions')

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MissionSettings(BaseSettings):
    """Settings for the mission execution engine.

    Fields
    ──────
    log_level            : Structlog log level
    debug                : Console (non-JSON) logging and verbose output
    data_dir             : Root for executions/, sync/ and stores/
    persist_state        : Persist ExecutionState by default
    development_mode     : Map nosql/sql stores to file stores
    webhook_base_url     : Public URL prefix for webhook registrations
    webhook_timeout_ms   : Default wait-step timeout
    max_pagination_pages : Hard ceiling on pages per fetch
    """

    model_config = SettingsConfigDict(
        env_prefix="MISSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    debug: bool = False
    log_level: str = "INFO"

    # ── Storage ──────────────────────────────────────────────────
    data_dir: Path = Field(
        default=Path(".mission-data"),
        description="Root directory for execution, sync and store files",
    )
    persist_state: bool = False
    development_mode: bool = True

    # ── Webhooks ─────────────────────────────────────────────────
    webhook_base_url: str = "http://localhost:3000"
    webhook_timeout_ms: int = Field(default=300_000, gt=0)

    # ── Fetch ────────────────────────────────────────────────────
    max_pagination_pages: int = Field(default=100, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)
    http_max_attempts: int = Field(default=3, ge=1)

    # ── Rate limiting defaults ───────────────────────────────────
    rate_limit_strategy: str = "pause"
    rate_limit_max_wait: float = 300.0
    rate_limit_notify_at: float = 10.0
    rate_limit_fallback_rpm: int = 60

    # ── Circuit breaker defaults ─────────────────────────────────
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 30.0
    circuit_success_threshold: int = 2
    circuit_failure_window: float = 60.0

    @property
    def executions_dir(self) -> Path:
        return self.data_dir / "executions"

    @property
    def sync_dir(self) -> Path:
        return self.data_dir / "sync"

    @property
    def stores_dir(self) -> Path:
        return self.data_dir / "stores"


@lru_cache(maxsize=1)
def get_settings() -> MissionSettings:
    """Return the process-wide settings instance."""
    return MissionSettings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
