"""
Centralized settings for the operation engine.

Manifesto:
    One validated settings object feeds the manager defaults, the retry
    policy, the connection hub limits and the HTTP server. Every value can
    be overridden with an ``ISX_SPINE_*`` environment variable or a ``.env``
    file, and tests construct ``EngineSettings(...)`` directly.

Tags:
    configuration, settings, pydantic, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine-wide configuration.

    Order of precedence (highest → lowest):
        1. Keyword arguments
        2. Environment variables (``ISX_SPINE_MAX_RETRIES``, etc.)
        3. ``.env`` file
        4. Defaults below
    """

    model_config = SettingsConfigDict(
        env_prefix="ISX_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Operation defaults ───────────────────────────────────────
    default_mode: str = Field(default="accumulative", description="Mode used when a request omits it")
    default_max_retries: int = Field(default=3, ge=0, description="Per-step retry cap")
    default_max_workers: int = Field(default=1, ge=1, description="Worker pool size for parallel-safe steps")
    default_step_timeout: float | None = Field(
        default=None, gt=0, description="Seconds before a step is cancelled (None = no timeout)"
    )
    max_steps: int = Field(default=20, ge=1, description="Largest accepted step list")
    operation_retention_seconds: float | None = Field(
        default=None, gt=0, description="Finished operations older than this are pruned (None = keep all)"
    )
    retention_check_interval: float = Field(default=300.0, gt=0, description="Seconds between retention sweeps")

    # ── Retry timing ─────────────────────────────────────────────
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_jitter: bool = Field(default=False)

    # ── Connection hub ───────────────────────────────────────────
    connection_queue_size: int = Field(default=256, ge=1, description="Per-connection outbound buffer")
    send_timeout: float = Field(default=10.0, gt=0, description="Seconds allowed for one transport write")
    heartbeat_interval: float = Field(default=30.0, gt=0, description="Seconds between server pings")
    heartbeat_timeout: float = Field(default=60.0, gt=0, description="Silence before a client is dropped")
    close_timeout: float = Field(default=5.0, ge=0, description="Seconds to drain queued messages on close")
    max_message_size: int = Field(default=64 * 1024, ge=512, description="Largest accepted client frame")

    # ── Step executables ─────────────────────────────────────────
    executable_dir: str = Field(default="bin", description="Directory holding the ISX command-line tools")

    # ── API ──────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_prefix: str = Field(default="/api/v1")
    api_title: str = Field(default="isx-spine API")
    api_version: str = Field(default="0.1.0")
    cors_origins: list[str] = Field(default=["http://localhost:3000"])
    debug: bool = Field(default=False)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    @model_validator(mode="after")
    def _check_heartbeat(self) -> EngineSettings:
        if self.heartbeat_timeout <= self.heartbeat_interval:
            raise ValueError("heartbeat_timeout must be greater than heartbeat_interval")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return self


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Cached settings, loaded once per process."""
    return EngineSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    get_settings.cache_clear()


__all__ = ["EngineSettings", "get_settings", "clear_settings_cache"]
