"""
Strata Config - Configuration models.

Pydantic models for type-safe configuration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from strata.config.constants import (
    DEFAULT_INITIAL_DELAY,
    DEFAULT_LOCAL_CLOUD_PATH,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_MAX_WORKERS,
    DEFAULT_STATE_PATH,
    MAX_WORKERS_LIMIT,
)


class GeneralConfig(BaseModel):
    """General settings."""

    state_path: Path = Field(default=DEFAULT_STATE_PATH, description="SQLite state database")
    refresh: bool = Field(default=True, description="Re-read remote state before planning")


class ApplyConfig(BaseModel):
    """Applier settings."""

    max_workers: int = Field(
        default=DEFAULT_MAX_WORKERS, ge=1, le=MAX_WORKERS_LIMIT, description="Concurrent provider calls"
    )
    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS, ge=1, le=20, description="Attempts per transient failure"
    )
    initial_delay: float = Field(
        default=DEFAULT_INITIAL_DELAY, ge=0, description="First backoff delay in seconds"
    )
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0, description="Backoff ceiling in seconds")
    run_timeout: float | None = Field(
        default=None, gt=0, description="Stop issuing new calls after this many seconds"
    )

    @model_validator(mode="after")
    def _check_delays(self) -> ApplyConfig:
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class ProviderConfig(BaseModel):
    """Cloud provider settings."""

    name: Literal["aws", "local"] = Field(default="aws", description="Provider implementation")
    region: str = Field(default="us-east-1", description="Cloud region")
    profile: str | None = Field(default=None, description="Named credentials profile")
    local_path: Path = Field(
        default=DEFAULT_LOCAL_CLOUD_PATH, description="Backing file of the local provider"
    )


class LoggingConfig(BaseModel):
    """Logging settings."""

    log_dir: Path = Field(default=DEFAULT_LOG_DIR, description="Log directory")
    file_level: Literal["debug", "info", "warning", "error"] = Field(
        default="debug", description="File log level"
    )
    console_level: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="warning", description="Console log level when not verbose"
    )
    rotation: str = Field(default="10 MB", description="Rotate log file at this size")
    retention: str = Field(default="1 week", description="How long to keep rotated logs")


class StrataConfig(BaseModel):
    """Root configuration."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
