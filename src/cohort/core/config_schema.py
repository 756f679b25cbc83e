"""Pydantic models for config validation.

``Config.validated()`` turns the merged ``Config.config_data`` dict into a
typed ``CohortConfig``. Env overrides arrive as strings; pydantic coerces
them to the declared types.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class ScheduleConfig(BaseModel):
    """Limits applied to schedule requests and participant updates."""

    max_date_range_days: int = 14
    client_data_max_bytes: int = 65536
    default_history_days: int = 14
    page_size_min: int = 5
    page_size_max: int = 100
    task_max_expires_on_days: int = 4
    strict_references: bool = False

    @field_validator(
        "max_date_range_days",
        "client_data_max_bytes",
        "default_history_days",
        "page_size_min",
        "task_max_expires_on_days",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def _page_bounds(self) -> ScheduleConfig:
        if self.page_size_max < self.page_size_min:
            raise ValueError("page_size_max must be >= page_size_min")
        return self


class RecomputeConfig(BaseModel):
    """Retry and concurrency knobs for the recompute worker."""

    base_delay_ms: int = 300
    jitter_ms: int = 400
    max_attempts: int = 0
    """Lock acquisition attempts before giving up; 0 retries forever."""
    max_failures: int = 5
    """Non-conflict failures tolerated before the event is dead-lettered; 0 retries forever."""
    workers: int = 4

    @field_validator("base_delay_ms", "jitter_ms", "max_attempts", "max_failures")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("workers")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class LocksConfig(BaseModel):
    expiry_seconds: float = 60.0


class LoggingConfig(BaseModel):
    level: str = "WARNING"
    file: str | None = None


class CohortConfig(BaseModel):
    """Root configuration model.

    Uses ``extra="allow"`` so deployments can bolt on custom sections
    without touching this schema.
    """

    model_config = ConfigDict(extra="allow")

    schedule: ScheduleConfig = ScheduleConfig()
    recompute: RecomputeConfig = RecomputeConfig()
    locks: LocksConfig = LocksConfig()
    logging: LoggingConfig = LoggingConfig()
