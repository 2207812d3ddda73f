"""Configuration for the charflow orchestrator.

Every tunable of the orchestration core (breaker threshold, backoff,
retry ceilings, capacity, slots) comes from here; the core itself holds
no numeric policy. Values load from ``CHARFLOW_*`` environment variables
or a ``.env`` file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHARFLOW_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Circuit breaker around the batch-queue submission tool
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout: float = Field(default=60.0, ge=0)

    # Retry backoff: min(base_delay * 2**attempt, max_delay)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    # Extra random fraction of each delay, 0 disables
    jitter: float = Field(default=0.0, ge=0, le=1)

    # Loop cadence
    poll_interval: float = Field(default=1.0, gt=0)
    status_poll_interval: float = Field(default=5.0, gt=0)

    # Admission
    max_workers: int = Field(default=4, ge=1)
    starvation_threshold: Optional[int] = Field(default=None, ge=0)
    capacity: Dict[str, float] = Field(default_factory=dict)

    cascade_failures: bool = False
    state_file: Optional[str] = None

    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @field_validator("capacity")
    @classmethod
    def _non_negative_capacity(cls, value: Dict[str, float]) -> Dict[str, float]:
        negative = sorted(dim for dim, units in value.items() if units < 0)
        if negative:
            raise ValueError(f"capacity must be non-negative: {', '.join(negative)}")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings instance."""
    return Settings()
