"""Pydantic models for Cadence configuration.

Nested section models use plain ``BaseModel`` so that pydantic-settings does
not read environment variables for generic field names like ``file`` or
``level``.  Only the top-level :class:`CadenceConfig` extends ``BaseSettings``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class EngineSection(BaseModel):
    """Rule evaluation settings."""

    fact_cache_ttl_ms: int = Field(default=5000, ge=0)
    allow_undefined_facts: bool = False
    clear_cache_default: bool = True


class SchedulerSection(BaseModel):
    """Timer settings for time-based rules."""

    enabled: bool = True
    poll_interval_seconds: float = Field(default=60.0, gt=0)  # custom schedules


class EventsSection(BaseModel):
    """Event bus settings."""

    enabled: bool = True


class LoggingSection(BaseModel):
    """Log level and the optional rotating log file."""

    level: str = "info"
    file: str = ""
    log_to_file: bool = False
    max_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    def log_path(self) -> Path | None:
        """Return the expanded log file path, or None if unset."""
        if not self.file:
            return None
        return Path(self.file).expanduser()


class CadenceConfig(BaseSettings):
    """Top-level Cadence configuration model.

    Maps to the TOML structure:
        [engine] / [scheduler] / [events] / [logging]

    All fields are optional with sensible defaults.
    """

    engine: EngineSection = Field(default_factory=EngineSection)
    scheduler: SchedulerSection = Field(default_factory=SchedulerSection)
    events: EventsSection = Field(default_factory=EventsSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
