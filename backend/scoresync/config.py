"""
Engine configuration.

Settings are loaded with pydantic-settings: defaults for every tunable
constant, overridden by SCORESYNC_* environment variables and an optional
.env file (environment wins over the file).
"""

import logging
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "SCORESYNC_"


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Capture
    sample_rate: int = Field(44100, gt=0)
    channels: int = Field(1, ge=1)
    block_duration: float = Field(0.1, gt=0)  # seconds per encoded chunk
    chunk_format: str = "FLAC"
    chunk_subtype: str = "PCM_16"
    min_extract_samples: int = Field(512, gt=0)

    # Pitch detection
    analysis_window: int = Field(2048, gt=0)
    min_frequency: float = Field(100.0, gt=0)
    max_frequency: float = Field(2000.0, gt=0)
    yin_threshold: float = Field(0.10, gt=0, lt=1)
    silence_rms: float = Field(0.003, ge=0)

    # Classification
    correct_tolerance: float = Field(0.02, gt=0)
    slight_tolerance: float = Field(0.05, gt=0)
    timing_tolerance_ms: float = Field(100.0, ge=0)

    # Measure feedback scheduling
    poll_interval: float = Field(0.1, gt=0)
    analysis_timeout: float = Field(5.0, gt=0)
    final_analysis_timeout: float = Field(30.0, gt=0)  # whole-performance pass
    failure_display: float = Field(3.0, ge=0)
    max_concurrent_analyses: int = Field(2, ge=1)
    max_extract_attempts: int = Field(3, ge=1)

    # Tempo
    default_tempo: float = Field(120.0, gt=0)
    min_tempo: float = Field(60.0, gt=0)
    max_tempo: float = Field(180.0, gt=0)

    # Layout
    measures_per_system: Optional[int] = Field(None, ge=1)
    fallback_measures_per_system: int = Field(4, ge=1)
    fallback_max_measures: int = Field(10, ge=1)

    # Notation
    dot_scales_duration: bool = True

    log_level: str = "INFO"

    @field_validator("measures_per_system", mode="before")
    @classmethod
    def _empty_is_unset(cls, value: Any) -> Any:
        # SCORESYNC_MEASURES_PER_SYSTEM= clears the setting
        return None if value == "" else value

    @model_validator(mode="after")
    def _check_ranges(self) -> "EngineSettings":
        if self.min_frequency >= self.max_frequency:
            raise ValueError("min_frequency must be below max_frequency")
        if self.correct_tolerance >= self.slight_tolerance:
            raise ValueError("correct_tolerance must be below slight_tolerance")
        if not self.min_tempo <= self.default_tempo <= self.max_tempo:
            raise ValueError("default_tempo must lie within [min_tempo, max_tempo]")
        return self

    def clamp_tempo(self, bpm: float) -> float:
        return max(self.min_tempo, min(self.max_tempo, bpm))


def load_settings(env_file: Optional[str] = None, **overrides: Any) -> EngineSettings:
    """
    Build settings from defaults, .env / environment, then explicit overrides.

    Args:
        env_file: Path to a dotenv file. None reads ".env" from the working
            directory when present. Environment variables win over the file.
        **overrides: Field values that take precedence over both.
    """
    if env_file is not None:
        return EngineSettings(_env_file=env_file, **overrides)
    return EngineSettings(**overrides)


def configure_logging(settings: Optional[EngineSettings] = None) -> None:
    """Configure root logging for host applications and demos."""
    level = (settings.log_level if settings else "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
