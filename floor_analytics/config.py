"""
Floor Analytics - Configuration Management

This module handles all configuration settings for the floor analytics engine.
It uses Pydantic Settings for environment variable management and validation.
"""

import json
import os
from typing import Annotated, List

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class LossAllocationWeights(BaseModel):
    """
    Default weights used when a machine's losses are split into the Six Big Losses.

    The availability weights apply only when no status-duration evidence exists
    for the machine; otherwise the observed downtime proportions are used. The
    quality split moves between ``defects_min`` and ``defects_max`` with the NG
    rate (``ng_rate / defects_ng_rate_divisor``).
    """

    equipment_failure: float = Field(default=0.4, ge=0, le=1)
    setup: float = Field(default=0.3, ge=0, le=1)
    idling: float = Field(default=0.3, ge=0, le=1)
    defects_min: float = Field(default=0.2, ge=0, le=1)
    defects_max: float = Field(default=0.8, ge=0, le=1)
    defects_ng_rate_divisor: float = Field(default=5.0, gt=0)

    # Loss ranking severity mix
    severity_impact: float = Field(default=0.5, ge=0)
    severity_duration: float = Field(default=0.3, ge=0)
    severity_frequency: float = Field(default=0.2, ge=0)


class RootCauseThresholds(BaseModel):
    """Thresholds for the rule-based root cause evidence."""

    short_stop_seconds: float = 300
    min_short_stops: int = 5
    long_stop_seconds: float = 1200
    min_long_stops: int = 2
    speed_gap_pct: float = 10.0
    ng_rate_pct: float = 1.0


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application Settings
    APP_NAME: str = "Floor Analytics API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS Settings
    ALLOWED_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:5173", "http://localhost:3000"]

    # Database Settings
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/floor_analytics"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_ECHO: bool = False
    DATABASE_CONNECT_ATTEMPTS: int = 5

    # Shift Settings
    SHIFT_TIMEZONE: str = "UTC"

    # Availability Settings
    AVAILABILITY_SYNC_ENABLED: bool = True
    AVAILABILITY_SYNC_INTERVAL: int = 30  # seconds
    ROLLING_WINDOW_MINUTES: int = 10
    SYNC_RETRY_DELAY: float = 1.0  # seconds
    SYNC_MACHINE_TIMEOUT: float = 10.0  # seconds

    # OEE Settings
    LOW_AVAILABILITY_THRESHOLD: float = 10.0
    # Stand-in while target speeds are incomplete; revisit once every machine has one
    DEFAULT_PERFORMANCE_WHEN_TARGET_UNKNOWN: float = 100.0

    # Analytics Settings
    ANALYTICS_CACHE_TTL: int = 60  # seconds
    ANALYTICS_REFRESH_ENABLED: bool = True
    ANALYTICS_REFRESH_INTERVAL: int = 60  # seconds
    ANALYTICS_REFRESH_RANGES: Annotated[List[str], NoDecode] = ["shift", "today"]
    ANALYTICS_HISTORY_LIMIT: int = 20
    ANOMALY_MIN_HISTORY: int = 6
    ANOMALY_Z_THRESHOLD: float = 2.0

    LOSS_WEIGHTS: LossAllocationWeights = LossAllocationWeights()
    ROOT_CAUSE_THRESHOLDS: RootCauseThresholds = RootCauseThresholds()

    # Monitoring Settings
    ENABLE_METRICS: bool = True

    @field_validator("ALLOWED_ORIGINS", "ANALYTICS_REFRESH_RANGES", mode="before")
    @classmethod
    def parse_comma_separated(cls, v):
        """Parse comma-separated strings into lists."""
        if isinstance(v, str) and v.lstrip().startswith("["):
            return json.loads(v)
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment setting."""
        allowed_envs = ["development", "staging", "production", "test"]
        if v not in allowed_envs:
            raise ValueError(f"ENVIRONMENT must be one of {allowed_envs}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level setting."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}")
        return v.upper()

    @field_validator("ANOMALY_MIN_HISTORY")
    @classmethod
    def validate_anomaly_history(cls, v):
        """Anomaly detection needs at least six snapshots to be meaningful."""
        if v < 6:
            raise ValueError("ANOMALY_MIN_HISTORY must be at least 6")
        return v

    @model_validator(mode="after")
    def validate_history_limit(self):
        """The cached history must be able to hold a full anomaly baseline."""
        if self.ANALYTICS_HISTORY_LIMIT < self.ANOMALY_MIN_HISTORY:
            raise ValueError(
                "ANALYTICS_HISTORY_LIMIT must be at least ANOMALY_MIN_HISTORY "
                f"({self.ANALYTICS_HISTORY_LIMIT} < {self.ANOMALY_MIN_HISTORY})"
            )
        return self


# Environment-specific configurations
class DevelopmentSettings(Settings):
    """Development environment settings."""
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"


class StagingSettings(Settings):
    """Staging environment settings."""
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"


class ProductionSettings(Settings):
    """Production environment settings."""
    DEBUG: bool = False
    LOG_LEVEL: str = "WARNING"
    DATABASE_ECHO: bool = False


def get_settings() -> Settings:
    """Get settings based on environment."""
    env = os.getenv("ENVIRONMENT", "development")

    if env == "development":
        return DevelopmentSettings()
    elif env == "staging":
        return StagingSettings()
    elif env == "production":
        return ProductionSettings()
    else:
        return Settings()


settings = get_settings()
