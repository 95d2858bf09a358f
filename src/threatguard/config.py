"""Configuration management for threatguard."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_SENSITIVITIES = ("low", "medium", "strict")


class Settings(BaseSettings):
    """Engine settings loaded from ``THREATGUARD_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="THREATGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="threatguard", description="Prefix for log file names")

    # Detection
    sensitivity: str = Field(
        default="medium", description="Pattern set selection: low, medium or strict"
    )
    detector_timeout_ms: int = Field(
        default=200, description="Per-detector time budget before it degrades to no opinion"
    )
    max_scan_length: int = Field(
        default=8192, description="Maximum characters of any single string scanned by patterns"
    )
    large_response_bytes: int = Field(
        default=10 * 1024 * 1024, description="Response size treated as a large data transfer"
    )
    security_bypass_enabled: bool = Field(
        default=False,
        description="Disable all analysis (testing only, logged as security degradation)",
    )
    skip_paths: str = Field(
        default="/health", description="Comma-separated paths that are never analysed"
    )

    # Rate window / brute force
    rate_window_seconds: float = Field(default=60.0, description="Sliding window length")
    rate_max_attempts: int = Field(default=10, description="Attempts per window at full confidence")
    auth_attempt_floor: int = Field(
        default=5, description="Attempts on an auth endpoint that trigger the boosted floor"
    )

    # Actions
    block_duration_seconds: float = Field(default=3600.0, description="IP block TTL")
    alert_threshold: float = Field(
        default=0.8, description="Risk above which operators are alerted"
    )
    deny_threshold: float = Field(default=0.9, description="Risk above which a request is denied")
    housekeeping_interval_seconds: float = Field(
        default=60.0, description="Interval between expired-block purges"
    )

    # Threat state store
    state_retention_count: int = Field(
        default=100, description="Max sample count weighting the running risk average"
    )
    state_max_sources: int = Field(
        default=100_000, description="Max tracked sources before LRU eviction"
    )
    state_entry_ttl_seconds: float = Field(
        default=86400.0, description="Idle time after which a source's running state is dropped"
    )
    lock_stripes: int = Field(default=64, description="Number of lock shards for shared maps")

    # Behavioural baseline
    baseline_min_samples: int = Field(
        default=10, description="Samples required before a baseline is usable"
    )
    baseline_history_cap: int = Field(default=1000, description="Per-user sample history cap")
    baseline_recalibrate_every: int = Field(
        default=25, description="New samples between asynchronous baseline refreshes"
    )
    baseline_max_users: int = Field(default=50_000, description="Max tracked user profiles")
    baseline_queue_size: int = Field(
        default=1024, description="Bounded queue size for background baseline jobs"
    )
    retrain_min_samples: int = Field(
        default=50, description="History size before a per-user anomaly model is trained"
    )

    @field_validator("sensitivity")
    @classmethod
    def validate_sensitivity(cls, v: str) -> str:
        """Validate sensitivity level."""
        v = v.lower()
        if v not in VALID_SENSITIVITIES:
            raise ValueError(f"sensitivity must be one of {list(VALID_SENSITIVITIES)}, got: {v}")
        return v

    @field_validator("alert_threshold", "deny_threshold")
    @classmethod
    def validate_float_0_1(cls, v: float) -> float:
        """Validate float values are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got: {v}")
        return v

    @field_validator(
        "detector_timeout_ms",
        "max_scan_length",
        "rate_max_attempts",
        "state_retention_count",
        "lock_stripes",
        "baseline_min_samples",
        "baseline_history_cap",
        "baseline_recalibrate_every",
        "baseline_queue_size",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate integer values are strictly positive."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got: {v}")
        return v

    @field_validator(
        "rate_window_seconds", "block_duration_seconds", "housekeeping_interval_seconds"
    )
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        """Validate durations are strictly positive."""
        if v <= 0:
            raise ValueError(f"Duration must be positive, got: {v}")
        return v

    @property
    def detector_timeout(self) -> float:
        """Per-detector timeout in seconds."""
        return self.detector_timeout_ms / 1000.0

    @property
    def skip_path_set(self) -> frozenset[str]:
        """Parse ``skip_paths`` into a set."""
        return frozenset(p.strip() for p in self.skip_paths.split(",") if p.strip())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
