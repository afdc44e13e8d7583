"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for engine configuration.
"""

from datetime import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: REMINDERS__DEDUP_WINDOW_HOURS=0
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("remindi", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("remindi", description="Database name")
        username: str = Field("remindi", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration."""

        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")

        max_connections: int = Field(50, description="Max connections in pool")
        decode_responses: bool = Field(True, description="Decode responses to strings")

        # Separate database for job leases
        lock_db: int = Field(4, description="Lease/lock database number")

        @property
        def redis_url(self) -> str:
            """Build Redis URL."""
            if self.url:
                return str(self.url)
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

        @property
        def lock_url(self) -> str:
            """Build lease Redis URL."""
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.lock_db}"
            return f"redis://{self.host}:{self.port}/{self.lock_db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")
        enable_utc: bool = Field(True, description="Enable UTC")

        # Beat cadence
        dispatch_interval_seconds: float = Field(60.0, description="Reminder dispatch cadence")
        process_failed_interval_seconds: float = Field(
            900.0, description="Failed-notification recovery cadence"
        )
        prune_interval_seconds: float = Field(86400.0, description="Delivery-state pruning cadence")
        daily_digest_interval_seconds: float = Field(900.0, description="Daily digest cadence")

        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Reminder Engine
    # ============================================================

    class ReminderSettings(BaseModel):
        """Reminder scheduling and delivery configuration."""

        dispatch_tolerance_minutes: int = Field(
            3, ge=1, description="Minutes after a scheduled instant a reminder still fires on time"
        )
        dedup_window_hours: int = Field(
            23, ge=0, description="Hours a sent reminder is suppressed (0 disables, testing only)"
        )
        max_retry_attempts: int = Field(3, ge=0, description="Send attempts before giving up")
        retry_backoff_minutes: int = Field(15, ge=0, description="Minutes between retries")
        delivery_retention_days: int = Field(
            90, ge=1, description="Days delivery-state records are kept"
        )
        send_late_reminders: bool = Field(
            True, description="Catch up a missed reminder while its bill is still upcoming"
        )
        strict_billing_cycles: bool = Field(
            False, description="Reject unknown billing cycles instead of treating them as monthly"
        )
        default_reminder_intervals: list[int] = Field(
            default_factory=lambda: [30, 15, 7, 3, 1],
            description="Intervals used when a user has no defaults configured",
        )
        default_notification_time: time = Field(
            time(9, 0), description="UTC time of day reminders are sent"
        )
        max_concurrent_sends: int = Field(10, ge=1, description="Parallel sends per run")
        dispatch_lock_ttl_seconds: int = Field(300, ge=1, description="Dispatcher lease expiry")
        daily_digest_window_minutes: int = Field(
            60, ge=1, description="Minutes after notification_time a daily digest may go out"
        )
        daily_digest_suppression_hours: int = Field(
            20, ge=1, description="Minimum hours between two daily digests to one user"
        )
        daily_digest_lookahead_days: int = Field(
            7, ge=0, description="Days of upcoming bills listed in the daily digest"
        )
        sender: str | None = Field(
            None, description="Dotted path to a NotificationSender factory"
        )

    reminders: ReminderSettings = ReminderSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
