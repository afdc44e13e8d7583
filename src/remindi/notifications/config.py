"""
Reminder engine configuration
"""

from datetime import time

from pydantic import BaseModel, ConfigDict, Field, field_validator

from remindi.billing.models import REMINDER_INTERVAL_CHOICES


class ReminderConfig(BaseModel):
    """Knobs the dispatcher and recovery pass read at run time."""

    model_config = ConfigDict()

    dispatch_tolerance_minutes: int = Field(3, ge=1, description="On-time dispatch window")
    dedup_window_hours: int = Field(23, ge=0, description="Repeat-send suppression window")
    max_retry_attempts: int = Field(3, ge=0, description="Send attempts before giving up")
    retry_backoff_minutes: int = Field(15, ge=0, description="Minutes between retries")
    delivery_retention_days: int = Field(90, ge=1, description="Delivery-state retention")
    send_late_reminders: bool = Field(True, description="Catch up missed reminders")
    strict_billing_cycles: bool = Field(False, description="Reject unknown billing cycles")
    default_reminder_intervals: list[int] = Field(
        default_factory=lambda: [30, 15, 7, 3, 1],
        description="Fallback intervals when a user has none",
    )
    default_notification_time: time = Field(time(9, 0), description="UTC send time")
    max_concurrent_sends: int = Field(10, ge=1, description="Parallel sends per run")
    dispatch_lock_name: str = Field("reminders:dispatch", description="Dispatcher lease key")
    recovery_lock_name: str = Field("reminders:process-failed", description="Recovery lease key")
    dispatch_lock_ttl_seconds: int = Field(300, ge=1, description="Lease expiry")
    daily_digest_lock_name: str = Field("reminders:daily-digest", description="Digest lease key")
    daily_digest_window_minutes: int = Field(
        60, ge=1, description="Minutes after notification_time a digest may still go out"
    )
    daily_digest_suppression_hours: int = Field(
        20, ge=1, description="Hours after a digest before the next one"
    )
    daily_digest_lookahead_days: int = Field(7, ge=0, description="Days of upcoming bills listed")

    @field_validator("default_reminder_intervals")
    @classmethod
    def validate_intervals(cls, v: list[int]) -> list[int]:
        invalid = sorted(set(v) - REMINDER_INTERVAL_CHOICES)
        if invalid:
            raise ValueError(f"Unsupported reminder intervals: {invalid}")
        return sorted(set(v), reverse=True)

    @property
    def deduplication_enabled(self) -> bool:
        return self.dedup_window_hours > 0

    @classmethod
    def from_settings(cls) -> "ReminderConfig":
        """Create configuration from the centralized settings."""
        from remindi.settings import settings

        reminders = settings.reminders
        return cls(
            dispatch_tolerance_minutes=reminders.dispatch_tolerance_minutes,
            dedup_window_hours=reminders.dedup_window_hours,
            max_retry_attempts=reminders.max_retry_attempts,
            retry_backoff_minutes=reminders.retry_backoff_minutes,
            delivery_retention_days=reminders.delivery_retention_days,
            send_late_reminders=reminders.send_late_reminders,
            strict_billing_cycles=reminders.strict_billing_cycles,
            default_reminder_intervals=reminders.default_reminder_intervals,
            default_notification_time=reminders.default_notification_time,
            max_concurrent_sends=reminders.max_concurrent_sends,
            dispatch_lock_ttl_seconds=reminders.dispatch_lock_ttl_seconds,
            daily_digest_window_minutes=reminders.daily_digest_window_minutes,
            daily_digest_suppression_hours=reminders.daily_digest_suppression_hours,
            daily_digest_lookahead_days=reminders.daily_digest_lookahead_days,
        )


# Global configuration instance
_reminder_config: ReminderConfig | None = None


def get_reminder_config() -> ReminderConfig:
    """Get the global reminder configuration instance"""
    global _reminder_config
    if _reminder_config is None:
        _reminder_config = ReminderConfig.from_settings()
    return _reminder_config


def set_reminder_config(config: ReminderConfig | None) -> None:
    """Set the global reminder configuration instance"""
    global _reminder_config
    _reminder_config = config
