"""
Reminder and delivery-state models.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeliveryStatus(str, Enum):
    """Outcome of the latest send attempt for one reminder."""

    SENT = "sent"
    PENDING_RETRY = "pending_retry"
    FAILED = "failed"


class NotificationChannel(str, Enum):
    """Outbound channels the send capability understands."""

    EMAIL = "email"


@dataclass(frozen=True, order=True)
class ReminderKey:
    """Content address of one logical reminder."""

    subscription_id: str
    interval_days: int
    due_date: date


@dataclass(frozen=True)
class ReminderEvent:
    """One reminder derived from current subscription state.

    Computed fresh on every run and never mutated.
    """

    subscription_id: str
    user_id: str
    interval_days: int
    due_date: date
    scheduled_at: datetime

    @property
    def key(self) -> ReminderKey:
        return ReminderKey(self.subscription_id, self.interval_days, self.due_date)


class DeliveryState(BaseModel):
    """Delivery bookkeeping for one ``(subscription, interval, due date)``."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    interval_days: int
    due_date: date
    user_id: str | None = None
    status: DeliveryStatus
    attempts: int = 0
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    last_error: str | None = None

    @field_validator("last_attempt_at", "sent_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        # SQLite hands timezone-aware columns back naive
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @property
    def key(self) -> ReminderKey:
        return ReminderKey(self.subscription_id, self.interval_days, self.due_date)


class EffectiveNotificationSettings(BaseModel):
    """Notification configuration actually applied to a subscription."""

    notifications_enabled: bool
    email_enabled: bool
    reminder_intervals: list[int] = Field(default_factory=list)
    email_address: str = ""
    inherited: bool = True

    @property
    def active(self) -> bool:
        return self.notifications_enabled and self.email_enabled


class ReminderPayload(BaseModel):
    """Content handed to the send capability."""

    subscription_id: str
    subscription_name: str
    amount: Decimal
    currency: str
    due_date: date
    days_before: int
    email_address: str
    tracking_id: str = Field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class UpcomingBill(BaseModel):
    """One line of the daily digest."""

    subscription_id: str
    name: str
    amount: Decimal
    currency: str
    due_date: date
    days_until: int


class DailyDigestPayload(BaseModel):
    """Per-user daily status notification content."""

    user_id: str
    email_address: str
    active_subscriptions: int
    upcoming: list[UpcomingBill] = Field(default_factory=list)
    tracking_id: str = Field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class DispatchResult:
    """Counters returned by one dispatcher run."""

    sent_count: int = 0
    deferred_count: int = 0
    failed_count: int = 0
    suppressed_count: int = 0
    error_count: int = 0
    skipped: bool = False
    dry_run: bool = False
    planned: list[ReminderEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent_count": self.sent_count,
            "deferred_count": self.deferred_count,
            "failed_count": self.failed_count,
            "suppressed_count": self.suppressed_count,
            "error_count": self.error_count,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
        }


@dataclass
class RecoveryResult:
    """Counters returned by one failed-notification recovery pass."""

    retried_count: int = 0
    recovered_count: int = 0
    failed_count: int = 0
    abandoned_count: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "retried_count": self.retried_count,
            "recovered_count": self.recovered_count,
            "failed_count": self.failed_count,
            "abandoned_count": self.abandoned_count,
            "skipped": self.skipped,
        }


@dataclass
class DigestResult:
    """Counters returned by one daily digest pass."""

    sent_count: int = 0
    failed_count: int = 0
    missing_address_count: int = 0
    error_count: int = 0
    skipped: bool = False
    dry_run: bool = False
    planned: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "missing_address_count": self.missing_address_count,
            "error_count": self.error_count,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
        }


__all__ = [
    "DeliveryStatus",
    "NotificationChannel",
    "ReminderKey",
    "ReminderEvent",
    "DeliveryState",
    "EffectiveNotificationSettings",
    "ReminderPayload",
    "DispatchResult",
    "RecoveryResult",
    "UpcomingBill",
    "DailyDigestPayload",
    "DigestResult",
]
