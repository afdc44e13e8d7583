"""
Billing domain models.

Read-only snapshots of the records the engine consumes from the surrounding
application: subscriptions, their payment history, and the owner's
notification preferences.
"""

from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BillingCycle(str, Enum):
    """Recurrence unit of a subscription."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    ONE_TIME = "one-time"


class SubscriptionStatus(str, Enum):
    """Derived lifecycle status. Never persisted."""

    ACTIVE = "active"
    OVERDUE = "overdue"
    ENDED = "ended"


class PaymentStatus(str, Enum):
    """Payment record status."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


# Days-before-due values a user may pick for reminders
REMINDER_INTERVAL_CHOICES: frozenset[int] = frozenset({1, 2, 3, 7, 15, 30})

# Cycles whose due dates are re-anchored to billing_cycle_day
ANCHORED_CYCLES: frozenset[str] = frozenset(
    {BillingCycle.MONTHLY.value, BillingCycle.QUARTERLY.value}
)


class Subscription(BaseModel):
    """A user's recurring charge.

    ``billing_cycle`` is kept as the raw stored string so that a malformed
    record can still be loaded; the cycle calculator decides how to treat
    values it does not recognize.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Subscription identifier")
    user_id: str = Field(description="Owning user")
    name: str = Field("", description="Display name")
    price: Decimal = Field(Decimal("0"), description="Amount charged per period")
    currency: str = Field("USD", description="Currency code")

    billing_cycle: str = Field(BillingCycle.MONTHLY.value, description="Recurrence unit")
    billing_interval: int = Field(1, description="Every N cycles")
    start_date: date = Field(description="Subscription start")
    first_billing_date: date | None = Field(None, description="First charge date")
    billing_cycle_day: int | None = Field(None, description="Anchor day of month")
    end_date: date | None = Field(None, description="Terminal date")

    # Notification overrides
    use_default_notifications: bool = Field(True, description="Inherit the owner's defaults")
    notifications_enabled: bool | None = None
    email_enabled: bool | None = None
    reminder_intervals: list[int] | None = None

    @field_validator("billing_cycle", mode="before")
    @classmethod
    def normalize_cycle(cls, v: Any) -> Any:
        if isinstance(v, Enum):
            return v.value
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def default_first_billing_date(self) -> "Subscription":
        if self.first_billing_date is None:
            self.first_billing_date = self.start_date
        return self

    @classmethod
    def create(cls, **fields: Any) -> "Subscription":
        """Build a new subscription, capturing its anchor day from ``start_date``.

        This is the only place ``billing_cycle_day`` is derived; later updates
        and payments never recalculate it.
        """
        subscription = cls(**fields)
        if subscription.billing_cycle_day is None:
            subscription.billing_cycle_day = capture_billing_cycle_day(
                subscription.billing_cycle, subscription.start_date
            )
        return subscription

    @property
    def is_one_time(self) -> bool:
        return self.billing_cycle == BillingCycle.ONE_TIME.value

    def has_ended(self, today: date) -> bool:
        """True once ``end_date`` is today or earlier."""
        return self.end_date is not None and self.end_date <= today


class PaymentRecord(BaseModel):
    """A logged payment. The count of paid records drives the due date."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    subscription_id: str
    amount: Decimal
    payment_date: date
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PAID
    payment_method: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class NotificationPreferences(BaseModel):
    """Per-user notification defaults."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email: str = ""
    notification_email: str | None = None
    notifications_enabled: bool = True
    default_email_enabled: bool = True
    default_reminder_intervals: list[int] = Field(default_factory=list)
    notification_time: time | None = Field(None, description="UTC time of day for reminders")
    daily_notification_enabled: bool = Field(False, description="Opted in to the daily digest")
    last_daily_notification_sent_at: datetime | None = None

    @field_validator("last_daily_notification_sent_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        # SQLite hands timezone-aware columns back naive
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @property
    def effective_email(self) -> str:
        return self.notification_email or self.email

    def reminder_intervals_with_fallback(self, fallback: list[int]) -> list[int]:
        return list(self.default_reminder_intervals) or list(fallback)


def capture_billing_cycle_day(billing_cycle: str, start_date: date) -> int | None:
    """Anchor day for monthly/quarterly cycles, ``None`` for everything else.

    Unknown cycles are anchored too since they are billed as monthly.
    """
    known = {cycle.value for cycle in BillingCycle}
    if billing_cycle in ANCHORED_CYCLES or billing_cycle not in known:
        return start_date.day
    return None


def count_paid_periods(payments: list[PaymentRecord]) -> int:
    """Number of elapsed billing periods, i.e. paid payment records."""
    return sum(1 for payment in payments if payment.status == PaymentStatus.PAID)


def order_payments(payments: list[PaymentRecord]) -> list[PaymentRecord]:
    """Most recent first: ``(payment_date desc, created_at desc)``."""
    return sorted(payments, key=lambda p: (p.payment_date, p.created_at), reverse=True)


__all__ = [
    "BillingCycle",
    "SubscriptionStatus",
    "PaymentStatus",
    "REMINDER_INTERVAL_CHOICES",
    "ANCHORED_CYCLES",
    "Subscription",
    "PaymentRecord",
    "NotificationPreferences",
    "capture_billing_cycle_day",
    "count_paid_periods",
    "order_payments",
]
