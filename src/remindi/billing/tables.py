"""
SQLAlchemy tables for the records the engine consumes.

These rows are written by the surrounding application; the engine only
reads them, apart from stamping ``last_daily_notification_sent_at`` after a
daily digest goes out.
"""

from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import Mapped, mapped_column

from remindi.db import Base, TimestampMixin


class SubscriptionTable(TimestampMixin, Base):
    """User subscriptions."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Billing configuration (immutable after creation)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    billing_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    billing_cycle_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    first_billing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Notification overrides
    use_default_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notifications_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    email_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    reminder_intervals: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_user", "user_id"),
        Index("ix_subscriptions_end_date", "end_date"),
        CheckConstraint(
            "billing_interval BETWEEN 1 AND 12", name="ck_subscriptions_billing_interval"
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_subscriptions_end_after_start"
        ),
    )


class PaymentRecordTable(TimestampMixin, Base):
    """Payments logged against a subscription."""

    __tablename__ = "payment_records"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="paid")
    payment_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payment_records_subscription_status", "subscription_id", "status"),
        Index("ix_payment_records_ordering", "subscription_id", "payment_date", "created_at"),
    )


class NotificationPreferencesTable(TimestampMixin, Base):
    """Per-user notification defaults."""

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    notification_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    default_email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    default_reminder_intervals: Mapped[list[int]] = mapped_column(
        JSON, nullable=False, default=list
    )
    notification_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    daily_notification_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    last_daily_notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


__all__ = ["SubscriptionTable", "PaymentRecordTable", "NotificationPreferencesTable"]
