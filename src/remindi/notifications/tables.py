"""
Delivery-state table owned by the reminder engine.
"""

from datetime import date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from remindi.db import Base, TimestampMixin


class ReminderDeliveryTable(TimestampMixin, Base):
    """One row per logical reminder ``(subscription, interval, due date)``."""

    __tablename__ = "reminder_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False)
    interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "interval_days",
            "due_date",
            name="uq_reminder_deliveries_key",
        ),
        Index("ix_reminder_deliveries_status", "status", "last_attempt_at"),
    )


__all__ = ["ReminderDeliveryTable"]
