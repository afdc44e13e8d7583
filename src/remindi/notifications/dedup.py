"""
Notification deduplicator.

A reminder is addressed by ``(subscription_id, interval_days, due_date)``;
the same triple is sendable at most once inside a rolling window measured
from its last confirmed send.
"""

from datetime import date, datetime, timedelta

import structlog

from remindi.notifications.models import DeliveryState, DeliveryStatus, ReminderKey
from remindi.notifications.store import DeliveryStateStore

logger = structlog.get_logger(__name__)


class NotificationDeduplicator:
    """Rolling-window suppression over a delivery-state store."""

    def __init__(self, store: DeliveryStateStore, dedup_window_hours: int = 23) -> None:
        self.store = store
        self.dedup_window_hours = dedup_window_hours

    @staticmethod
    def within_window(
        state: DeliveryState | None, now: datetime, dedup_window_hours: int
    ) -> bool:
        """True when ``state`` holds a send younger than the window."""
        if dedup_window_hours <= 0 or state is None:
            return False
        if state.status != DeliveryStatus.SENT or state.sent_at is None:
            return False
        return now - state.sent_at < timedelta(hours=dedup_window_hours)

    async def should_send(
        self,
        subscription_id: str,
        interval_days: int,
        due_date: date,
        now: datetime,
        dedup_window_hours: int | None = None,
    ) -> bool:
        """Whether the triple may be sent at ``now``.

        A window of 0 never suppresses.
        """
        window = self.dedup_window_hours if dedup_window_hours is None else dedup_window_hours
        if window <= 0:
            return True

        state = await self.store.get(ReminderKey(subscription_id, interval_days, due_date))
        if self.within_window(state, now, window):
            logger.debug(
                "reminders.dedup.suppressed",
                subscription_id=subscription_id,
                interval_days=interval_days,
                due_date=due_date.isoformat(),
            )
            return False
        return True

    async def record_sent(
        self,
        subscription_id: str,
        interval_days: int,
        due_date: date,
        now: datetime,
        *,
        user_id: str | None = None,
    ) -> DeliveryState:
        """Record a confirmed successful send. Call only after the sender succeeded."""
        return await self.store.record_sent(
            ReminderKey(subscription_id, interval_days, due_date), now, user_id=user_id
        )


__all__ = ["NotificationDeduplicator"]
