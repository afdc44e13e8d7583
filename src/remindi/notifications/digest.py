"""
Daily status digest.

Users who opt in get one notification a day at their ``notification_time``
confirming the reminder service is running: how many subscriptions are
active and which bills fall due in the coming week.
"""

from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta

import structlog

from remindi.billing.cycles import BillingCycleCalculator
from remindi.billing.models import NotificationPreferences, Subscription
from remindi.notifications.config import ReminderConfig
from remindi.notifications.models import DailyDigestPayload, UpcomingBill

logger = structlog.get_logger(__name__)


def digest_due(
    preferences: NotificationPreferences,
    now: datetime,
    config: ReminderConfig,
) -> bool:
    """
    Whether the user's digest should go out at ``now``.

    The digest is due from today's ``notification_time`` until the send
    window closes, and only if the previous digest is older than the
    suppression period. A failed send is therefore retried by later runs
    inside the same window.
    """
    if not preferences.daily_notification_enabled:
        return False

    send_time = preferences.notification_time or config.default_notification_time
    scheduled = datetime.combine(now.date(), send_time, tzinfo=UTC)
    window = timedelta(minutes=config.daily_digest_window_minutes)
    if not scheduled <= now < scheduled + window:
        return False

    last_sent = preferences.last_daily_notification_sent_at
    suppression = timedelta(hours=config.daily_digest_suppression_hours)
    return last_sent is None or now - last_sent >= suppression


def _reminders_on(subscription: Subscription) -> bool:
    return subscription.use_default_notifications or bool(subscription.notifications_enabled)


def build_digest_payload(
    preferences: NotificationPreferences,
    subscriptions: Iterable[tuple[Subscription, int]],
    today: date,
    calculator: BillingCycleCalculator,
    lookahead_days: int = 7,
) -> DailyDigestPayload:
    """Digest content from the user's ``(subscription, payment_count)`` pairs.

    Upcoming bills cover non-ended subscriptions with reminders switched on
    whose next due date lies between today and ``lookahead_days`` ahead.
    """
    horizon = today + timedelta(days=lookahead_days)
    active = 0
    upcoming = []

    for subscription, payment_count in subscriptions:
        if subscription.has_ended(today):
            continue
        active += 1
        if not _reminders_on(subscription):
            continue
        try:
            due = calculator.next_billing_date(subscription, payment_count)
        except Exception as e:
            logger.warning(
                "reminders.digest.subscription_skipped",
                subscription_id=subscription.id,
                error=str(e),
            )
            continue
        if due is None or not today <= due <= horizon:
            continue
        upcoming.append(
            UpcomingBill(
                subscription_id=subscription.id,
                name=subscription.name,
                amount=subscription.price,
                currency=subscription.currency,
                due_date=due,
                days_until=(due - today).days,
            )
        )

    upcoming.sort(key=lambda bill: (bill.days_until, bill.name, bill.subscription_id))
    return DailyDigestPayload(
        user_id=preferences.user_id,
        email_address=preferences.effective_email,
        active_subscriptions=active,
        upcoming=upcoming,
    )


__all__ = ["digest_due", "build_digest_payload"]
