"""
Reminder planner.

Expands a subscription, its effective notification settings and its next
due date into concrete ``ReminderEvent`` instances. Planning is stateless:
every call recomputes the full set from current inputs.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta

import structlog

from remindi.billing.cycles import BillingCycleCalculator
from remindi.billing.models import (
    REMINDER_INTERVAL_CHOICES,
    NotificationPreferences,
    Subscription,
)
from remindi.billing.status import StatusResolution, resolve_status
from remindi.notifications.config import ReminderConfig
from remindi.notifications.models import EffectiveNotificationSettings, ReminderEvent

logger = structlog.get_logger(__name__)


def valid_intervals(intervals: Iterable[int], subscription_id: str | None = None) -> list[int]:
    """Supported intervals only, largest first, without repeats."""
    kept: set[int] = set()
    for value in intervals:
        try:
            days = int(value)
        except (TypeError, ValueError):
            days = None
        if days in REMINDER_INTERVAL_CHOICES:
            kept.add(days)
        else:
            logger.warning(
                "reminders.interval.invalid",
                interval_days=value,
                subscription_id=subscription_id,
            )
    return sorted(kept, reverse=True)


def effective_notification_settings(
    subscription: Subscription,
    preferences: NotificationPreferences,
    default_intervals: list[int] | None = None,
) -> EffectiveNotificationSettings:
    """
    Resolve the notification configuration applied to ``subscription``.

    Subscription overrides apply only when ``use_default_notifications`` is
    off, and each override left unset falls back to the owner's default.
    The owner's global switch always wins.
    """
    inherited = subscription.use_default_notifications
    fallback = default_intervals or []

    def pick(override, default):
        return default if inherited or override is None else override

    notifications_enabled = preferences.notifications_enabled and pick(
        subscription.notifications_enabled, True
    )
    email_enabled = pick(subscription.email_enabled, preferences.default_email_enabled)
    intervals = pick(
        subscription.reminder_intervals,
        preferences.reminder_intervals_with_fallback(fallback),
    )

    return EffectiveNotificationSettings(
        notifications_enabled=bool(notifications_enabled),
        email_enabled=bool(email_enabled),
        reminder_intervals=valid_intervals(intervals, subscription.id),
        email_address=preferences.effective_email,
        inherited=inherited,
    )


def plan_reminders(
    subscription: Subscription,
    effective_intervals: Iterable[int],
    next_billing_date: date | None,
    *,
    notification_time: time | None = None,
) -> list[ReminderEvent]:
    """
    One ``ReminderEvent`` per interval, scheduled ``d`` days before the due date.

    Intervals landing on the same day are kept as distinct reminders. Events
    already in the past are still returned; the dispatcher decides whether a
    late send is appropriate.
    """
    if next_billing_date is None:
        return []

    send_time = notification_time or time(9, 0)
    events = []
    for days in valid_intervals(effective_intervals, subscription.id):
        send_day = next_billing_date - timedelta(days=days)
        events.append(
            ReminderEvent(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                interval_days=days,
                due_date=next_billing_date,
                scheduled_at=datetime.combine(send_day, send_time, tzinfo=UTC),
            )
        )
    return events


@dataclass
class PlanOutcome:
    """Everything the dispatcher needs to know about one subscription."""

    resolution: StatusResolution
    settings: EffectiveNotificationSettings
    events: list[ReminderEvent] = field(default_factory=list)


class ReminderPlanner:
    """Runs the calculator, the status resolver and ``plan_reminders`` together."""

    def __init__(
        self,
        config: ReminderConfig,
        calculator: BillingCycleCalculator | None = None,
    ) -> None:
        self.config = config
        self.calculator = calculator or BillingCycleCalculator(
            strict_cycles=config.strict_billing_cycles
        )

    def settings_for(
        self, subscription: Subscription, preferences: NotificationPreferences
    ) -> EffectiveNotificationSettings:
        return effective_notification_settings(
            subscription, preferences, self.config.default_reminder_intervals
        )

    def plan(
        self,
        subscription: Subscription,
        payment_count: int,
        preferences: NotificationPreferences,
        now: datetime,
    ) -> PlanOutcome:
        """Plan reminders for the subscription's current due date.

        Ended subscriptions and subscriptions without a due date, or whose
        email channel is off, yield no events.
        """
        next_date = self.calculator.next_billing_date(subscription, payment_count)
        resolution = resolve_status(subscription, next_date, now)
        settings = self.settings_for(subscription, preferences)

        if resolution.is_ended or not settings.active:
            return PlanOutcome(resolution=resolution, settings=settings)

        events = plan_reminders(
            subscription,
            settings.reminder_intervals,
            resolution.next_billing_date,
            notification_time=preferences.notification_time
            or self.config.default_notification_time,
        )
        return PlanOutcome(resolution=resolution, settings=settings, events=events)


__all__ = [
    "valid_intervals",
    "effective_notification_settings",
    "plan_reminders",
    "PlanOutcome",
    "ReminderPlanner",
]
