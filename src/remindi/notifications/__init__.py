"""
Reminder notifications.

Planner, deduplicator, delivery-state stores and the dispatcher that ties
them to the caller's send capability.
"""

from remindi.notifications.config import ReminderConfig, get_reminder_config, set_reminder_config
from remindi.notifications.dedup import NotificationDeduplicator
from remindi.notifications.dispatcher import ReminderDispatcher
from remindi.notifications.models import (
    DeliveryState,
    DeliveryStatus,
    DispatchResult,
    EffectiveNotificationSettings,
    RecoveryResult,
    ReminderEvent,
    ReminderKey,
)
from remindi.notifications.planner import (
    ReminderPlanner,
    effective_notification_settings,
    plan_reminders,
)
from remindi.notifications.sender import LoggingNotificationSender, NotificationSender

__all__ = [
    "ReminderConfig",
    "get_reminder_config",
    "set_reminder_config",
    "NotificationDeduplicator",
    "ReminderDispatcher",
    "DeliveryState",
    "DeliveryStatus",
    "DispatchResult",
    "EffectiveNotificationSettings",
    "RecoveryResult",
    "ReminderEvent",
    "ReminderKey",
    "ReminderPlanner",
    "effective_notification_settings",
    "plan_reminders",
    "LoggingNotificationSender",
    "NotificationSender",
]
