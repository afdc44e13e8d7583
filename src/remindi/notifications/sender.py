"""
Outbound send capability.

The engine never talks to a mail provider itself; callers supply an object
implementing ``NotificationSender``. ``LoggingNotificationSender`` is used
for dry runs and as the default when nothing is configured.
"""

import importlib
from typing import Any, Protocol, runtime_checkable

import structlog

from remindi.billing.exceptions import BillingConfigurationError
from remindi.billing.models import Subscription
from remindi.notifications.models import (
    NotificationChannel,
    ReminderEvent,
    ReminderPayload,
)

logger = structlog.get_logger(__name__)


@runtime_checkable
class NotificationSender(Protocol):
    """``send(user_id, subscription_id, channel, payload) -> success``.

    ``subscription_id`` is None for user-level notifications such as the
    daily digest.

    Implementations return False or raise ``NotificationSendError`` when the
    provider rejects a message; either way the reminder goes to retry.
    """

    async def send(
        self,
        user_id: str,
        subscription_id: str | None,
        channel: NotificationChannel,
        payload: dict[str, Any],
    ) -> bool: ...


class LoggingNotificationSender:
    """Logs every reminder instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        user_id: str,
        subscription_id: str | None,
        channel: NotificationChannel,
        payload: dict[str, Any],
    ) -> bool:
        self.sent.append(
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "channel": channel,
                "payload": payload,
            }
        )
        logger.info(
            "reminders.sender.logged",
            user_id=user_id,
            subscription_id=subscription_id,
            channel=channel.value,
            due_date=payload.get("due_date"),
            days_before=payload.get("days_before"),
        )
        return True


def build_payload(
    event: ReminderEvent,
    subscription: Subscription,
    email_address: str,
) -> ReminderPayload:
    """Reminder content for one event."""
    return ReminderPayload(
        subscription_id=subscription.id,
        subscription_name=subscription.name,
        amount=subscription.price,
        currency=subscription.currency,
        due_date=event.due_date,
        days_before=event.interval_days,
        email_address=email_address,
    )


def load_sender(path: str | None) -> NotificationSender:
    """Instantiate the sender named by a ``module:factory`` path.

    ``None`` gives the logging sender.
    """
    if not path:
        return LoggingNotificationSender()

    module_name, _, attr = path.partition(":")
    if not attr:
        module_name, _, attr = path.rpartition(".")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError, ValueError) as e:
        raise BillingConfigurationError(
            f"Cannot load notification sender '{path}'",
            context={"sender": path},
            recovery_hint="Set REMINDERS__SENDER to 'package.module:factory'",
        ) from e

    sender = factory()
    if not isinstance(sender, NotificationSender):
        raise BillingConfigurationError(
            f"Notification sender '{path}' has no async send()",
            context={"sender": path},
        )
    return sender


__all__ = [
    "NotificationSender",
    "LoggingNotificationSender",
    "build_payload",
    "load_sender",
]
