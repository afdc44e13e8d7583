"""
Reminder engine exceptions.

Custom exceptions for billing-date and reminder operations with clear error
messages, context, and recovery hints.
"""

from typing import Any


class ReminderEngineError(Exception):
    """
    Base engine error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "REMINDER_ENGINE_ERROR"
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logs and task results."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class BillingConfigurationError(ReminderEngineError):
    """A subscription's billing configuration cannot be interpreted."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "BILLING_CONFIGURATION_ERROR",
            context=context,
            recovery_hint=recovery_hint,
        )


class InvalidBillingCycleError(BillingConfigurationError):
    """Unrecognized billing cycle value."""

    def __init__(self, billing_cycle: Any, subscription_id: str | None = None) -> None:
        context: dict[str, Any] = {"billing_cycle": billing_cycle}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            f"Unrecognized billing cycle: {billing_cycle!r}",
            context=context,
            recovery_hint="Use one of daily, weekly, monthly, quarterly, yearly, one-time",
        )
        self.error_code = "INVALID_BILLING_CYCLE"


class InvalidBillingIntervalError(BillingConfigurationError):
    """Billing interval outside the supported 1-12 range."""

    def __init__(self, billing_interval: Any, subscription_id: str | None = None) -> None:
        context: dict[str, Any] = {"billing_interval": billing_interval}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            f"Billing interval must be between 1 and 12, got {billing_interval!r}",
            context=context,
            recovery_hint="Edit the subscription to use an interval between 1 and 12",
        )
        self.error_code = "INVALID_BILLING_INTERVAL"


class ClockError(ReminderEngineError):
    """The time source failed or returned an unusable value."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            "CLOCK_ERROR",
            context=context,
            recovery_hint="Run aborted before any state was written; the next trigger retries",
        )


class NotificationSendError(ReminderEngineError):
    """The external notifier rejected or failed a send."""

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        channel: str | None = None,
    ) -> None:
        context: dict[str, Any] = {}
        if subscription_id:
            context["subscription_id"] = subscription_id
        if channel:
            context["channel"] = channel

        super().__init__(
            message,
            "NOTIFICATION_SEND_ERROR",
            context=context,
            recovery_hint="The reminder is queued for the failed-notification recovery pass",
        )


class DeliveryStateError(ReminderEngineError):
    """Delivery-state store read or write failure."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, "DELIVERY_STATE_ERROR", context=context)


__all__ = [
    "ReminderEngineError",
    "BillingConfigurationError",
    "InvalidBillingCycleError",
    "InvalidBillingIntervalError",
    "ClockError",
    "NotificationSendError",
    "DeliveryStateError",
]
