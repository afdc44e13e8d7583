"""
Billing-date module.

Provides:
- Calendar arithmetic (leap years, month-end clamping)
- Billing cycle calculator with anchor-day re-anchoring
- Subscription status resolver
- Bill views and monthly forecast
"""

from remindi.billing.calendar import is_leap_year, last_day_of_month
from remindi.billing.cycles import BillingCycleCalculator, compute_next_billing_date
from remindi.billing.exceptions import (
    BillingConfigurationError,
    ClockError,
    DeliveryStateError,
    InvalidBillingCycleError,
    InvalidBillingIntervalError,
    NotificationSendError,
    ReminderEngineError,
)
from remindi.billing.models import (
    BillingCycle,
    NotificationPreferences,
    PaymentRecord,
    Subscription,
    SubscriptionStatus,
    capture_billing_cycle_day,
)
from remindi.billing.status import StatusResolution, resolve_status

__all__ = [
    # Calendar
    "is_leap_year",
    "last_day_of_month",
    # Calculator
    "BillingCycleCalculator",
    "compute_next_billing_date",
    # Status
    "StatusResolution",
    "resolve_status",
    # Models
    "BillingCycle",
    "SubscriptionStatus",
    "Subscription",
    "PaymentRecord",
    "NotificationPreferences",
    "capture_billing_cycle_day",
    # Exceptions
    "ReminderEngineError",
    "BillingConfigurationError",
    "InvalidBillingCycleError",
    "InvalidBillingIntervalError",
    "ClockError",
    "NotificationSendError",
    "DeliveryStateError",
]
