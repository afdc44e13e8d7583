"""
Subscription status resolver.

Status is derived on every read from ``(end_date, next_billing_date, now)``
and never stored.
"""

from dataclasses import dataclass
from datetime import date, datetime

from remindi.billing.models import SubscriptionStatus, Subscription


@dataclass(frozen=True)
class StatusResolution:
    """Resolved lifecycle status of a subscription at one instant."""

    status: SubscriptionStatus
    is_overdue: bool
    next_billing_date: date | None = None

    @property
    def is_ended(self) -> bool:
        return self.status is SubscriptionStatus.ENDED


SAFE_DEFAULT = StatusResolution(status=SubscriptionStatus.ACTIVE, is_overdue=False)


def resolve_status(
    subscription: Subscription,
    next_billing_date: date | None,
    now: datetime,
) -> StatusResolution:
    """
    Resolve ``active`` / ``overdue`` / ``ended``.

    ``ended`` dominates: an ended subscription is never overdue, whatever the
    billing math says. ``overdue`` means not ended and the due date is
    strictly before today. One-time charges never recur, so they are never
    overdue. Everything else, including a paid one-time charge with no
    remaining due date, is ``active``.
    """
    today = now.date()

    if subscription.has_ended(today):
        return StatusResolution(
            status=SubscriptionStatus.ENDED,
            is_overdue=False,
            next_billing_date=None,
        )

    if (
        not subscription.is_one_time
        and next_billing_date is not None
        and next_billing_date < today
    ):
        return StatusResolution(
            status=SubscriptionStatus.OVERDUE,
            is_overdue=True,
            next_billing_date=next_billing_date,
        )

    return StatusResolution(
        status=SubscriptionStatus.ACTIVE,
        is_overdue=False,
        next_billing_date=next_billing_date,
    )


__all__ = ["StatusResolution", "SAFE_DEFAULT", "resolve_status"]
