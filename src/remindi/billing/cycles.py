"""
Billing cycle calculator.

Derives the authoritative next charge date from a subscription's cycle
configuration and the number of billing periods already paid. The Nth due
date is always computed from ``first_billing_date`` rather than from the
previous due date, so a clamped month-end never drifts the anchor day:
anchor 31 gives Jan 31, Feb 29, Mar 31, Apr 30, May 31.
"""

from collections.abc import Iterator
from datetime import date, timedelta
from typing import Any

import structlog

from remindi.billing.calendar import add_months, clamp_day
from remindi.billing.exceptions import InvalidBillingCycleError, InvalidBillingIntervalError
from remindi.billing.models import BillingCycle, Subscription

logger = structlog.get_logger(__name__)

MIN_BILLING_INTERVAL = 1
MAX_BILLING_INTERVAL = 12

_MONTHS_PER_PERIOD = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
}


def resolve_cycle(
    billing_cycle: Any,
    *,
    strict: bool = False,
    subscription_id: str | None = None,
) -> BillingCycle:
    """Map a stored cycle value onto ``BillingCycle``.

    Unrecognized values are billed as monthly unless ``strict`` is set, in
    which case ``InvalidBillingCycleError`` is raised.
    """
    if isinstance(billing_cycle, BillingCycle):
        return billing_cycle
    try:
        return BillingCycle(str(billing_cycle).strip().lower())
    except ValueError:
        if strict:
            raise InvalidBillingCycleError(billing_cycle, subscription_id) from None
        logger.warning(
            "billing.cycle.unknown",
            billing_cycle=billing_cycle,
            subscription_id=subscription_id,
            fallback=BillingCycle.MONTHLY.value,
        )
        return BillingCycle.MONTHLY


def normalize_interval(
    billing_interval: Any,
    *,
    strict: bool = False,
    subscription_id: str | None = None,
) -> int:
    """Coerce a stored interval into the supported 1-12 range.

    With ``strict`` set, values outside the range raise
    ``InvalidBillingIntervalError`` instead of being clamped.
    """
    try:
        value = int(billing_interval)
    except (TypeError, ValueError):
        if strict:
            raise InvalidBillingIntervalError(billing_interval, subscription_id) from None
        logger.warning(
            "billing.interval.invalid",
            billing_interval=billing_interval,
            subscription_id=subscription_id,
            fallback=MIN_BILLING_INTERVAL,
        )
        return MIN_BILLING_INTERVAL

    clamped = max(MIN_BILLING_INTERVAL, min(MAX_BILLING_INTERVAL, value))
    if clamped != value:
        if strict:
            raise InvalidBillingIntervalError(value, subscription_id)
        logger.warning(
            "billing.interval.out_of_range",
            billing_interval=value,
            subscription_id=subscription_id,
            fallback=clamped,
        )
    return clamped


def compute_next_billing_date(
    first_billing_date: date,
    cycle: BillingCycle | str,
    interval: int,
    billing_cycle_day: int | None,
    elapsed_periods: int,
    *,
    strict: bool = False,
) -> date | None:
    """
    Compute the due date after ``elapsed_periods`` paid periods.

    Args:
        first_billing_date: Due date of period zero
        cycle: Recurrence unit; unknown values fall back to monthly
        interval: Cycles per period, clamped into 1-12
        billing_cycle_day: Anchor day for monthly/quarterly cycles
        elapsed_periods: Paid payment count
        strict: Raise on unknown cycles and out-of-range intervals

    Returns:
        The next due date, or None for a one-time charge that has been paid
    """
    resolved = resolve_cycle(cycle, strict=strict)
    interval = normalize_interval(interval, strict=strict)
    periods = max(0, int(elapsed_periods))

    if resolved is BillingCycle.ONE_TIME:
        return first_billing_date if periods == 0 else None

    if resolved is BillingCycle.DAILY:
        return first_billing_date + timedelta(days=interval * periods)

    if resolved is BillingCycle.WEEKLY:
        return first_billing_date + timedelta(weeks=interval * periods)

    if resolved is BillingCycle.YEARLY:
        if periods == 0:
            return first_billing_date
        # Feb 29 anchors land on Feb 28 in common years
        return clamp_day(
            first_billing_date.year + interval * periods,
            first_billing_date.month,
            first_billing_date.day,
        )

    months = interval * periods * _MONTHS_PER_PERIOD[resolved]
    if months == 0:
        return first_billing_date

    anchor_day = billing_cycle_day
    if anchor_day is None or not 1 <= anchor_day <= 31:
        anchor_day = first_billing_date.day

    year, month = add_months(first_billing_date.year, first_billing_date.month, months)
    return clamp_day(year, month, anchor_day)


class BillingCycleCalculator:
    """Subscription-level entry point to ``compute_next_billing_date``."""

    def __init__(self, strict_cycles: bool = False) -> None:
        self.strict_cycles = strict_cycles

    def billing_date(self, subscription: Subscription, elapsed_periods: int) -> date | None:
        """Due date of the period following ``elapsed_periods`` paid ones."""
        cycle = resolve_cycle(
            subscription.billing_cycle,
            strict=self.strict_cycles,
            subscription_id=subscription.id,
        )
        interval = normalize_interval(
            subscription.billing_interval,
            strict=self.strict_cycles,
            subscription_id=subscription.id,
        )
        return compute_next_billing_date(
            subscription.first_billing_date or subscription.start_date,
            cycle,
            interval,
            subscription.billing_cycle_day,
            elapsed_periods,
        )

    def next_billing_date(self, subscription: Subscription, payment_count: int) -> date | None:
        """Next due date given the subscription's paid payment count."""
        return self.billing_date(subscription, payment_count)

    def iter_billing_dates(
        self,
        subscription: Subscription,
        start_period: int = 0,
        limit: int | None = None,
    ) -> Iterator[date]:
        """Successive due dates starting at ``start_period``.

        Stops after ``limit`` dates, or when a one-time charge runs out.
        """
        period = start_period
        produced = 0
        while limit is None or produced < limit:
            due = self.billing_date(subscription, period)
            if due is None:
                return
            yield due
            produced += 1
            period += 1


__all__ = [
    "MIN_BILLING_INTERVAL",
    "MAX_BILLING_INTERVAL",
    "resolve_cycle",
    "normalize_interval",
    "compute_next_billing_date",
    "BillingCycleCalculator",
]
