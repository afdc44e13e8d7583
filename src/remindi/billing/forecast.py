"""
Bill views and monthly forecast.

Listing helpers over a user's subscriptions, all driven by the same
``BillingCycleCalculator`` the dispatcher uses.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

import structlog

from remindi.billing.calendar import last_day_of_month
from remindi.billing.cycles import BillingCycleCalculator, normalize_interval, resolve_cycle
from remindi.billing.models import BillingCycle, Subscription

logger = structlog.get_logger(__name__)

# Upper bound on a single period's length, per cycle unit
_MAX_PERIOD_DAYS = {
    BillingCycle.DAILY: 1,
    BillingCycle.WEEKLY: 7,
    BillingCycle.MONTHLY: 31,
    BillingCycle.QUARTERLY: 92,
    BillingCycle.YEARLY: 366,
}

MAX_FORECAST_OCCURRENCES = 400


@dataclass(frozen=True)
class BillItem:
    subscription: Subscription
    next_billing_date: date


@dataclass
class SubscriptionForecast:
    subscription: Subscription
    occurrences: list[date]

    @property
    def amount(self) -> Decimal:
        return self.subscription.price * len(self.occurrences)


@dataclass
class CurrencyForecast:
    currency: str
    total: Decimal = Decimal("0")
    items: list[SubscriptionForecast] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)


def _bills(
    subscriptions: Iterable[tuple[Subscription, int]],
    today: date,
    calculator: BillingCycleCalculator,
) -> list[BillItem]:
    items = []
    for subscription, payment_count in subscriptions:
        if subscription.has_ended(today):
            continue
        try:
            next_date = calculator.next_billing_date(subscription, payment_count)
        except Exception as e:
            logger.warning("billing.views.skipped", subscription_id=subscription.id, error=str(e))
            continue
        if next_date is not None:
            items.append(BillItem(subscription=subscription, next_billing_date=next_date))
    return sorted(items, key=lambda item: (item.next_billing_date, item.subscription.id))


def due_soon(
    subscriptions: Iterable[tuple[Subscription, int]],
    today: date,
    days: int = 7,
    calculator: BillingCycleCalculator | None = None,
) -> list[BillItem]:
    """Bills due within ``days`` days, overdue ones included."""
    cutoff = today + timedelta(days=days)
    bills = _bills(subscriptions, today, calculator or BillingCycleCalculator())
    return [b for b in bills if b.next_billing_date <= cutoff]


def overdue_bills(
    subscriptions: Iterable[tuple[Subscription, int]],
    today: date,
    calculator: BillingCycleCalculator | None = None,
) -> list[BillItem]:
    """Bills whose due date is before today. One-time charges are never overdue."""
    bills = _bills(subscriptions, today, calculator or BillingCycleCalculator())
    return [
        b for b in bills if b.next_billing_date < today and not b.subscription.is_one_time
    ]


def upcoming_bills(
    subscriptions: Iterable[tuple[Subscription, int]],
    today: date,
    days: int = 7,
    calculator: BillingCycleCalculator | None = None,
) -> list[BillItem]:
    """Bills due after today and within ``days`` days."""
    cutoff = today + timedelta(days=days)
    bills = _bills(subscriptions, today, calculator or BillingCycleCalculator())
    return [b for b in bills if today < b.next_billing_date <= cutoff]


def current_month_bills(
    subscriptions: Iterable[tuple[Subscription, int]],
    today: date,
    calculator: BillingCycleCalculator | None = None,
) -> list[BillItem]:
    """Bills whose next due date falls in today's month."""
    bills = _bills(subscriptions, today, calculator or BillingCycleCalculator())
    return [
        b
        for b in bills
        if (b.next_billing_date.year, b.next_billing_date.month) == (today.year, today.month)
    ]


def _first_candidate_period(subscription: Subscription, month_start: date) -> int:
    """A period index whose due date is safely before ``month_start``."""
    first = subscription.first_billing_date or subscription.start_date
    if first >= month_start:
        return 0
    cycle = resolve_cycle(subscription.billing_cycle)
    if cycle is BillingCycle.ONE_TIME:
        return 0
    interval = normalize_interval(subscription.billing_interval)
    longest = _MAX_PERIOD_DAYS[cycle] * interval
    return max(0, (month_start - first).days // longest - 1)


def billing_occurrences_in_month(
    subscription: Subscription,
    year: int,
    month: int,
    calculator: BillingCycleCalculator | None = None,
) -> list[date]:
    """Every due date of the subscription inside the month, paid or not.

    Occurrences before ``start_date`` or after ``end_date`` are excluded.
    """
    calculator = calculator or BillingCycleCalculator()
    month_start = date(year, month, 1)
    month_end = date(year, month, last_day_of_month(year, month))

    if subscription.start_date > month_end:
        return []
    if subscription.end_date is not None and subscription.end_date < month_start:
        return []

    window_start = max(month_start, subscription.start_date)
    window_end = month_end
    if subscription.end_date is not None:
        window_end = min(window_end, subscription.end_date)

    occurrences = []
    dates = calculator.iter_billing_dates(
        subscription,
        start_period=_first_candidate_period(subscription, month_start),
        limit=MAX_FORECAST_OCCURRENCES,
    )
    for due in dates:
        if due > window_end:
            break
        if due >= window_start:
            occurrences.append(due)
    return occurrences


def monthly_forecast(
    subscriptions: Iterable[Subscription],
    year: int,
    month: int,
    today: date | None = None,
    calculator: BillingCycleCalculator | None = None,
) -> dict[str, CurrencyForecast]:
    """
    Total of every billing occurrence in the month, grouped by currency.

    Subscriptions that ended on or before ``today`` are left out, as are
    subscriptions whose billing configuration cannot be evaluated.
    """
    calculator = calculator or BillingCycleCalculator()
    forecast: dict[str, CurrencyForecast] = {}

    for subscription in subscriptions:
        if today is not None and subscription.has_ended(today):
            continue
        try:
            occurrences = billing_occurrences_in_month(subscription, year, month, calculator)
        except Exception as e:
            logger.warning("billing.views.skipped", subscription_id=subscription.id, error=str(e))
            continue
        if not occurrences:
            continue
        item = SubscriptionForecast(subscription=subscription, occurrences=occurrences)
        bucket = forecast.setdefault(
            subscription.currency, CurrencyForecast(currency=subscription.currency)
        )
        bucket.items.append(item)
        bucket.total += item.amount

    return forecast


__all__ = [
    "BillItem",
    "SubscriptionForecast",
    "CurrencyForecast",
    "due_soon",
    "overdue_bills",
    "upcoming_bills",
    "current_month_bills",
    "billing_occurrences_in_month",
    "monthly_forecast",
]
