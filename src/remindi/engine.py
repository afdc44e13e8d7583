"""
Reminder engine facade.

The single object the surrounding application, the CLI and the Celery
tasks talk to. Read-side helpers (status, effective notification settings,
bill views) never raise; the batch entry points delegate to
``ReminderDispatcher``.
"""

from datetime import date, datetime

import structlog

from remindi.billing.cycles import BillingCycleCalculator
from remindi.billing.forecast import (
    BillItem,
    CurrencyForecast,
    current_month_bills,
    due_soon,
    monthly_forecast,
    overdue_bills,
    upcoming_bills,
)
from remindi.billing.models import NotificationPreferences, Subscription
from remindi.billing.status import SAFE_DEFAULT, StatusResolution, resolve_status
from remindi.locks import DistributedLock
from remindi.notifications.config import ReminderConfig, get_reminder_config
from remindi.notifications.dispatcher import Clock, LeaseFactory, ReminderDispatcher, utc_now
from remindi.notifications.models import (
    DigestResult,
    DispatchResult,
    EffectiveNotificationSettings,
    RecoveryResult,
)
from remindi.notifications.planner import effective_notification_settings
from remindi.notifications.sender import NotificationSender, load_sender
from remindi.notifications.sources import SqlSubscriptionSource, SubscriptionSource
from remindi.notifications.store import DeliveryStateStore, SqlDeliveryStateStore

logger = structlog.get_logger(__name__)


class ReminderEngine:
    """Billing-date, status and reminder operations behind one object."""

    def __init__(
        self,
        source: SubscriptionSource,
        store: DeliveryStateStore,
        sender: NotificationSender,
        config: ReminderConfig | None = None,
        *,
        clock: Clock = utc_now,
        lease_factory: LeaseFactory | None = DistributedLock,
    ) -> None:
        self.config = config or get_reminder_config()
        self.source = source
        self.store = store
        self.sender = sender
        self.clock = clock
        self.calculator = BillingCycleCalculator(strict_cycles=self.config.strict_billing_cycles)
        self.dispatcher = ReminderDispatcher(
            source,
            store,
            sender,
            self.config,
            clock=clock,
            lease_factory=lease_factory,
        )

    @classmethod
    def from_settings(cls, sender: NotificationSender | None = None) -> "ReminderEngine":
        """Engine over the configured database, Redis lease and sender."""
        from remindi.settings import settings

        return cls(
            source=SqlSubscriptionSource(),
            store=SqlDeliveryStateStore(),
            sender=sender or load_sender(settings.reminders.sender),
            config=get_reminder_config(),
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_effective_status(
        self,
        subscription: Subscription,
        payment_count: int,
        now: datetime | None = None,
    ) -> StatusResolution:
        """
        Status, overdue flag and next billing date for display.

        Never raises: any failure degrades to active, not overdue, with no
        next billing date.
        """
        try:
            now = now or self.clock()
            next_date = self.calculator.next_billing_date(subscription, payment_count)
            return resolve_status(subscription, next_date, now)
        except Exception as e:
            logger.warning(
                "billing.status.degraded",
                subscription_id=getattr(subscription, "id", None),
                error=str(e),
            )
            return SAFE_DEFAULT

    def get_effective_notification_settings(
        self,
        subscription: Subscription,
        preferences: NotificationPreferences,
    ) -> EffectiveNotificationSettings:
        """Resolved notification configuration; disabled if it cannot be resolved."""
        try:
            return effective_notification_settings(
                subscription, preferences, self.config.default_reminder_intervals
            )
        except Exception as e:
            logger.warning(
                "reminders.settings.degraded",
                subscription_id=getattr(subscription, "id", None),
                error=str(e),
            )
            return EffectiveNotificationSettings(notifications_enabled=False, email_enabled=False)

    async def _user_subscriptions(self, user_id: str) -> list[tuple[Subscription, int]]:
        snapshots = await self.source.list_for_user(user_id)
        return [(s.subscription, s.payment_count) for s in snapshots]

    def _today(self, today: date | None) -> date:
        return today or self.clock().date()

    async def due_soon(
        self, user_id: str, days: int = 7, today: date | None = None
    ) -> list[BillItem]:
        return due_soon(
            await self._user_subscriptions(user_id), self._today(today), days, self.calculator
        )

    async def overdue_bills(self, user_id: str, today: date | None = None) -> list[BillItem]:
        return overdue_bills(
            await self._user_subscriptions(user_id), self._today(today), self.calculator
        )

    async def upcoming_bills(
        self, user_id: str, days: int = 7, today: date | None = None
    ) -> list[BillItem]:
        return upcoming_bills(
            await self._user_subscriptions(user_id), self._today(today), days, self.calculator
        )

    async def current_month_bills(
        self, user_id: str, today: date | None = None
    ) -> list[BillItem]:
        return current_month_bills(
            await self._user_subscriptions(user_id), self._today(today), self.calculator
        )

    async def monthly_forecast(
        self, user_id: str, today: date | None = None
    ) -> dict[str, CurrencyForecast]:
        """Forecast for the month containing ``today``."""
        today = self._today(today)
        subscriptions = [s for s, _ in await self._user_subscriptions(user_id)]
        return monthly_forecast(subscriptions, today.year, today.month, today, self.calculator)

    # ------------------------------------------------------------------
    # Batch side
    # ------------------------------------------------------------------

    async def dispatch_due_reminders(
        self,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
        user_id: str | None = None,
    ) -> DispatchResult:
        return await self.dispatcher.dispatch_due_reminders(now, dry_run=dry_run, user_id=user_id)

    async def process_failed(self, now: datetime | None = None) -> RecoveryResult:
        return await self.dispatcher.process_failed(now)

    async def prune_deliveries(self, now: datetime | None = None) -> int:
        return await self.dispatcher.prune(now)

    async def send_daily_digests(
        self,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
        user_id: str | None = None,
    ) -> DigestResult:
        return await self.dispatcher.send_daily_digests(now, dry_run=dry_run, user_id=user_id)


__all__ = ["ReminderEngine"]
