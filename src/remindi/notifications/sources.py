"""
Subscription sources.

A source hands the dispatcher read-only snapshots of the records it
consumes: the subscription, the number of paid billing periods, and the
owner's notification preferences. The only write a source makes is the
daily digest last-sent stamp.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from remindi.billing.models import (
    NotificationPreferences,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    count_paid_periods,
)
from remindi.billing.tables import (
    NotificationPreferencesTable,
    PaymentRecordTable,
    SubscriptionTable,
)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription: Subscription
    payment_count: int
    preferences: NotificationPreferences


@runtime_checkable
class SubscriptionSource(Protocol):
    """Read access to subscriptions for the dispatcher and bill views."""

    async def list_candidates(
        self, today: date, user_id: str | None = None
    ) -> list[SubscriptionSnapshot]:
        """Non-ended subscriptions whose owner has notifications enabled."""
        ...

    async def get_snapshot(self, subscription_id: str) -> SubscriptionSnapshot | None: ...

    async def list_for_user(self, user_id: str) -> list[SubscriptionSnapshot]: ...

    async def list_digest_recipients(
        self, user_id: str | None = None
    ) -> list[NotificationPreferences]:
        """Users opted in to the daily digest."""
        ...

    async def record_daily_digest_sent(self, user_id: str, now: datetime) -> None: ...


def _is_candidate(snapshot: SubscriptionSnapshot, today: date, user_id: str | None) -> bool:
    subscription = snapshot.subscription
    if user_id is not None and subscription.user_id != user_id:
        return False
    if subscription.has_ended(today):
        return False
    return snapshot.preferences.notifications_enabled


class InMemorySubscriptionSource:
    """Holds snapshots in memory; used by tests and the preview command."""

    def __init__(
        self,
        subscriptions: Iterable[Subscription] = (),
        payments: Iterable[PaymentRecord] = (),
        preferences: Iterable[NotificationPreferences] = (),
    ) -> None:
        self.subscriptions: dict[str, Subscription] = {s.id: s for s in subscriptions}
        self.payments: dict[str, list[PaymentRecord]] = defaultdict(list)
        for payment in payments:
            self.payments[payment.subscription_id].append(payment)
        self.preferences: dict[str, NotificationPreferences] = {p.user_id: p for p in preferences}

    def add_payment(self, payment: PaymentRecord) -> None:
        self.payments[payment.subscription_id].append(payment)

    def _snapshot(self, subscription: Subscription) -> SubscriptionSnapshot:
        preferences = self.preferences.get(subscription.user_id) or NotificationPreferences(
            user_id=subscription.user_id
        )
        return SubscriptionSnapshot(
            subscription=subscription,
            payment_count=count_paid_periods(self.payments.get(subscription.id, [])),
            preferences=preferences,
        )

    async def list_candidates(
        self, today: date, user_id: str | None = None
    ) -> list[SubscriptionSnapshot]:
        snapshots = (self._snapshot(s) for s in self.subscriptions.values())
        return [s for s in snapshots if _is_candidate(s, today, user_id)]

    async def get_snapshot(self, subscription_id: str) -> SubscriptionSnapshot | None:
        subscription = self.subscriptions.get(subscription_id)
        return self._snapshot(subscription) if subscription else None

    async def list_for_user(self, user_id: str) -> list[SubscriptionSnapshot]:
        return [
            self._snapshot(s) for s in self.subscriptions.values() if s.user_id == user_id
        ]

    async def list_digest_recipients(
        self, user_id: str | None = None
    ) -> list[NotificationPreferences]:
        return [
            p
            for p in self.preferences.values()
            if p.daily_notification_enabled and (user_id is None or p.user_id == user_id)
        ]

    async def record_daily_digest_sent(self, user_id: str, now: datetime) -> None:
        preferences = self.preferences.get(user_id)
        if preferences is not None:
            self.preferences[user_id] = preferences.model_copy(
                update={"last_daily_notification_sent_at": now}
            )


class SqlSubscriptionSource:
    """Reads the surrounding application's tables."""

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        if session_factory is None:
            from remindi.db import get_async_session_maker

            session_factory = get_async_session_maker()
        self._session_factory = session_factory

    @staticmethod
    def _paid_counts():
        return (
            select(
                PaymentRecordTable.subscription_id.label("subscription_id"),
                func.count(PaymentRecordTable.id).label("paid"),
            )
            .where(PaymentRecordTable.status == PaymentStatus.PAID.value)
            .group_by(PaymentRecordTable.subscription_id)
            .subquery()
        )

    async def _fetch(self, *criteria) -> list[SubscriptionSnapshot]:
        paid = self._paid_counts()
        stmt = (
            select(SubscriptionTable, NotificationPreferencesTable, paid.c.paid)
            .outerjoin(
                NotificationPreferencesTable,
                NotificationPreferencesTable.user_id == SubscriptionTable.user_id,
            )
            .outerjoin(paid, paid.c.subscription_id == SubscriptionTable.id)
            .where(*criteria)
            .order_by(SubscriptionTable.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        snapshots = []
        for sub_row, prefs_row, paid_count in rows:
            preferences = (
                NotificationPreferences.model_validate(prefs_row)
                if prefs_row is not None
                else NotificationPreferences(user_id=sub_row.user_id)
            )
            snapshots.append(
                SubscriptionSnapshot(
                    subscription=Subscription.model_validate(sub_row),
                    payment_count=paid_count or 0,
                    preferences=preferences,
                )
            )
        return snapshots

    async def list_candidates(
        self, today: date, user_id: str | None = None
    ) -> list[SubscriptionSnapshot]:
        criteria = [
            or_(SubscriptionTable.end_date.is_(None), SubscriptionTable.end_date > today),
            or_(
                NotificationPreferencesTable.user_id.is_(None),
                NotificationPreferencesTable.notifications_enabled.is_(True),
            ),
        ]
        if user_id is not None:
            criteria.append(SubscriptionTable.user_id == user_id)
        return await self._fetch(*criteria)

    async def get_snapshot(self, subscription_id: str) -> SubscriptionSnapshot | None:
        snapshots = await self._fetch(SubscriptionTable.id == subscription_id)
        return snapshots[0] if snapshots else None

    async def list_for_user(self, user_id: str) -> list[SubscriptionSnapshot]:
        return await self._fetch(SubscriptionTable.user_id == user_id)

    async def list_digest_recipients(
        self, user_id: str | None = None
    ) -> list[NotificationPreferences]:
        stmt = select(NotificationPreferencesTable).where(
            NotificationPreferencesTable.daily_notification_enabled.is_(True)
        )
        if user_id is not None:
            stmt = stmt.where(NotificationPreferencesTable.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(NotificationPreferencesTable.user_id))
            return [NotificationPreferences.model_validate(row) for row in result.scalars()]

    async def record_daily_digest_sent(self, user_id: str, now: datetime) -> None:
        stmt = (
            update(NotificationPreferencesTable)
            .where(NotificationPreferencesTable.user_id == user_id)
            .values(last_daily_notification_sent_at=now)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()


__all__ = [
    "SubscriptionSnapshot",
    "SubscriptionSource",
    "InMemorySubscriptionSource",
    "SqlSubscriptionSource",
]
