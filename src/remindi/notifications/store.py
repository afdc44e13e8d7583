"""
Delivery-state stores.

The store is the only mutable state the engine shares between runs. Every
write is an upsert on ``(subscription_id, interval_days, due_date)`` so a
crashed or repeated run converges on the same rows.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from remindi.billing.exceptions import DeliveryStateError
from remindi.notifications.models import DeliveryState, DeliveryStatus, ReminderKey
from remindi.notifications.tables import ReminderDeliveryTable

logger = structlog.get_logger(__name__)


@runtime_checkable
class DeliveryStateStore(Protocol):
    """Persistence contract for reminder delivery bookkeeping."""

    async def get(self, key: ReminderKey) -> DeliveryState | None: ...

    async def record_sent(
        self, key: ReminderKey, now: datetime, *, user_id: str | None = None
    ) -> DeliveryState: ...

    async def record_failure(
        self,
        key: ReminderKey,
        now: datetime,
        error: str,
        *,
        user_id: str | None = None,
        max_attempts: int | None = None,
    ) -> DeliveryState: ...

    async def mark_failed(self, key: ReminderKey, now: datetime, reason: str) -> DeliveryState: ...

    async def list_retryable(self) -> list[DeliveryState]: ...

    async def prune(self, cutoff: datetime) -> int: ...


def _failure_status(attempts: int, max_attempts: int | None) -> DeliveryStatus:
    if max_attempts is not None and attempts >= max_attempts:
        return DeliveryStatus.FAILED
    return DeliveryStatus.PENDING_RETRY


class InMemoryDeliveryStateStore:
    """Dictionary-backed store for tests, previews and dry runs."""

    def __init__(self) -> None:
        self._states: dict[ReminderKey, DeliveryState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def all(self) -> list[DeliveryState]:
        return sorted(self._states.values(), key=lambda state: state.key)

    async def get(self, key: ReminderKey) -> DeliveryState | None:
        return self._states.get(key)

    async def record_sent(
        self, key: ReminderKey, now: datetime, *, user_id: str | None = None
    ) -> DeliveryState:
        current = self._states.get(key)
        state = DeliveryState(
            subscription_id=key.subscription_id,
            interval_days=key.interval_days,
            due_date=key.due_date,
            user_id=user_id or (current.user_id if current else None),
            status=DeliveryStatus.SENT,
            attempts=(current.attempts if current else 0) + 1,
            last_attempt_at=now,
            sent_at=now,
            last_error=None,
        )
        self._states[key] = state
        return state

    async def record_failure(
        self,
        key: ReminderKey,
        now: datetime,
        error: str,
        *,
        user_id: str | None = None,
        max_attempts: int | None = None,
    ) -> DeliveryState:
        current = self._states.get(key)
        attempts = (current.attempts if current else 0) + 1
        state = DeliveryState(
            subscription_id=key.subscription_id,
            interval_days=key.interval_days,
            due_date=key.due_date,
            user_id=user_id or (current.user_id if current else None),
            status=_failure_status(attempts, max_attempts),
            attempts=attempts,
            last_attempt_at=now,
            sent_at=current.sent_at if current else None,
            last_error=error,
        )
        self._states[key] = state
        return state

    async def mark_failed(self, key: ReminderKey, now: datetime, reason: str) -> DeliveryState:
        current = self._states.get(key)
        if current is None:
            raise DeliveryStateError(
                "No delivery record to mark failed",
                context={"subscription_id": key.subscription_id, "due_date": str(key.due_date)},
            )
        state = current.model_copy(
            update={"status": DeliveryStatus.FAILED, "last_attempt_at": now, "last_error": reason}
        )
        self._states[key] = state
        return state

    async def list_retryable(self) -> list[DeliveryState]:
        return [
            state
            for state in self.all()
            if state.status == DeliveryStatus.PENDING_RETRY
        ]

    async def prune(self, cutoff: datetime) -> int:
        stale = [
            key
            for key, state in self._states.items()
            if state.last_attempt_at is not None and state.last_attempt_at < cutoff
        ]
        for key in stale:
            del self._states[key]
        return len(stale)


class SqlDeliveryStateStore:
    """``reminder_deliveries`` backed store.

    Each operation opens its own short session, so concurrent sends never
    share one.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        if session_factory is None:
            from remindi.db import get_async_session_maker

            session_factory = get_async_session_maker()
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DeliveryStateError(
                    "Delivery-state store operation failed",
                    context={"error": str(e)},
                ) from e
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    async def _load(session: AsyncSession, key: ReminderKey) -> ReminderDeliveryTable | None:
        result = await session.execute(
            select(ReminderDeliveryTable).where(
                ReminderDeliveryTable.subscription_id == key.subscription_id,
                ReminderDeliveryTable.interval_days == key.interval_days,
                ReminderDeliveryTable.due_date == key.due_date,
            )
        )
        return result.scalar_one_or_none()

    async def _upsert(
        self,
        key: ReminderKey,
        apply: Callable[[ReminderDeliveryTable], None],
    ) -> DeliveryState:
        try:
            async with self._session() as session:
                row = await self._load(session, key)
                if row is None:
                    row = ReminderDeliveryTable(
                        subscription_id=key.subscription_id,
                        interval_days=key.interval_days,
                        due_date=key.due_date,
                        status=DeliveryStatus.PENDING_RETRY.value,
                        attempts=0,
                    )
                    session.add(row)
                apply(row)
                await session.flush()
                return DeliveryState.model_validate(row)
        except DeliveryStateError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise

        # Another writer inserted the same key first; update its row instead
        logger.debug(
            "reminders.store.upsert_conflict",
            subscription_id=key.subscription_id,
            interval_days=key.interval_days,
            due_date=key.due_date.isoformat(),
        )
        async with self._session() as session:
            row = await self._load(session, key)
            if row is None:
                raise DeliveryStateError(
                    "Delivery record vanished during upsert",
                    context={"subscription_id": key.subscription_id},
                )
            apply(row)
            await session.flush()
            return DeliveryState.model_validate(row)

    async def get(self, key: ReminderKey) -> DeliveryState | None:
        async with self._session() as session:
            row = await self._load(session, key)
            return DeliveryState.model_validate(row) if row is not None else None

    async def record_sent(
        self, key: ReminderKey, now: datetime, *, user_id: str | None = None
    ) -> DeliveryState:
        def apply(row: ReminderDeliveryTable) -> None:
            row.status = DeliveryStatus.SENT.value
            row.attempts = (row.attempts or 0) + 1
            row.last_attempt_at = now
            row.sent_at = now
            row.last_error = None
            if user_id:
                row.user_id = user_id

        return await self._upsert(key, apply)

    async def record_failure(
        self,
        key: ReminderKey,
        now: datetime,
        error: str,
        *,
        user_id: str | None = None,
        max_attempts: int | None = None,
    ) -> DeliveryState:
        def apply(row: ReminderDeliveryTable) -> None:
            row.attempts = (row.attempts or 0) + 1
            row.status = _failure_status(row.attempts, max_attempts).value
            row.last_attempt_at = now
            row.last_error = error
            if user_id:
                row.user_id = user_id

        return await self._upsert(key, apply)

    async def mark_failed(self, key: ReminderKey, now: datetime, reason: str) -> DeliveryState:
        async with self._session() as session:
            row = await self._load(session, key)
            if row is None:
                raise DeliveryStateError(
                    "No delivery record to mark failed",
                    context={"subscription_id": key.subscription_id, "due_date": str(key.due_date)},
                )
            row.status = DeliveryStatus.FAILED.value
            row.last_attempt_at = now
            row.last_error = reason
            await session.flush()
            return DeliveryState.model_validate(row)

    async def list_retryable(self) -> list[DeliveryState]:
        async with self._session() as session:
            result = await session.execute(
                select(ReminderDeliveryTable)
                .where(ReminderDeliveryTable.status == DeliveryStatus.PENDING_RETRY.value)
                .order_by(
                    ReminderDeliveryTable.subscription_id,
                    ReminderDeliveryTable.interval_days,
                    ReminderDeliveryTable.due_date,
                )
            )
            return [DeliveryState.model_validate(row) for row in result.scalars()]

    async def prune(self, cutoff: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(ReminderDeliveryTable).where(
                    ReminderDeliveryTable.last_attempt_at < cutoff
                )
            )
            return result.rowcount or 0


__all__ = [
    "DeliveryStateStore",
    "InMemoryDeliveryStateStore",
    "SqlDeliveryStateStore",
]
