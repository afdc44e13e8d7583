"""
Reminder dispatcher.

Each run walks ``Scan -> Plan -> Filter -> Send -> Record``:

- Scan: non-ended subscriptions whose owner has notifications enabled
- Plan: next due date, status and candidate reminder events
- Filter: dispatch tolerance window, late catch-up policy, dedup window,
  and keys already handed to the recovery pass
- Send: parallel sends through the caller's ``NotificationSender``
- Record: ``sent`` on success, ``pending_retry`` on failure

Runs never overlap: the dispatcher, the recovery pass and the daily digest
pass each hold a Redis lease for their job name and skip when another
holder has it.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta
from typing import TypeAlias

import structlog

from remindi.billing.exceptions import ClockError, DeliveryStateError, NotificationSendError
from remindi.billing.models import NotificationPreferences
from remindi.locks import DistributedLock
from remindi.logging import log_audit_event
from remindi.notifications.config import ReminderConfig, get_reminder_config
from remindi.notifications.dedup import NotificationDeduplicator
from remindi.notifications.digest import build_digest_payload, digest_due
from remindi.notifications.models import (
    DeliveryState,
    DeliveryStatus,
    DigestResult,
    DispatchResult,
    EffectiveNotificationSettings,
    NotificationChannel,
    RecoveryResult,
    ReminderEvent,
)
from remindi.notifications.planner import ReminderPlanner
from remindi.notifications.sender import NotificationSender, build_payload
from remindi.notifications.sources import SubscriptionSnapshot, SubscriptionSource
from remindi.notifications.store import DeliveryStateStore

logger = structlog.get_logger(__name__)

Clock: TypeAlias = Callable[[], datetime]
LeaseFactory: TypeAlias = Callable[[str, int], DistributedLock]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ReminderDispatcher:
    """Batch entry point for reminder delivery."""

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
        self.source = source
        self.store = store
        self.sender = sender
        self.config = config or get_reminder_config()
        self.clock = clock
        self.lease_factory = lease_factory
        self.planner = ReminderPlanner(self.config)
        self.deduplicator = NotificationDeduplicator(store, self.config.dedup_window_hours)

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def read_clock(self, now: datetime | None = None) -> datetime:
        """Current instant, validated. Any failure aborts the run."""
        try:
            value = now if now is not None else self.clock()
        except Exception as e:
            raise ClockError("Time source failed", context={"error": str(e)}) from e

        if not isinstance(value, datetime):
            raise ClockError("Time source returned a non-datetime", context={"value": repr(value)})
        if value.tzinfo is None:
            raise ClockError("Time source returned a naive datetime", context={"value": str(value)})
        return value.astimezone(UTC)

    @asynccontextmanager
    async def _lease(self, name: str) -> AsyncIterator[bool]:
        if self.lease_factory is None:
            yield True
            return

        lease = self.lease_factory(name, self.config.dispatch_lock_ttl_seconds)
        acquired = await lease.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                await lease.release()

    async def _deliver(
        self,
        event: ReminderEvent,
        snapshot: SubscriptionSnapshot,
        settings: EffectiveNotificationSettings,
    ) -> tuple[bool, str | None]:
        """Invoke the sender; exceptions count as failures."""
        payload = build_payload(event, snapshot.subscription, settings.email_address)
        try:
            ok = await self.sender.send(
                event.user_id,
                event.subscription_id,
                NotificationChannel.EMAIL,
                payload.to_dict(),
            )
        except NotificationSendError as e:
            logger.warning(
                "reminders.send.rejected",
                subscription_id=event.subscription_id,
                interval_days=event.interval_days,
                due_date=event.due_date.isoformat(),
                **e.to_dict(),
            )
            return False, e.message
        except Exception as e:
            logger.warning(
                "reminders.send.error",
                subscription_id=event.subscription_id,
                interval_days=event.interval_days,
                due_date=event.due_date.isoformat(),
                error=str(e),
            )
            return False, str(e)
        return bool(ok), None if ok else "sender reported failure"

    async def _record_success(self, event: ReminderEvent, now: datetime) -> None:
        await self.deduplicator.record_sent(
            event.subscription_id,
            event.interval_days,
            event.due_date,
            now,
            user_id=event.user_id,
        )
        log_audit_event(
            "reminder.sent",
            "notifications",
            user_id=event.user_id,
            resource_type="subscription",
            resource_id=event.subscription_id,
            interval_days=event.interval_days,
            due_date=event.due_date.isoformat(),
        )

    async def _record_failure(
        self, event: ReminderEvent, now: datetime, error: str
    ) -> DeliveryState:
        state = await self.store.record_failure(
            event.key,
            now,
            error,
            user_id=event.user_id,
            max_attempts=self.config.max_retry_attempts,
        )
        if state.status == DeliveryStatus.FAILED:
            log_audit_event(
                "reminder.failed",
                "notifications",
                user_id=event.user_id,
                resource_type="subscription",
                resource_id=event.subscription_id,
                interval_days=event.interval_days,
                due_date=event.due_date.isoformat(),
                attempts=state.attempts,
                error=error,
            )
        return state

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_due_reminders(
        self,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
        user_id: str | None = None,
    ) -> DispatchResult:
        """
        Send every reminder due at ``now``.

        Args:
            now: Instant to evaluate; the configured clock is read when omitted
            dry_run: Plan and filter only, returning would-be sends in ``planned``
            user_id: Limit the run to one user's subscriptions

        Returns:
            Counters for the run; ``skipped`` when another run holds the lease

        Raises:
            ClockError: The time source failed; nothing was written
        """
        now = self.read_clock(now)

        async with self._lease(self.config.dispatch_lock_name) as acquired:
            if not acquired:
                logger.info("reminders.dispatch.skipped", reason="lease_held")
                return DispatchResult(skipped=True, dry_run=dry_run)

            result = await self._dispatch(now, dry_run=dry_run, user_id=user_id)

        logger.info("reminders.dispatch.completed", now=now.isoformat(), **result.to_dict())
        return result

    async def _dispatch(
        self, now: datetime, *, dry_run: bool, user_id: str | None
    ) -> DispatchResult:
        result = DispatchResult(dry_run=dry_run)
        today = now.date()
        tolerance = timedelta(minutes=self.config.dispatch_tolerance_minutes)

        snapshots = await self.source.list_candidates(today, user_id)
        queued: list[tuple[ReminderEvent, SubscriptionSnapshot, EffectiveNotificationSettings]] = []

        for snapshot in snapshots:
            subscription = snapshot.subscription
            try:
                outcome = self.planner.plan(
                    subscription, snapshot.payment_count, snapshot.preferences, now
                )
            except Exception as e:
                result.error_count += 1
                logger.error(
                    "reminders.plan.failed",
                    subscription_id=subscription.id,
                    error=str(e),
                    exc_info=True,
                )
                continue

            on_time: list[ReminderEvent] = []
            past: list[ReminderEvent] = []
            for event in outcome.events:
                if event.scheduled_at > now:
                    result.deferred_count += 1
                elif now - event.scheduled_at < tolerance:
                    on_time.append(event)
                else:
                    past.append(event)

            late = await self._late_catch_up(on_time, past, today)

            for event in on_time + late:
                if await self._admit(event, now):
                    queued.append((event, snapshot, outcome.settings))
                else:
                    result.suppressed_count += 1

        if dry_run:
            result.planned = [event for event, _, _ in queued]
            return result

        semaphore = asyncio.Semaphore(self.config.max_concurrent_sends)

        async def send_one(
            event: ReminderEvent,
            snapshot: SubscriptionSnapshot,
            settings: EffectiveNotificationSettings,
        ) -> bool:
            async with semaphore:
                ok, error = await self._deliver(event, snapshot, settings)
            try:
                if ok:
                    await self._record_success(event, now)
                else:
                    await self._record_failure(event, now, error or "unknown error")
            except DeliveryStateError as e:
                logger.error(
                    "reminders.record.failed",
                    subscription_id=event.subscription_id,
                    interval_days=event.interval_days,
                    error=str(e),
                )
            return ok

        outcomes = await asyncio.gather(*(send_one(*item) for item in queued))
        result.sent_count = sum(1 for ok in outcomes if ok)
        result.failed_count = len(outcomes) - result.sent_count
        return result

    async def _late_catch_up(
        self,
        on_time: list[ReminderEvent],
        past: list[ReminderEvent],
        today: date,
    ) -> list[ReminderEvent]:
        """At most one missed reminder per due date, sent once and only before the bill."""
        # An on-time reminder supersedes every older missed one
        if not self.config.send_late_reminders or not past or on_time:
            return []

        latest = max(past, key=lambda event: event.scheduled_at)
        if latest.due_date <= today:
            return []
        if await self.store.get(latest.key) is not None:
            return []

        logger.info(
            "reminders.dispatch.late_catch_up",
            subscription_id=latest.subscription_id,
            interval_days=latest.interval_days,
            due_date=latest.due_date.isoformat(),
            scheduled_at=latest.scheduled_at.isoformat(),
        )
        return [latest]

    async def _admit(self, event: ReminderEvent, now: datetime) -> bool:
        """Dedup filter; keys in retry or failed state belong to the recovery pass."""
        state = await self.store.get(event.key)
        if state is not None and state.status in (
            DeliveryStatus.PENDING_RETRY,
            DeliveryStatus.FAILED,
        ):
            return False
        return await self.deduplicator.should_send(
            event.subscription_id, event.interval_days, event.due_date, now
        )

    # ------------------------------------------------------------------
    # Recovery pass
    # ------------------------------------------------------------------

    async def process_failed(self, now: datetime | None = None) -> RecoveryResult:
        """
        Retry reminders left in ``pending_retry``.

        A record is retried once its backoff has elapsed, provided the
        subscription is still active, still due on the same date, and its
        notifications are still on. Anything else is abandoned as ``failed``.
        """
        now = self.read_clock(now)

        async with self._lease(self.config.recovery_lock_name) as acquired:
            if not acquired:
                logger.info("reminders.process_failed.skipped", reason="lease_held")
                return RecoveryResult(skipped=True)

            result = RecoveryResult()
            for state in await self.store.list_retryable():
                await self._retry(state, now, result)

        logger.info("reminders.process_failed.completed", now=now.isoformat(), **result.to_dict())
        return result

    async def _abandon(
        self, state: DeliveryState, now: datetime, reason: str, result: RecoveryResult
    ) -> None:
        await self.store.mark_failed(state.key, now, reason)
        result.abandoned_count += 1
        logger.info(
            "reminders.retry.abandoned",
            subscription_id=state.subscription_id,
            interval_days=state.interval_days,
            due_date=state.due_date.isoformat(),
            reason=reason,
        )

    async def _retry(self, state: DeliveryState, now: datetime, result: RecoveryResult) -> None:
        backoff = timedelta(minutes=self.config.retry_backoff_minutes)
        if state.last_attempt_at is not None and now < state.last_attempt_at + backoff:
            return

        if state.due_date < now.date():
            await self._abandon(state, now, "due_date_passed", result)
            return
        if state.attempts >= self.config.max_retry_attempts:
            await self._abandon(state, now, "retry_limit_reached", result)
            return

        snapshot = await self.source.get_snapshot(state.subscription_id)
        if snapshot is None:
            await self._abandon(state, now, "subscription_missing", result)
            return

        try:
            outcome = self.planner.plan(
                snapshot.subscription, snapshot.payment_count, snapshot.preferences, now
            )
        except Exception as e:
            logger.error(
                "reminders.retry.plan_failed",
                subscription_id=state.subscription_id,
                error=str(e),
            )
            await self._abandon(state, now, "billing_configuration_error", result)
            return

        if outcome.resolution.is_ended:
            await self._abandon(state, now, "subscription_ended", result)
            return
        if outcome.resolution.next_billing_date != state.due_date:
            await self._abandon(state, now, "due_date_changed", result)
            return
        if not outcome.settings.active or not snapshot.preferences.notifications_enabled:
            await self._abandon(state, now, "notifications_disabled", result)
            return

        event = ReminderEvent(
            subscription_id=state.subscription_id,
            user_id=snapshot.subscription.user_id,
            interval_days=state.interval_days,
            due_date=state.due_date,
            scheduled_at=now,
        )
        result.retried_count += 1
        ok, error = await self._deliver(event, snapshot, outcome.settings)
        if ok:
            await self._record_success(event, now)
            result.recovered_count += 1
            return

        updated = await self._record_failure(event, now, error or "unknown error")
        if updated.status == DeliveryStatus.FAILED:
            result.failed_count += 1

    # ------------------------------------------------------------------
    # Daily digest
    # ------------------------------------------------------------------

    async def send_daily_digests(
        self,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
        user_id: str | None = None,
    ) -> DigestResult:
        """
        Send the daily status digest to every opted-in user due at ``now``.

        A digest that fails is not stamped as sent, so the next run inside
        the user's send window tries again.

        Raises:
            ClockError: The time source failed; nothing was written
        """
        now = self.read_clock(now)

        async with self._lease(self.config.daily_digest_lock_name) as acquired:
            if not acquired:
                logger.info("reminders.digest.skipped", reason="lease_held")
                return DigestResult(skipped=True, dry_run=dry_run)

            result = DigestResult(dry_run=dry_run)
            for preferences in await self.source.list_digest_recipients(user_id):
                if digest_due(preferences, now, self.config):
                    await self._send_digest(preferences, now, result)

        logger.info("reminders.digest.completed", now=now.isoformat(), **result.to_dict())
        return result

    async def _send_digest(
        self, preferences: NotificationPreferences, now: datetime, result: DigestResult
    ) -> None:
        if not preferences.effective_email:
            result.missing_address_count += 1
            logger.warning("reminders.digest.no_address", user_id=preferences.user_id)
            return

        try:
            snapshots = await self.source.list_for_user(preferences.user_id)
            payload = build_digest_payload(
                preferences,
                [(s.subscription, s.payment_count) for s in snapshots],
                now.date(),
                self.planner.calculator,
                self.config.daily_digest_lookahead_days,
            )
        except Exception as e:
            result.error_count += 1
            logger.error(
                "reminders.digest.build_failed",
                user_id=preferences.user_id,
                error=str(e),
                exc_info=True,
            )
            return

        if result.dry_run:
            result.planned.append(preferences.user_id)
            return

        try:
            ok = await self.sender.send(
                preferences.user_id, None, NotificationChannel.EMAIL, payload.to_dict()
            )
        except Exception as e:
            logger.warning("reminders.digest.send_error", user_id=preferences.user_id, error=str(e))
            ok = False

        if not ok:
            result.failed_count += 1
            return

        await self.source.record_daily_digest_sent(preferences.user_id, now)
        result.sent_count += 1
        log_audit_event(
            "daily_digest.sent",
            "notifications",
            user_id=preferences.user_id,
            active_subscriptions=payload.active_subscriptions,
            upcoming_reminders=len(payload.upcoming),
            tracking_id=payload.tracking_id,
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune(self, now: datetime | None = None) -> int:
        """Delete delivery-state records older than the retention period."""
        now = self.read_clock(now)
        cutoff = now - timedelta(days=self.config.delivery_retention_days)
        deleted = await self.store.prune(cutoff)
        logger.info("reminders.prune.completed", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted


__all__ = ["ReminderDispatcher", "utc_now"]
