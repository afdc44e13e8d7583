"""Tests for the reminder dispatcher and the failed-notification recovery pass."""

import asyncio
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from freezegun import freeze_time

from remindi.billing.exceptions import ClockError, NotificationSendError
from remindi.locks import LOCK_PREFIX, DistributedLock
from remindi.notifications.config import ReminderConfig
from remindi.notifications.dispatcher import ReminderDispatcher
from remindi.notifications.models import DeliveryStatus, NotificationChannel, ReminderKey
from remindi.notifications.sources import InMemorySubscriptionSource
from remindi.notifications.store import InMemoryDeliveryStateStore

pytestmark = pytest.mark.unit

DUE = date(2024, 3, 31)
# D-7 reminder for DUE, one minute after its 09:00 send time
AT_D7 = datetime(2024, 3, 24, 9, 1, tzinfo=UTC)
KEY_D7 = ReminderKey("sub-1", 7, DUE)


@pytest.fixture
def source(make_subscription, make_payment, preferences):
    return InMemorySubscriptionSource(
        subscriptions=[make_subscription()],
        payments=[make_payment(), make_payment(payment_date=date(2024, 2, 29))],
        preferences=[preferences],
    )


@pytest.fixture
def store():
    return InMemoryDeliveryStateStore()


@pytest.fixture
def make_dispatcher(source, store, sender, config, make_sender):
    def _make(outcomes=None, **kwargs):
        if outcomes is not None:
            kwargs["sender"] = make_sender(outcomes)
        kwargs.setdefault("lease_factory", None)
        return ReminderDispatcher(
            kwargs.pop("source", source),
            kwargs.pop("store", store),
            kwargs.pop("sender", sender),
            kwargs.pop("config", config),
            **kwargs,
        )

    return _make


class TestDispatch:
    """Main dispatch run."""

    async def test_sends_on_time_reminder(self, make_dispatcher, sender, store):
        result = await make_dispatcher().dispatch_due_reminders(AT_D7)

        assert result.sent_count == 1
        assert result.deferred_count == 2
        assert result.failed_count == 0
        assert len(sender.calls) == 1

        call = sender.calls[0]
        assert call["user_id"] == "user-1"
        assert call["subscription_id"] == "sub-1"
        assert call["channel"] is NotificationChannel.EMAIL
        assert call["payload"]["due_date"] == "2024-03-31"
        assert call["payload"]["days_before"] == 7
        assert call["payload"]["email_address"] == "owner@example.com"

        state = await store.get(KEY_D7)
        assert state.status == DeliveryStatus.SENT
        assert state.sent_at == AT_D7

    async def test_repeated_run_inside_window_sends_once(self, make_dispatcher, sender):
        dispatcher = make_dispatcher()

        first = await dispatcher.dispatch_due_reminders(AT_D7)
        second = await dispatcher.dispatch_due_reminders(AT_D7 + timedelta(minutes=1))

        assert first.sent_count == 1
        assert second.sent_count == 0
        assert second.suppressed_count == 1
        assert len(sender.calls) == 1

    async def test_filter_consults_deduplicator(self, make_dispatcher, sender):
        dispatcher = make_dispatcher()

        with patch.object(
            dispatcher.deduplicator, "should_send", AsyncMock(return_value=False)
        ) as mock_should_send:
            result = await dispatcher.dispatch_due_reminders(AT_D7)

        mock_should_send.assert_awaited_once_with("sub-1", 7, DUE, AT_D7)
        assert result.suppressed_count == 1
        assert sender.calls == []

    async def test_zero_dedup_window_resends(self, make_dispatcher, sender):
        dispatcher = make_dispatcher(config=ReminderConfig(dedup_window_hours=0))

        await dispatcher.dispatch_due_reminders(AT_D7)
        await dispatcher.dispatch_due_reminders(AT_D7 + timedelta(minutes=1))

        assert len(sender.calls) == 2

    async def test_outside_tolerance_is_not_on_time(self, make_dispatcher, sender):
        dispatcher = make_dispatcher(config=ReminderConfig(send_late_reminders=False))
        result = await dispatcher.dispatch_due_reminders(AT_D7 + timedelta(minutes=3))

        assert result.sent_count == 0
        assert sender.calls == []

    async def test_before_send_time_everything_deferred(self, make_dispatcher, sender):
        result = await make_dispatcher().dispatch_due_reminders(
            datetime(2024, 3, 24, 8, 59, tzinfo=UTC)
        )
        assert result.deferred_count == 3
        assert sender.calls == []

    async def test_sender_returning_false_goes_to_retry(self, make_dispatcher, store):
        result = await make_dispatcher([False]).dispatch_due_reminders(AT_D7)

        assert result.failed_count == 1
        assert result.sent_count == 0
        state = await store.get(KEY_D7)
        assert state.status == DeliveryStatus.PENDING_RETRY
        assert state.attempts == 1
        assert state.sent_at is None

    async def test_sender_exception_is_a_failure(self, make_dispatcher, store):
        dispatcher = make_dispatcher([RuntimeError("smtp down")])
        result = await dispatcher.dispatch_due_reminders(AT_D7)

        assert result.failed_count == 1
        state = await store.get(KEY_D7)
        assert state.status == DeliveryStatus.PENDING_RETRY
        assert state.last_error == "smtp down"

    async def test_provider_rejection_is_a_failure(self, make_dispatcher, store):
        rejection = NotificationSendError("mailbox full", subscription_id="sub-1", channel="email")
        result = await make_dispatcher([rejection]).dispatch_due_reminders(AT_D7)

        assert result.failed_count == 1
        assert (await store.get(KEY_D7)).last_error == "mailbox full"

    async def test_pending_retry_key_left_to_recovery(self, make_dispatcher, store):
        dispatcher = make_dispatcher([False])
        sender = dispatcher.sender

        await dispatcher.dispatch_due_reminders(AT_D7)
        second = await dispatcher.dispatch_due_reminders(AT_D7 + timedelta(minutes=1))

        assert second.suppressed_count == 1
        assert len(sender.calls) == 1

    async def test_audit_event_on_send(self, make_dispatcher):
        with patch("remindi.notifications.dispatcher.log_audit_event") as mock_audit:
            await make_dispatcher().dispatch_due_reminders(AT_D7)

        mock_audit.assert_called_once()
        assert mock_audit.call_args[0][:2] == ("reminder.sent", "notifications")
        assert mock_audit.call_args.kwargs["resource_id"] == "sub-1"

    async def test_dry_run_writes_nothing(self, make_dispatcher, sender, store):
        result = await make_dispatcher().dispatch_due_reminders(AT_D7, dry_run=True)

        assert result.dry_run is True
        assert [e.key for e in result.planned] == [KEY_D7]
        assert result.sent_count == 0
        assert sender.calls == []
        assert len(store) == 0

    async def test_user_filter(self, make_dispatcher, sender):
        result = await make_dispatcher().dispatch_due_reminders(AT_D7, user_id="someone-else")
        assert result.sent_count == 0
        assert sender.calls == []

    async def test_muted_owner_receives_nothing(self, make_dispatcher, preferences, sender):
        preferences.notifications_enabled = False
        result = await make_dispatcher().dispatch_due_reminders(AT_D7)
        assert result.sent_count == 0
        assert sender.calls == []

    async def test_ended_subscription_receives_nothing(
        self, make_dispatcher, make_subscription, sender
    ):
        source = InMemorySubscriptionSource(
            subscriptions=[make_subscription(end_date=date(2024, 3, 20))]
        )
        result = await make_dispatcher(source=source).dispatch_due_reminders(AT_D7)
        assert result.sent_count == 0
        assert sender.calls == []

    async def test_bad_subscription_does_not_stop_run(
        self, make_dispatcher, make_subscription, make_payment, preferences, sender
    ):
        source = InMemorySubscriptionSource(
            subscriptions=[
                make_subscription(id="broken", billing_cycle="biweekly"),
                make_subscription(),
            ],
            payments=[make_payment(), make_payment()],
            preferences=[preferences],
        )
        dispatcher = make_dispatcher(
            source=source, config=ReminderConfig(strict_billing_cycles=True)
        )

        result = await dispatcher.dispatch_due_reminders(AT_D7)

        assert result.error_count == 1
        assert result.sent_count == 1
        assert [c["subscription_id"] for c in sender.calls] == ["sub-1"]

    async def test_sends_bounded_by_concurrency_limit(
        self, make_dispatcher, make_subscription, make_payment, preferences
    ):
        class SlowSender:
            def __init__(self):
                self.in_flight = 0
                self.peak = 0

            async def send(self, user_id, subscription_id, channel, payload):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return True

        ids = [f"sub-{n}" for n in range(6)]
        source = InMemorySubscriptionSource(
            subscriptions=[make_subscription(id=i) for i in ids],
            payments=[make_payment(i) for i in ids for _ in range(2)],
            preferences=[preferences],
        )
        slow = SlowSender()
        dispatcher = make_dispatcher(
            source=source, sender=slow, config=ReminderConfig(max_concurrent_sends=2)
        )

        result = await dispatcher.dispatch_due_reminders(AT_D7)

        assert result.sent_count == 6
        assert slow.peak <= 2


class TestLateCatchUp:
    """Missed reminders."""

    # After the D-3 send time, before D-1
    MISSED = datetime(2024, 3, 29, 12, 0, tzinfo=UTC)

    async def test_latest_missed_reminder_sent_once(self, make_dispatcher, sender, store):
        dispatcher = make_dispatcher()

        first = await dispatcher.dispatch_due_reminders(self.MISSED)
        second = await dispatcher.dispatch_due_reminders(self.MISSED + timedelta(hours=1))

        assert first.sent_count == 1
        assert [c["payload"]["days_before"] for c in sender.calls] == [3]
        assert second.sent_count == 0
        assert await store.get(ReminderKey("sub-1", 7, DUE)) is None

    async def test_disabled(self, make_dispatcher, sender):
        dispatcher = make_dispatcher(config=ReminderConfig(send_late_reminders=False))
        result = await dispatcher.dispatch_due_reminders(self.MISSED)

        assert result.sent_count == 0
        assert result.deferred_count == 1
        assert sender.calls == []

    async def test_not_sent_once_bill_is_due(self, make_dispatcher, sender):
        result = await make_dispatcher().dispatch_due_reminders(
            datetime(2024, 3, 31, 12, 0, tzinfo=UTC)
        )
        assert result.sent_count == 0
        assert sender.calls == []

    async def test_on_time_reminder_supersedes(self, make_dispatcher, sender):
        # D-1 on time; D-7 and D-3 were missed
        at_d1 = datetime(2024, 3, 30, 9, 0, tzinfo=UTC)
        result = await make_dispatcher().dispatch_due_reminders(at_d1)

        assert result.sent_count == 1
        assert [c["payload"]["days_before"] for c in sender.calls] == [1]


class TestClockAndLease:
    """Run-level guards."""

    async def test_clock_failure_aborts_without_writes(self, make_dispatcher, sender, store):
        def broken_clock():
            raise OSError("clock unavailable")

        dispatcher = make_dispatcher(clock=broken_clock)

        with pytest.raises(ClockError):
            await dispatcher.dispatch_due_reminders()

        assert sender.calls == []
        assert len(store) == 0

    async def test_naive_clock_rejected(self, make_dispatcher):
        dispatcher = make_dispatcher(clock=lambda: datetime(2024, 3, 24, 9, 1))
        with pytest.raises(ClockError):
            await dispatcher.dispatch_due_reminders()

    async def test_injected_clock_used(self, make_dispatcher, sender):
        result = await make_dispatcher(clock=lambda: AT_D7).dispatch_due_reminders()
        assert result.sent_count == 1

    async def test_wall_clock_used_by_default(self, make_dispatcher, sender):
        with freeze_time("2024-03-24 09:01:30", real_asyncio=True):
            result = await make_dispatcher().dispatch_due_reminders()

        assert result.sent_count == 1
        assert sender.calls[0]["payload"]["days_before"] == 7

    @pytest.mark.integration
    async def test_held_lease_skips_run(self, make_dispatcher, sender, fake_redis):
        await fake_redis.set(f"{LOCK_PREFIX}reminders:dispatch", "other-worker", ex=300)
        dispatcher = make_dispatcher(lease_factory=DistributedLock)

        result = await dispatcher.dispatch_due_reminders(AT_D7)

        assert result.skipped is True
        assert sender.calls == []

    @pytest.mark.integration
    async def test_lease_released_after_run(self, make_dispatcher, sender, fake_redis):
        dispatcher = make_dispatcher(lease_factory=DistributedLock)
        result = await dispatcher.dispatch_due_reminders(AT_D7)

        assert result.skipped is False
        assert result.sent_count == 1
        assert await fake_redis.get(f"{LOCK_PREFIX}reminders:dispatch") is None


class TestProcessFailed:
    """Recovery pass over pending_retry records."""

    async def _fail_once(self, make_dispatcher, outcomes):
        dispatcher = make_dispatcher(outcomes)
        await dispatcher.dispatch_due_reminders(AT_D7)
        return dispatcher, dispatcher.sender

    async def test_backoff_respected(self, make_dispatcher):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False])

        result = await dispatcher.process_failed(AT_D7 + timedelta(minutes=10))

        assert result.retried_count == 0
        assert len(sender.calls) == 1

    async def test_retry_recovers(self, make_dispatcher, store):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False])

        result = await dispatcher.process_failed(AT_D7 + timedelta(minutes=20))

        assert result.retried_count == 1
        assert result.recovered_count == 1
        state = await store.get(KEY_D7)
        assert state.status == DeliveryStatus.SENT
        assert state.attempts == 2

    async def test_retry_ceiling(self, make_dispatcher, store):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False, False, False])

        first = await dispatcher.process_failed(AT_D7 + timedelta(minutes=20))
        assert first.failed_count == 0
        assert (await store.get(KEY_D7)).status == DeliveryStatus.PENDING_RETRY

        second = await dispatcher.process_failed(AT_D7 + timedelta(minutes=40))
        assert second.failed_count == 1
        state = await store.get(KEY_D7)
        assert state.status == DeliveryStatus.FAILED
        assert state.attempts == 3

        third = await dispatcher.process_failed(AT_D7 + timedelta(hours=2))
        assert third.retried_count == 0
        assert len(sender.calls) == 3

    async def test_abandoned_when_due_date_changes(
        self, make_dispatcher, source, make_payment, store
    ):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False])
        source.add_payment(make_payment(payment_date=date(2024, 3, 24)))

        result = await dispatcher.process_failed(AT_D7 + timedelta(minutes=20))

        assert result.abandoned_count == 1
        assert result.retried_count == 0
        state = await store.get(KEY_D7)
        assert state.status == DeliveryStatus.FAILED
        assert state.last_error == "due_date_changed"

    async def test_abandoned_when_due_date_passed(self, make_dispatcher, store):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False])

        result = await dispatcher.process_failed(datetime(2024, 4, 1, 9, 0, tzinfo=UTC))

        assert result.abandoned_count == 1
        assert (await store.get(KEY_D7)).last_error == "due_date_passed"
        assert len(sender.calls) == 1

    async def test_abandoned_when_notifications_disabled(
        self, make_dispatcher, preferences, store
    ):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False])
        preferences.notifications_enabled = False

        result = await dispatcher.process_failed(AT_D7 + timedelta(minutes=20))

        assert result.abandoned_count == 1
        assert (await store.get(KEY_D7)).last_error == "notifications_disabled"

    async def test_abandoned_when_subscription_missing(self, make_dispatcher, source, store):
        dispatcher, sender = await self._fail_once(make_dispatcher, [False])
        del source.subscriptions["sub-1"]

        result = await dispatcher.process_failed(AT_D7 + timedelta(minutes=20))

        assert result.abandoned_count == 1
        assert (await store.get(KEY_D7)).last_error == "subscription_missing"


class TestDailyDigest:
    """Daily status digest pass."""

    # 09:05 on the day after the D-7 reminder; sub-1 is due in six days
    AT = datetime(2024, 3, 25, 9, 5, tzinfo=UTC)

    @pytest.fixture
    def digest_source(self, make_subscription, make_payment, preferences):
        preferences.daily_notification_enabled = True
        return InMemorySubscriptionSource(
            subscriptions=[make_subscription()],
            payments=[make_payment(), make_payment(payment_date=date(2024, 2, 29))],
            preferences=[preferences],
        )

    async def test_sends_and_stamps(self, make_dispatcher, digest_source, sender):
        result = await make_dispatcher(source=digest_source).send_daily_digests(self.AT)

        assert result.sent_count == 1
        assert len(sender.calls) == 1
        call = sender.calls[0]
        assert call["user_id"] == "user-1"
        assert call["subscription_id"] is None
        assert call["channel"] is NotificationChannel.EMAIL
        assert call["payload"]["email_address"] == "owner@example.com"
        assert call["payload"]["active_subscriptions"] == 1
        assert call["payload"]["upcoming"][0]["subscription_id"] == "sub-1"
        assert call["payload"]["upcoming"][0]["days_until"] == 6

        stamped = digest_source.preferences["user-1"].last_daily_notification_sent_at
        assert stamped == self.AT

    async def test_second_run_same_day_suppressed(self, make_dispatcher, digest_source, sender):
        dispatcher = make_dispatcher(source=digest_source)

        await dispatcher.send_daily_digests(self.AT)
        second = await dispatcher.send_daily_digests(self.AT + timedelta(minutes=15))

        assert second.sent_count == 0
        assert len(sender.calls) == 1

    async def test_sent_again_next_day(self, make_dispatcher, digest_source, sender):
        dispatcher = make_dispatcher(source=digest_source)

        await dispatcher.send_daily_digests(self.AT)
        await dispatcher.send_daily_digests(self.AT + timedelta(days=1))

        assert len(sender.calls) == 2

    async def test_outside_send_window_sends_nothing(
        self, make_dispatcher, digest_source, sender
    ):
        result = await make_dispatcher(source=digest_source).send_daily_digests(
            self.AT + timedelta(hours=2)
        )

        assert result.sent_count == 0
        assert sender.calls == []

    async def test_not_opted_in(self, make_dispatcher, sender):
        result = await make_dispatcher().send_daily_digests(self.AT)

        assert result.to_dict()["sent_count"] == 0
        assert sender.calls == []

    async def test_dry_run_writes_nothing(self, make_dispatcher, digest_source, sender):
        result = await make_dispatcher(source=digest_source).send_daily_digests(
            self.AT, dry_run=True
        )

        assert result.dry_run is True
        assert result.planned == ["user-1"]
        assert sender.calls == []
        assert digest_source.preferences["user-1"].last_daily_notification_sent_at is None

    async def test_user_filter(self, make_dispatcher, digest_source, sender):
        result = await make_dispatcher(source=digest_source).send_daily_digests(
            self.AT, user_id="user-2"
        )

        assert result.sent_count == 0
        assert sender.calls == []

    async def test_missing_address_counted(self, make_dispatcher, digest_source, sender):
        digest_source.preferences["user-1"].email = ""

        result = await make_dispatcher(source=digest_source).send_daily_digests(self.AT)

        assert result.missing_address_count == 1
        assert sender.calls == []

    async def test_failed_send_retried_inside_window(self, make_dispatcher, digest_source):
        dispatcher = make_dispatcher([False], source=digest_source)

        first = await dispatcher.send_daily_digests(self.AT)
        assert first.failed_count == 1
        assert digest_source.preferences["user-1"].last_daily_notification_sent_at is None

        later = self.AT + timedelta(minutes=15)
        second = await dispatcher.send_daily_digests(later)
        assert second.sent_count == 1
        assert digest_source.preferences["user-1"].last_daily_notification_sent_at == later

    async def test_sender_exception_is_a_failure(self, make_dispatcher, digest_source):
        dispatcher = make_dispatcher([RuntimeError("smtp down")], source=digest_source)

        result = await dispatcher.send_daily_digests(self.AT)

        assert result.failed_count == 1
        assert result.sent_count == 0

    async def test_build_failure_counted(self, make_dispatcher, digest_source, sender):
        dispatcher = make_dispatcher(source=digest_source)

        with patch.object(
            digest_source, "list_for_user", AsyncMock(side_effect=RuntimeError("db gone"))
        ):
            result = await dispatcher.send_daily_digests(self.AT)

        assert result.error_count == 1
        assert sender.calls == []

    async def test_audit_event_on_send(self, make_dispatcher, digest_source):
        with patch("remindi.notifications.dispatcher.log_audit_event") as mock_audit:
            await make_dispatcher(source=digest_source).send_daily_digests(self.AT)

        mock_audit.assert_called_once()
        assert mock_audit.call_args[0][:2] == ("daily_digest.sent", "notifications")
        assert mock_audit.call_args.kwargs["user_id"] == "user-1"
        assert mock_audit.call_args.kwargs["upcoming_reminders"] == 1

    async def test_held_lease_skips_run(self, make_dispatcher, digest_source, sender, fake_redis):
        await fake_redis.set(f"{LOCK_PREFIX}reminders:daily-digest", "other-worker", ex=300)
        dispatcher = make_dispatcher(source=digest_source, lease_factory=DistributedLock)

        result = await dispatcher.send_daily_digests(self.AT)

        assert result.skipped is True
        assert sender.calls == []

    async def test_broken_clock_aborts(self, make_dispatcher, digest_source, sender):
        dispatcher = make_dispatcher(source=digest_source, clock=lambda: datetime(2024, 3, 25, 9))

        with pytest.raises(ClockError):
            await dispatcher.send_daily_digests()
        assert sender.calls == []


class TestPrune:
    """Retention."""

    async def test_prune_uses_retention_period(self, make_dispatcher, store):
        stale_key = ReminderKey("sub-1", 7, date(2023, 11, 30))
        await store.record_sent(stale_key, datetime(2023, 11, 23, 9, 0, tzinfo=UTC))
        await store.record_sent(KEY_D7, AT_D7)

        deleted = await make_dispatcher().prune(AT_D7 + timedelta(days=1))

        assert deleted == 1
        assert len(store) == 1
