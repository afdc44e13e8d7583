"""Tests for the daily status digest schedule and content."""

from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from remindi.billing.cycles import BillingCycleCalculator
from remindi.notifications.config import ReminderConfig
from remindi.notifications.digest import build_digest_payload, digest_due

pytestmark = pytest.mark.unit

TODAY = date(2024, 3, 25)
# Default 09:00 send time plus five minutes
AT = datetime(2024, 3, 25, 9, 5, tzinfo=UTC)


@pytest.fixture
def opted_in(preferences):
    return preferences.model_copy(update={"daily_notification_enabled": True})


class TestDigestDue:
    """When a user's digest goes out."""

    def test_not_opted_in(self, preferences, config):
        assert digest_due(preferences, AT, config) is False

    def test_due_inside_window(self, opted_in, config):
        assert digest_due(opted_in, AT, config) is True

    @pytest.mark.parametrize(
        "now, expected",
        [
            (datetime(2024, 3, 25, 8, 59, tzinfo=UTC), False),
            (datetime(2024, 3, 25, 9, 0, tzinfo=UTC), True),
            (datetime(2024, 3, 25, 9, 59, tzinfo=UTC), True),
            (datetime(2024, 3, 25, 10, 0, tzinfo=UTC), False),
        ],
    )
    def test_window_edges(self, opted_in, config, now, expected):
        assert digest_due(opted_in, now, config) is expected

    def test_own_notification_time(self, opted_in, config):
        opted_in.notification_time = time(18, 30)

        assert digest_due(opted_in, AT, config) is False
        assert digest_due(opted_in, datetime(2024, 3, 25, 18, 45, tzinfo=UTC), config) is True

    def test_sent_recently_is_suppressed(self, opted_in, config):
        opted_in.last_daily_notification_sent_at = AT - timedelta(hours=18)

        assert digest_due(opted_in, AT, config) is False

    def test_sent_yesterday_is_due_again(self, opted_in, config):
        opted_in.last_daily_notification_sent_at = AT - timedelta(days=1)

        assert digest_due(opted_in, AT, config) is True

    def test_configured_window(self, opted_in):
        config = ReminderConfig(daily_digest_window_minutes=5)

        assert digest_due(opted_in, datetime(2024, 3, 25, 9, 4, tzinfo=UTC), config) is True
        assert digest_due(opted_in, datetime(2024, 3, 25, 9, 5, tzinfo=UTC), config) is False


class TestBuildDigestPayload:
    """Digest content."""

    def test_counts_and_upcoming(self, make_subscription, opted_in):
        pairs = [
            # Due 2024-03-31
            (make_subscription(), 2),
            (make_subscription(id="sub-2", name="Gym", start_date=date(2024, 3, 27)), 0),
            (make_subscription(id="sub-3", name="Cloud", start_date=date(2024, 4, 20)), 0),
            (
                make_subscription(
                    id="sub-4",
                    name="Old",
                    start_date=date(2023, 1, 1),
                    end_date=date(2024, 3, 1),
                ),
                14,
            ),
            (
                make_subscription(
                    id="sub-5",
                    name="Muted",
                    start_date=date(2024, 3, 26),
                    use_default_notifications=False,
                    notifications_enabled=False,
                ),
                0,
            ),
        ]

        payload = build_digest_payload(opted_in, pairs, TODAY, BillingCycleCalculator())

        assert payload.user_id == "user-1"
        assert payload.email_address == "owner@example.com"
        assert payload.active_subscriptions == 4
        assert [bill.subscription_id for bill in payload.upcoming] == ["sub-2", "sub-1"]
        assert [bill.days_until for bill in payload.upcoming] == [2, 6]
        assert payload.upcoming[1].due_date == date(2024, 3, 31)
        assert payload.upcoming[1].amount == Decimal("9.99")

    def test_due_today_is_listed(self, make_subscription, opted_in):
        pairs = [(make_subscription(start_date=TODAY), 0)]

        payload = build_digest_payload(opted_in, pairs, TODAY, BillingCycleCalculator())

        assert [bill.days_until for bill in payload.upcoming] == [0]

    def test_lookahead_is_configurable(self, make_subscription, opted_in):
        pairs = [(make_subscription(), 2)]

        payload = build_digest_payload(
            opted_in, pairs, TODAY, BillingCycleCalculator(), lookahead_days=3
        )

        assert payload.active_subscriptions == 1
        assert payload.upcoming == []

    def test_no_subscriptions(self, opted_in):
        payload = build_digest_payload(opted_in, [], TODAY, BillingCycleCalculator())

        assert payload.active_subscriptions == 0
        assert payload.upcoming == []
        assert payload.tracking_id

    def test_unknown_cycle_skipped_under_strict_calculator(self, make_subscription, opted_in):
        pairs = [
            (make_subscription(id="odd", billing_cycle="fortnightly", start_date=TODAY), 0),
            (make_subscription(id="ok", start_date=date(2024, 3, 28)), 0),
        ]

        with patch("remindi.notifications.digest.logger") as mock_logger:
            payload = build_digest_payload(
                opted_in, pairs, TODAY, BillingCycleCalculator(strict_cycles=True)
            )

        assert payload.active_subscriptions == 2
        assert [bill.subscription_id for bill in payload.upcoming] == ["ok"]
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "reminders.digest.subscription_skipped"

    def test_payload_serializes_for_the_sender(self, make_subscription, opted_in):
        payload = build_digest_payload(
            opted_in, [(make_subscription(), 2)], TODAY, BillingCycleCalculator()
        )

        data = payload.to_dict()

        assert data["active_subscriptions"] == 1
        assert data["upcoming"][0]["due_date"] == "2024-03-31"
        assert data["upcoming"][0]["name"] == "Streaming"
        assert isinstance(data["tracking_id"], str)
