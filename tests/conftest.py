"""
Global pytest configuration and fixtures for the reminder engine tests.
"""

import os
from collections.abc import AsyncIterator, Callable
from datetime import date
from decimal import Decimal
from typing import Any

import pytest

# Settings are read at import time; keep tests off any local .env database
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.pop("DATABASE__URL", None)

import fakeredis  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from remindi.billing.models import (  # noqa: E402
    NotificationPreferences,
    PaymentRecord,
    Subscription,
)
from remindi.db import Base  # noqa: E402
from remindi.notifications.config import ReminderConfig, set_reminder_config  # noqa: E402
from remindi.notifications.models import NotificationChannel  # noqa: E402
from remindi.redis_client import set_redis_client  # noqa: E402

# Register every mapped table on Base.metadata
import remindi.billing.tables  # noqa: E402,F401
import remindi.notifications.tables  # noqa: E402,F401


class RecordingSender:
    """NotificationSender double that records calls.

    ``outcomes`` is consumed one entry per call: ``True``/``False`` are
    returned, exceptions are raised. Once exhausted every call succeeds.
    """

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[dict[str, Any]] = []

    async def send(
        self,
        user_id: str,
        subscription_id: str | None,
        channel: NotificationChannel,
        payload: dict[str, Any],
    ) -> bool:
        self.calls.append(
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "channel": channel,
                "payload": payload,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture(autouse=True)
def reset_reminder_config():
    """Each test starts from a fresh process-wide configuration."""
    set_reminder_config(None)
    yield
    set_reminder_config(None)


@pytest.fixture
def config() -> ReminderConfig:
    """Default knobs with sends on the hour."""
    return ReminderConfig()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def make_subscription() -> Callable[..., Subscription]:
    """Build subscriptions with sensible defaults, capturing the anchor day."""

    def _make(**overrides: Any) -> Subscription:
        fields: dict[str, Any] = {
            "id": "sub-1",
            "user_id": "user-1",
            "name": "Streaming",
            "price": Decimal("9.99"),
            "currency": "USD",
            "billing_cycle": "monthly",
            "billing_interval": 1,
            "start_date": date(2024, 1, 31),
        }
        fields.update(overrides)
        return Subscription.create(**fields)

    return _make


@pytest.fixture
def make_payment() -> Callable[..., PaymentRecord]:
    counter = {"n": 0}

    def _make(subscription_id: str = "sub-1", **overrides: Any) -> PaymentRecord:
        counter["n"] += 1
        fields: dict[str, Any] = {
            "id": f"pay-{counter['n']}",
            "subscription_id": subscription_id,
            "amount": Decimal("9.99"),
            "payment_date": date(2024, 1, 31),
        }
        fields.update(overrides)
        return PaymentRecord(**fields)

    return _make


@pytest.fixture
def preferences() -> NotificationPreferences:
    return NotificationPreferences(
        user_id="user-1",
        email="owner@example.com",
        default_reminder_intervals=[7, 3, 1],
    )


@pytest.fixture
async def async_engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'remindi.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def fake_redis() -> AsyncIterator[fakeredis.FakeAsyncRedis]:
    """In-process Redis installed as the lease client."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    set_redis_client(client)
    yield client
    set_redis_client(None)
    await client.aclose()


@pytest.fixture
def make_sender() -> Callable[..., RecordingSender]:
    """Sender with scripted outcomes, e.g. ``make_sender([False])``."""
    return RecordingSender
