"""
Celery tasks for the reminder engine.

Each task runs its async body to completion with ``asyncio.run`` and returns
a plain dict for the result backend.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from remindi.billing.exceptions import ClockError
from remindi.celery_app import celery_app
from remindi.db import dispose_async_engine
from remindi.engine import ReminderEngine
from remindi.redis_client import shutdown_redis

logger = structlog.get_logger(__name__)


async def _close_connections() -> None:
    # Connections are bound to the event loop that asyncio.run is about to close
    await shutdown_redis()
    await dispose_async_engine()


async def _dispatch_due() -> dict[str, Any]:
    try:
        result = await ReminderEngine.from_settings().dispatch_due_reminders()
    finally:
        await _close_connections()
    return result.to_dict()


async def _process_failed() -> dict[str, Any]:
    try:
        result = await ReminderEngine.from_settings().process_failed()
    finally:
        await _close_connections()
    return result.to_dict()


async def _prune_deliveries() -> dict[str, Any]:
    try:
        deleted = await ReminderEngine.from_settings().prune_deliveries()
    finally:
        await _close_connections()
    return {"deleted": deleted}


async def _send_daily_digests() -> dict[str, Any]:
    try:
        result = await ReminderEngine.from_settings().send_daily_digests()
    finally:
        await _close_connections()
    return result.to_dict()


def _run(job: str, body: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    try:
        return asyncio.run(body())
    except ClockError as e:
        # The next beat tick retries; nothing was written
        logger.error("reminders.task.clock_error", job=job, **e.to_dict())
        return {"status": "aborted", **e.to_dict()}


@celery_app.task(name="reminders.dispatch_due")
def dispatch_due_reminders_task() -> dict[str, Any]:
    """Periodic task sending every reminder due this minute."""
    return _run("dispatch_due", _dispatch_due)


@celery_app.task(name="reminders.process_failed")
def process_failed_reminders_task() -> dict[str, Any]:
    """Periodic task retrying failed reminder sends."""
    return _run("process_failed", _process_failed)


@celery_app.task(name="reminders.prune_deliveries")
def prune_deliveries_task() -> dict[str, Any]:
    """Periodic task deleting expired delivery-state records."""
    return _run("prune_deliveries", _prune_deliveries)


@celery_app.task(name="reminders.send_daily_digest")
def send_daily_digest_task() -> dict[str, Any]:
    """Periodic task sending the daily status digest to users due now."""
    return _run("send_daily_digest", _send_daily_digests)


__all__ = [
    "dispatch_due_reminders_task",
    "process_failed_reminders_task",
    "prune_deliveries_task",
    "send_daily_digest_task",
]
