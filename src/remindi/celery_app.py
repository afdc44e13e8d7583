"""
Celery application configuration.

Beat drives the reminder engine: dispatch every minute, the failed-notification
recovery pass and the daily digest check every 15 minutes, and delivery-state
pruning once a day.
"""

from typing import Any

import structlog
from celery import Celery
from celery.signals import worker_process_init
from kombu import Queue

from remindi.settings import settings

# Create Celery application
celery_app = Celery(
    "remindi",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["remindi.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    # Task routing
    task_routes={
        "reminders.*": {"queue": "reminders"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("reminders", routing_key="reminders"),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=settings.celery.enable_utc,
    # Task result settings
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    # Periodic tasks
    beat_schedule={
        "reminders-dispatch-due": {
            "task": "reminders.dispatch_due",
            "schedule": settings.celery.dispatch_interval_seconds,
        },
        "reminders-process-failed": {
            "task": "reminders.process_failed",
            "schedule": settings.celery.process_failed_interval_seconds,
        },
        "reminders-prune-deliveries": {
            "task": "reminders.prune_deliveries",
            "schedule": settings.celery.prune_interval_seconds,
        },
        "reminders-send-daily-digest": {
            "task": "reminders.send_daily_digest",
            "schedule": settings.celery.daily_digest_interval_seconds,
        },
    },
)


@worker_process_init.connect  # type: ignore[misc]
def setup_worker_logging(**kwargs: Any) -> None:
    """Configure structlog in each worker process."""
    from remindi.logging import setup_logging

    setup_logging()


# Log worker startup
@celery_app.on_after_finalize.connect  # type: ignore[misc]
def log_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        queues=["default", "reminders"],
        periodic_tasks=sorted(sender.conf.beat_schedule),
    )


if __name__ == "__main__":
    # For running worker directly: python -m remindi.celery_app worker
    celery_app.start()
