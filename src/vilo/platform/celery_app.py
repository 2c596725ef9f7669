"""
Celery application configuration.

Workers run the subscription automation tasks; beat triggers the daily and
hourly job runners.
"""

from typing import Any

import structlog
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging
from kombu import Queue

from vilo.platform.logging import setup_logging
from vilo.platform.settings import settings

# Create Celery application
celery_app = Celery(
    "vilo_platform",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=[
        "vilo.platform.subscriptions.tasks",
    ],
)

# Configure Celery settings
celery_app.conf.update(
    # Task routing
    task_routes={
        "subscriptions.run_*": {"queue": "default"},
        "subscriptions.start_grace_period": {"queue": "high_priority"},
        "subscriptions.resolve_grace_period": {"queue": "high_priority"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("high_priority", routing_key="high_priority"),
    ),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=settings.celery.enable_utc,
    # Task result settings
    result_expires=86400,  # 1 day
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_concurrency=settings.celery.worker_concurrency,
    worker_prefetch_multiplier=settings.celery.worker_prefetch_multiplier,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs: Any) -> None:
    """Route worker logs through structlog instead of Celery's own handlers."""
    setup_logging()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the daily and hourly subscription job runners with beat."""
    from vilo.platform.subscriptions.tasks import run_daily_jobs_task, run_hourly_jobs_task

    automation = settings.automation

    # Trials, grace periods and usage limits once a day
    sender.add_periodic_task(
        crontab(hour=automation.daily_jobs_hour, minute=0),
        run_daily_jobs_task.s(),
        name="subscriptions-run-daily-jobs",
    )

    # Renewal reminders every hour
    sender.add_periodic_task(
        crontab(minute=automation.hourly_jobs_minute),
        run_hourly_jobs_task.s(),
        name="subscriptions-run-hourly-jobs",
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        backend=settings.celery.result_backend,
        queues=["default", "high_priority"],
        periodic_tasks=["subscriptions-run-daily-jobs", "subscriptions-run-hourly-jobs"],
    )


if __name__ == "__main__":
    # For running worker directly: python -m vilo.platform.celery_app worker
    celery_app.start()
