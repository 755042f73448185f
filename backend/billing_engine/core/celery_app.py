"""
Celery application configuration.

Handles background tasks for:
- Scheduled recurring billing runs
- Due retry runs
- The automatic card updater sweep
- Decline insight counters
"""
import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_prerun, task_postrun, task_failure

from billing_engine.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "billing_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "billing_engine.tasks.billing_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour hard limit per billing run
    task_soft_time_limit=3300,
    worker_prefetch_multiplier=1,  # Take one task at a time
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Task routes (charges and analytics on separate queues)
celery_app.conf.task_routes = {
    "billing_engine.tasks.billing_tasks.record_decline_insight": {"queue": "insights"},
    "billing_engine.tasks.billing_tasks.*": {"queue": "billing"},
}

# Billing run trigger
celery_app.conf.beat_schedule = {
    "run-recurring-billing": {
        "task": "billing_engine.tasks.billing_tasks.run_recurring_billing",
        "schedule": settings.billing_run_interval_minutes * 60.0,
    },
    "process-due-retries": {
        "task": "billing_engine.tasks.billing_tasks.process_due_retries",
        "schedule": settings.billing_run_interval_minutes * 60.0,
    },
    "run-card-updater": {
        "task": "billing_engine.tasks.billing_tasks.run_card_updater",
        "schedule": crontab(hour=3, minute=0),
    },
}


@task_prerun.connect
def task_prerun_handler(task_id, task, *args, **kwargs):
    """Handler called before task execution."""
    logger.info(f"Task starting: {task.name} (ID: {task_id})")


@task_postrun.connect
def task_postrun_handler(task_id, task, *args, retval=None, **kwargs):
    """Handler called after task execution."""
    logger.info(f"Task completed: {task.name} (ID: {task_id})")


@task_failure.connect
def task_failure_handler(task_id, exception, *args, **kwargs):
    """Handler called on task failure."""
    logger.error(f"Task failed: {task_id}, Exception: {str(exception)}")
