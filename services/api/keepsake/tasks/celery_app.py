"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from keepsake.config import get_settings

settings = get_settings()

celery_app = Celery(
    "keepsake",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "keepsake.tasks.reminder_tasks",
        "keepsake.tasks.maintenance_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "keepsake.tasks.reminder_tasks.*": {"queue": "reminders"},
        "keepsake.tasks.maintenance_tasks.*": {"queue": "default"},
    },
    beat_schedule={
        # Catch reminders whose API-process timer was lost (restart, crash)
        "dispatch-due-reminders": {
            "task": "keepsake.tasks.reminder_tasks.dispatch_due_reminders",
            "schedule": 60.0,
        },
        # Roll recurring events forward to their next occurrence: daily at 2 AM UTC
        "refresh-recurring-reminders": {
            "task": "keepsake.tasks.reminder_tasks.refresh_recurring_reminders",
            "schedule": crontab(hour=2, minute=0),
        },
        # Audit history retention: daily at 4 AM UTC
        "prune-event-history": {
            "task": "keepsake.tasks.maintenance_tasks.prune_event_history",
            "schedule": crontab(hour=4, minute=0),
        },
    },
)
