# calsync/config/celery_config.py
from celery import Celery
from kombu import Queue

from calsync.config.settings import get_settings
from calsync.sync.retry_policy import POLICIES

settings = get_settings()

# Every lane any job kind can be routed to
ALL_QUEUES = sorted({name for policy in POLICIES.values() for name in policy.queues.values()})


def create_celery_app() -> Celery:
    app = Celery(
        "calsync",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
        include=["calsync.tasks.calendar_tasks"],
    )

    app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_default_queue="calendar-events",
        task_queues=[Queue(name) for name in ALL_QUEUES],
        task_routes={
            "calsync.tasks.calendar_tasks.refresh_expiring_tokens_task": {"queue": "calendar-tokens"},
            "calsync.tasks.calendar_tasks.sweep_pending_cleanups_task": {"queue": "calendar-events"},
            "calsync.tasks.calendar_tasks.sync_ical_integrations_task": {"queue": "calendar-sync-low"},
        },
        beat_schedule={
            "refresh-expiring-calendar-tokens": {
                "task": "calsync.tasks.calendar_tasks.refresh_expiring_tokens_task",
                "schedule": 1800.0,
            },
            "sweep-pending-calendar-cleanups": {
                "task": "calsync.tasks.calendar_tasks.sweep_pending_cleanups_task",
                "schedule": 900.0,
            },
            # iCal feeds have no push channel
            "sync-ical-integrations": {
                "task": "calsync.tasks.calendar_tasks.sync_ical_integrations_task",
                "schedule": 900.0,
            },
        },
    )
    return app


celery_app = create_celery_app()
