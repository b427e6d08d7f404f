# ===== calsync/tasks/calendar_tasks.py =====
import logging
from typing import Optional

from calsync.config.celery_config import celery_app
from calsync.config.database import SessionLocal
from calsync.config.settings import get_settings
from calsync.models.base import utcnow
from calsync.services.booking_service import BookingService
from calsync.services.calendar.registry import ProviderRegistry
from calsync.services.notification_service import NotificationService
from calsync.services.token_service import TokenService
from calsync.sync.concurrency import build_coordination
from calsync.sync.jobs import (
    CalendarJob,
    JobContext,
    job_from_payload,
    refresh_expiring_tokens,
    sync_active_integrations,
)
from calsync.sync.recovery import sweep_pending_cleanups
from calsync.sync.runner import JobRunner

logger = logging.getLogger(__name__)

_runner: Optional[JobRunner] = None


class CeleryDispatcher:
    """Sends calendar jobs to their lane queue as run_calendar_job tasks"""

    def __init__(self, runner: JobRunner):
        self.runner = runner

    def dispatch(self, job: CalendarJob, delay: int = 0, unique: bool = True) -> bool:
        key = job.unique_key() if unique else None
        if key and not self.runner.ctx.unique_jobs.claim(key, job.policy.unique_for):
            logger.info(f"Skipping duplicate {job.display_name()} ({key})")
            return False

        self.runner.prepare(job)
        payload = job.to_payload()
        run_calendar_job.apply_async(
            args=[payload.model_dump(mode="json")],
            queue=job.queue,
            countdown=delay or None,
            soft_time_limit=job.policy.timeout,
        )
        logger.debug(f"Sent {job.display_name()} to {job.queue} (delay={delay}s)")
        return True


def get_runner() -> JobRunner:
    """Build the worker's runner once per process"""
    global _runner
    if _runner is None:
        registry = ProviderRegistry()
        guard, limiter, unique_jobs = build_coordination()
        ctx = JobContext(
            session_factory=SessionLocal,
            registry=registry,
            token_service=TokenService(registry),
            booking_service=BookingService(),
            notifier=NotificationService(),
            guard=guard,
            rate_limiter=limiter,
            unique_jobs=unique_jobs,
        )
        _runner = JobRunner(ctx)
        ctx.dispatcher = CeleryDispatcher(_runner)
    return _runner


def dispatch_job(job: CalendarJob, delay: int = 0) -> bool:
    """Entry point for producers (booking lifecycle, webhook ingress)"""
    return get_runner().ctx.dispatcher.dispatch(job, delay=delay)


@celery_app.task(bind=True)
def run_calendar_job(self, payload: dict):
    """Run one attempt of a serialized calendar job; retries are re-dispatched by the runner"""
    job = job_from_payload(payload)
    outcome = get_runner().run(job)
    return outcome.as_dict()


@celery_app.task(bind=True)
def refresh_expiring_tokens_task(self):
    runner = get_runner()
    db = SessionLocal()
    try:
        return refresh_expiring_tokens(
            db, runner.ctx.dispatcher, utcnow(), get_settings().TOKEN_REFRESH_LOOKAHEAD_HOURS
        )
    finally:
        db.close()


@celery_app.task(bind=True)
def sweep_pending_cleanups_task(self):
    runner = get_runner()
    db = SessionLocal()
    try:
        return sweep_pending_cleanups(
            db, runner.ctx.dispatcher, utcnow(), get_settings().PENDING_CLEANUP_MAX_ATTEMPTS
        )
    finally:
        db.close()


@celery_app.task(bind=True)
def sync_ical_integrations_task(self):
    runner = get_runner()
    db = SessionLocal()
    try:
        return sync_active_integrations(db, runner.ctx.dispatcher, providers=["ical"])
    finally:
        db.close()
