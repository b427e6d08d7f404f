"""
Runs one attempt of a calendar job and decides what happens next
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from calsync.sync import retry_policy
from calsync.sync.concurrency import ConcurrencyGuard, GuardBusy, UniqueJobRegistry
from calsync.sync.errors import ReleaseJob, SkipJob
from calsync.sync.jobs.base import CalendarJob, JobContext, JobResult, JobState, Release, Resolved
from calsync.sync.rate_limiter import RateLimiter
from calsync.sync.retry_policy import Urgency

logger = logging.getLogger(__name__)

GUARD_RETRY_DELAY = 10


@dataclass
class JobOutcome:
    status: str  # completed, skipped, released, failed, cascaded, duplicate_skipped...
    job: CalendarJob
    data: Dict[str, Any] = field(default_factory=dict)
    delay: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status != "released"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "job": self.job.display_name(),
            "attempts": self.job.attempts,
            "data": self.data,
            "delay": self.delay,
            "error": self.error,
        }


class JobRunner:
    def __init__(self, ctx: JobContext):
        if ctx.guard is None:
            ctx.guard = ConcurrencyGuard()
        if ctx.rate_limiter is None:
            ctx.rate_limiter = RateLimiter()
        if ctx.unique_jobs is None:
            ctx.unique_jobs = UniqueJobRegistry()
        self.ctx = ctx

    @property
    def max_attempts(self) -> int:
        return self.ctx.settings.SYNC_MAX_ATTEMPTS

    def prepare(self, job: CalendarJob) -> CalendarJob:
        """Fix the job's urgency and lane before it is queued"""
        if job.urgency is None:
            db = self.ctx.session_factory()
            try:
                job.urgency = job.determine_urgency(db, self.ctx.clock())
            except Exception as e:
                logger.warning(f"Could not determine urgency for {job.display_name()}: {e}")
                job.urgency = Urgency.NORMAL
            finally:
                db.close()
        job.queue = retry_policy.queue_for(job.kind, job.urgency)
        return job

    @contextmanager
    def _hold(self, key: Optional[str]):
        if key is None:
            yield
            return
        with self.ctx.guard.hold(key):
            yield

    def run(self, job: CalendarJob) -> JobOutcome:
        if job.urgency is None:
            self.prepare(job)
        job.attempts += 1
        job.start_clock()
        logger.info(f"▶️ {job.display_name()} attempt {job.attempts}/{self.max_attempts} {job.tags()}")

        db = self.ctx.session_factory()
        try:
            outcome = self._execute(job, db)
        finally:
            db.close()

        if outcome.is_final:
            key = job.unique_key()
            if key:
                self.ctx.unique_jobs.release(key)
        return outcome

    def _execute(self, job: CalendarJob, db) -> JobOutcome:
        try:
            with self._hold(job.concurrency_key()):
                result = job.handle(db, self.ctx) or JobResult()
                db.commit()
        except GuardBusy as e:
            db.rollback()
            job.attempts -= 1
            return self._requeue(job, GUARD_RETRY_DELAY, str(e))
        except SkipJob as e:
            db.rollback()
            job.finish(JobState.SKIPPED)
            logger.info(f"⏭️ {job.display_name()} skipped: {e.reason}")
            return JobOutcome("skipped", job, {"reason": e.reason})
        except ReleaseJob as e:
            db.rollback()
            if not e.consume_attempt:
                job.attempts -= 1
            elif job.attempts >= self.max_attempts:
                return self._fail(job, db, e)
            return self._requeue(job, e.delay, e.reason)
        except Exception as error:
            db.rollback()
            return self._fail(job, db, error)

        job.finish(JobState.COMPLETED)
        logger.info(f"✅ {job.display_name()} {result.status}")
        return JobOutcome(result.status, job, result.data)

    def _requeue(self, job: CalendarJob, delay: int, reason: str, error=None) -> JobOutcome:
        job.finish(JobState.FAILED_RETRYABLE if error else JobState.QUEUED)
        if self.ctx.dispatcher is None:
            logger.error(f"No dispatcher to requeue {job.display_name()}")
        else:
            self.ctx.dispatcher.dispatch(job, delay=delay, unique=False)
        logger.info(f"🔁 {job.display_name()} released for {delay}s: {reason}")
        return JobOutcome("released", job, delay=delay, error=str(error) if error else None)

    def _fail(self, job: CalendarJob, db, error) -> JobOutcome:
        # Error handlers run outside the attempt's deadline
        job._deadline = None
        attempt = job.attempts
        logger.warning(f"⚠️ {job.display_name()} attempt {attempt} failed: {error}")

        resolution = None
        try:
            resolution = job.on_error(error, db, self.ctx)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Error handler of {job.display_name()} raised: {e}")

        if isinstance(resolution, Resolved):
            job.finish(JobState.COMPLETED)
            logger.info(f"✅ {job.display_name()} resolved as {resolution.status} after: {error}")
            return JobOutcome(resolution.status, job, resolution.data, error=str(error))

        try:
            retry = job.should_retry(error, db, self.ctx)
        except Exception as e:
            logger.error(f"❌ Retry check of {job.display_name()} raised: {e}")
            retry = False

        if retry and attempt < self.max_attempts:
            if isinstance(resolution, Release):
                delay = resolution.delay
            else:
                delay = job.retry_after(attempt, self.ctx)
            return self._requeue(job, delay, str(error), error=error)

        job.finish(JobState.FAILED_TERMINAL)
        logger.error(f"❌ {job.display_name()} failed permanently after {attempt} attempt(s): {error}")
        try:
            job.failed(error, db, self.ctx)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception(f"Failure handler of {job.display_name()} raised: {e}")
        return JobOutcome("failed", job, error=str(error))
