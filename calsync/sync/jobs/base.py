"""
Shared state machine for calendar sync jobs

queued -> validating -> conflict_check -> calling_provider ->
updating_local_state -> completed | failed_retryable | failed_terminal
(plus skipped for jobs that turned out to be moot)
"""
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from calsync.config.settings import Settings, get_settings
from calsync.models import Booking, CalendarIntegration
from calsync.models.base import utcnow
from calsync.schemas.task_payloads import CalendarJobPayload
from calsync.sync import retry_policy
from calsync.sync.errors import JobTimeout, ReleaseJob, SkipJob, TerminalSyncError
from calsync.sync.retry_policy import JobKind, Urgency

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    QUEUED = "queued"
    VALIDATING = "validating"
    CONFLICT_CHECK = "conflict_check"
    CALLING_PROVIDER = "calling_provider"
    UPDATING_LOCAL_STATE = "updating_local_state"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"
    SKIPPED = "skipped"


@dataclass
class JobContext:
    """Collaborators a job needs while it runs"""
    session_factory: Callable[[], Any]
    registry: Any
    token_service: Any
    booking_service: Any
    notifier: Any
    dispatcher: Any = None
    guard: Any = None
    rate_limiter: Any = None
    unique_jobs: Any = None
    clock: Callable[[], datetime] = utcnow
    rng: random.Random = field(default_factory=random.Random)
    settings: Settings = field(default_factory=get_settings)


@dataclass
class JobResult:
    status: str = "completed"
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Release:
    """on_error answer: requeue after ``delay`` seconds"""
    delay: int
    reason: str = ""


@dataclass
class Resolved:
    """on_error answer: the error was handled, finish with ``status``"""
    status: str = "completed"
    data: Dict[str, Any] = field(default_factory=dict)


JOB_TYPES: Dict[str, type] = {}


def register_job(cls):
    JOB_TYPES[cls.kind.value] = cls
    return cls


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class CalendarJob:
    """Base class for all calendar jobs.

    Subclasses implement ``handle``; the runner drives retries through
    ``on_error``, ``should_retry``, ``retry_after`` and ``failed``.
    """

    kind: JobKind

    def __init__(self, integration_id, options: Optional[Dict[str, Any]] = None,
                 attempts: int = 0, urgency: Optional[str] = None):
        self.integration_id = str(integration_id)
        self.options = dict(options or {})
        self.attempts = attempts
        self.urgency = Urgency(urgency) if urgency else None
        self.queue: Optional[str] = None
        self.state = JobState.QUEUED
        self.history: List[JobState] = [JobState.QUEUED]
        self._deadline: Optional[float] = None

    # ---- identity ----

    def params(self) -> Dict[str, Any]:
        return {"integration_id": self.integration_id, "options": self.options}

    def to_payload(self) -> CalendarJobPayload:
        params = self.params()
        if self.urgency is not None:
            params["urgency"] = self.urgency.value
        return CalendarJobPayload(kind=self.kind.value, params=params, attempts=self.attempts, queue=self.queue)

    def unique_key(self) -> Optional[str]:
        return None

    def concurrency_key(self) -> Optional[str]:
        return None

    def tags(self) -> List[str]:
        return [f"calendar_integration:{self.integration_id}", f"job:{self.kind.value}"]

    def display_name(self) -> str:
        return f"{type(self).__name__}[{self.integration_id}]"

    def __repr__(self):
        return f"<{self.display_name()} attempt={self.attempts} state={self.state.value}>"

    # ---- policy ----

    @property
    def policy(self):
        return retry_policy.policy_for(self.kind)

    def determine_urgency(self, db, now: datetime) -> Urgency:
        return Urgency.NORMAL

    def should_retry(self, error, db, ctx: JobContext) -> bool:
        if isinstance(error, TerminalSyncError):
            return False
        return not retry_policy.is_terminal_error(self.kind, error)

    def retry_after(self, attempt: int, ctx: JobContext) -> int:
        return retry_policy.compute_delay(self.kind, attempt, self.urgency or Urgency.NORMAL, ctx.rng)

    def rate_limit_release(self, ctx: JobContext) -> Release:
        delay = retry_policy.rate_limit_delay(self.kind, self.attempts, self.urgency or Urgency.NORMAL, ctx.rng)
        return Release(delay, "provider rate limit")

    def on_error(self, error, db, ctx: JobContext):
        return None

    def failed(self, error, db, ctx: JobContext):
        pass

    def handle(self, db, ctx: JobContext) -> JobResult:
        raise NotImplementedError

    # ---- state machine ----

    def start_clock(self, timeout: Optional[int] = None):
        self._deadline = time.monotonic() + (timeout or self.policy.timeout)
        self.state = JobState.QUEUED
        self.history = [JobState.QUEUED]

    def transition(self, state: JobState):
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise JobTimeout(
                f"{self.display_name()} exceeded {self.policy.timeout}s before {state.value}"
            )
        logger.debug(f"{self.display_name()}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def finish(self, state: JobState):
        self.state = state
        self.history.append(state)

    # ---- helpers ----

    def load_integration(self, db) -> CalendarIntegration:
        integration = db.get(CalendarIntegration, _uuid(self.integration_id))
        if integration is None:
            raise SkipJob(f"integration {self.integration_id} no longer exists")
        return integration

    def load_booking(self, db, booking_id) -> Optional[Booking]:
        if booking_id is None:
            return None
        return db.get(Booking, _uuid(booking_id))

    def call_provider(self, ctx: JobContext, integration, fn, *args, **kwargs):
        """Outbound provider call behind the shared rate limiter"""
        self.transition(JobState.CALLING_PROVIDER)
        if ctx.rate_limiter is not None:
            wait = ctx.rate_limiter.acquire(integration.provider, integration.id)
            if wait:
                raise ReleaseJob(wait, "local rate limit", consume_attempt=False)
        return fn(*args, **kwargs)

    def refresh_inline(self, integration, ctx: JobContext) -> bool:
        """One token refresh attempt from an error handler"""
        if not integration.refresh_token:
            return False
        try:
            refreshed = ctx.token_service.refresh_tokens(integration)
        except Exception as e:
            logger.warning(f"Inline token refresh for integration {integration.id} failed: {e}")
            return False
        if refreshed:
            logger.info(f"🔑 Refreshed tokens for integration {integration.id} after a token error")
        return bool(refreshed)

    def dispatch(self, ctx: JobContext, job: "CalendarJob", delay: int = 0, unique: bool = True) -> bool:
        if ctx.dispatcher is None:
            logger.warning(f"No dispatcher configured, dropping {job.display_name()}")
            return False
        return ctx.dispatcher.dispatch(job, delay=delay, unique=unique)


def job_from_payload(payload) -> CalendarJob:
    if not isinstance(payload, CalendarJobPayload):
        payload = CalendarJobPayload.model_validate(payload)
    cls = JOB_TYPES.get(payload.kind)
    if cls is None:
        raise ValueError(f"Unknown calendar job kind: {payload.kind}")
    job = cls(**payload.params)
    job.attempts = payload.attempts
    job.queue = payload.queue
    return job
