"""
In-process dispatcher for calendar jobs

Priority lanes (urgent, high, normal, low) plus a delay heap for backoff.
Used by tests and single-process deployments; Celery workers use
calsync.tasks.calendar_tasks.CeleryDispatcher with the same interface.
"""
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from calsync.sync.jobs.base import CalendarJob
from calsync.sync.retry_policy import LANE_ORDER, Urgency

logger = logging.getLogger(__name__)


class TaskQueue:
    def __init__(self, clock: Callable[[], float] = time.monotonic, poll_interval: float = 0.1):
        self.clock = clock
        self.runner = None
        self.unique_jobs = None
        self._lanes: Dict[Urgency, Deque[CalendarJob]] = {urgency: deque() for urgency in LANE_ORDER}
        self._delayed: List[Tuple[float, int, CalendarJob]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def bind(self, runner) -> "TaskQueue":
        """Attach the runner that executes jobs; the runner dispatches retries back here"""
        self.runner = runner
        self.unique_jobs = runner.ctx.unique_jobs
        runner.ctx.dispatcher = self
        return self

    # ---- dispatch ----

    def dispatch(self, job: CalendarJob, delay: int = 0, unique: bool = True) -> bool:
        """Queue ``job``; False when an identical job is still inside its uniqueness window"""
        key = job.unique_key() if unique else None
        if key and self.unique_jobs is not None:
            if not self.unique_jobs.claim(key, job.policy.unique_for):
                logger.info(f"Skipping duplicate {job.display_name()} ({key})")
                return False

        if self.runner is not None:
            self.runner.prepare(job)
        lane = job.urgency or Urgency.NORMAL

        with self._lock:
            if delay and delay > 0:
                heapq.heappush(self._delayed, (self.clock() + delay, next(self._seq), job))
            else:
                self._lanes[lane].append(job)
        logger.debug(f"Queued {job.display_name()} on {job.queue} (delay={delay}s)")
        return True

    # ---- consume ----

    def _promote_due(self):
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            self._lanes[job.urgency or Urgency.NORMAL].append(job)

    def next_job(self) -> Optional[CalendarJob]:
        with self._lock:
            self._promote_due()
            for urgency in LANE_ORDER:
                if self._lanes[urgency]:
                    return self._lanes[urgency].popleft()
        return None

    def run_pending(self, max_jobs: Optional[int] = None) -> list:
        """Run every job that is due now, returning the runner's outcomes"""
        if self.runner is None:
            raise RuntimeError("TaskQueue has no runner bound")
        outcomes = []
        while max_jobs is None or len(outcomes) < max_jobs:
            job = self.next_job()
            if job is None:
                break
            outcomes.append(self.runner.run(job))
        return outcomes

    def scheduled(self) -> List[Tuple[float, CalendarJob]]:
        """Delayed jobs as (seconds until due, job), soonest first"""
        now = self.clock()
        with self._lock:
            return [(due - now, job) for due, _, job in sorted(self._delayed, key=lambda item: item[:2])]

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(len(lane) for lane in self._lanes.values()) + len(self._delayed)

    # ---- background workers ----

    def start(self, workers: int = 1) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run, daemon=True, name=f"calendar-worker-{index}")
            for index in range(workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"🚀 Calendar task queue started with {workers} worker(s)")

    def stop(self) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=2.0)
        self._threads = []
        logger.info("🛑 Calendar task queue stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            job = self.next_job()
            if job is None:
                self._stop_event.wait(self._poll_interval)
                continue
            try:
                self.runner.run(job)
            except Exception:
                logger.exception(f"Calendar job {job.display_name()} crashed the worker loop")
