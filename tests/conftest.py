from __future__ import annotations

import os

# Settings are cached on first import, so the environment goes first
os.environ.setdefault("CALENDAR_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("COORDINATION_BACKEND", "memory")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")

import random  # noqa: E402
import uuid  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from calsync.models import Base, Booking, CalendarIntegration  # noqa: E402
from calsync.services.booking_service import BookingService  # noqa: E402
from calsync.services.calendar.base import ProviderAdapter  # noqa: E402
from calsync.services.calendar.registry import ProviderRegistry  # noqa: E402
from calsync.services.token_service import TokenService  # noqa: E402
from calsync.sync.concurrency import ConcurrencyGuard, UniqueJobRegistry  # noqa: E402
from calsync.sync.errors import EventNotFound  # noqa: E402
from calsync.sync.jobs import JobContext  # noqa: E402
from calsync.sync.queue import TaskQueue  # noqa: E402
from calsync.sync.rate_limiter import RateLimiter  # noqa: E402
from calsync.sync.runner import JobRunner  # noqa: E402

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def google_event(external_id, start, end, summary="Busy", **extra):
    item = {
        "id": external_id,
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": end.isoformat()},
    }
    item.update(extra)
    return item


class Ticker:
    """Manual monotonic clock for queues, limiters and uniqueness windows"""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class FakeAdapter(ProviderAdapter):
    """In-memory provider that records every remote call"""

    provider = "google"

    def __init__(self):
        self.events = {}
        self.calls = []
        self.errors = {}
        self.feed = []
        self.next_sync_token = "sync-token-2"
        self.sync_tokens = []
        self.full_snapshot = False
        self.refreshed_expiry = None
        self._seq = 0

    def _record(self, name):
        self.calls.append(name)
        error = self.errors.get(name)
        if error is not None:
            raise error

    def calls_to(self, name) -> int:
        return self.calls.count(name)

    def create_event(self, integration, booking):
        self._record("create_event")
        self._seq += 1
        external_id = f"ext-{self._seq}"
        self.events[external_id] = google_event(
            external_id, booking.scheduled_at, booking.end_time, integration.render_event_title(booking)
        )
        return external_id

    def update_event(self, integration, booking, external_id):
        self._record("update_event")
        if external_id not in self.events:
            raise EventNotFound(provider=self.provider)
        self.events[external_id] = google_event(
            external_id, booking.scheduled_at, booking.end_time, integration.render_event_title(booking)
        )
        return True

    def delete_event(self, integration, external_id):
        self._record("delete_event")
        return self.events.pop(external_id, None) is not None

    def get_event(self, integration, external_id):
        self._record("get_event")
        return self.events.get(external_id)

    def get_event_changes(self, integration, sync_token=None, options=None):
        self._record("get_event_changes")
        self.sync_tokens.append(sync_token)
        return {
            "items": list(self.feed),
            "next_sync_token": self.next_sync_token,
            "full_snapshot": self.full_snapshot,
        }

    def refresh_tokens(self, integration):
        self._record("refresh_tokens")
        if self.refreshed_expiry is not None:
            integration.token_expires_at = self.refreshed_expiry
        return True


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, event, integration, **data):
        self.sent.append((event, str(integration.id), data))

    def count(self, event) -> int:
        return sum(1 for name, _, _ in self.sent if name == event)


@pytest.fixture
def engine(tmp_path):
    # A file, not :memory:, so every session gets its own connection
    engine = create_engine(
        f"sqlite:///{tmp_path / 'calsync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ctx(session_factory, adapter, notifier, ticker):
    registry = ProviderRegistry(adapters={"google": adapter}, factories={})
    return JobContext(
        session_factory=session_factory,
        registry=registry,
        token_service=TokenService(registry),
        booking_service=BookingService(),
        notifier=notifier,
        guard=ConcurrencyGuard(),
        rate_limiter=RateLimiter(limits={"google": 1000}, window_seconds=60, clock=ticker),
        unique_jobs=UniqueJobRegistry(clock=ticker),
        clock=lambda: NOW,
        rng=random.Random(7),
    )


@pytest.fixture
def runner(ctx):
    return JobRunner(ctx)


@pytest.fixture
def queue(runner, ticker):
    return TaskQueue(clock=ticker).bind(runner)


@pytest.fixture
def drain(queue, ticker):
    """Run the queue until empty, jumping the clock over every backoff"""

    def _drain(rounds: int = 10):
        outcomes = []
        for _ in range(rounds):
            outcomes.extend(queue.run_pending())
            if not queue.pending_count:
                break
            ticker.advance(7200)
        return outcomes

    return _drain


@pytest.fixture
def make_integration(db):
    def _make(**overrides):
        values = {
            "user_id": uuid.uuid4(),
            "service_id": uuid.uuid4(),
            "provider": "google",
            "is_active": True,
            "sync_bookings": True,
            "sync_availability": True,
            "auto_block_external_events": True,
            "token_expires_at": NOW + timedelta(hours=3),
            "sync_settings": {},
            "notification_preferences": {},
        }
        tokens = {
            "access_token": overrides.pop("access_token", "access-token"),
            "refresh_token": overrides.pop("refresh_token", "refresh-token"),
        }
        values.update(overrides)
        integration = CalendarIntegration(**values)
        integration.access_token = tokens["access_token"]
        integration.refresh_token = tokens["refresh_token"]
        db.add(integration)
        db.commit()
        return integration

    return _make


@pytest.fixture
def make_booking(db):
    def _make(integration, **overrides):
        values = {
            "user_id": integration.user_id,
            "service_id": integration.service_id,
            "service_name": "Consultation",
            "booking_reference": f"BK-{uuid.uuid4().hex[:8].upper()}",
            "client_name": "Ada Lovelace",
            "client_email": "ada@example.com",
            "scheduled_at": NOW + timedelta(days=3),
            "duration_minutes": 60,
            "status": "confirmed",
            "total_amount": 5000,
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def event_payload():
    return google_event
