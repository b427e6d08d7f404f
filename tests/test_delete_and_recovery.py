import uuid

from calsync.models import BookingSyncStatus, CalendarEvent, PendingCleanup
from calsync.sync.errors import EventNotFound, ProviderError
from calsync.sync.jobs import DeleteCalendarEvent
from calsync.sync.rate_limiter import RateLimiter
from calsync.sync.recovery import sweep_pending_cleanups

from conftest import NOW


def _mirror(db, integration, booking, external_id="ext-1"):
    db.add(CalendarEvent(
        calendar_integration_id=integration.id, booking_id=booking.id, external_event_id=external_id,
        starts_at=booking.scheduled_at, ends_at=booking.end_time,
    ))
    db.commit()


def _mirrors(db, integration):
    db.expire_all()
    return db.query(CalendarEvent).filter_by(calendar_integration_id=integration.id).all()


def _status(db, booking):
    db.expire_all()
    return db.query(BookingSyncStatus).filter_by(booking_id=booking.id).first()


def test_delete_removes_the_remote_event_and_the_mirror(db, queue, drain, adapter, make_integration, make_booking):
    integration = make_integration()
    booking = make_booking(integration)
    adapter.events["ext-1"] = {"id": "ext-1"}
    _mirror(db, integration, booking)

    queue.dispatch(DeleteCalendarEvent(integration.id, "ext-1", booking_id=booking.id))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert outcome.data == {"already_deleted": False, "mirrors_removed": 1}
    assert "ext-1" not in adapter.events
    assert _mirrors(db, integration) == []
    status = _status(db, booking)
    assert status.calendar_event_deleted is True
    assert status.calendar_event_deleted_at == NOW


def test_delete_of_an_event_that_is_already_gone_succeeds(db, queue, drain, adapter, make_integration, make_booking):
    integration = make_integration()
    booking = make_booking(integration)
    _mirror(db, integration, booking)

    queue.dispatch(DeleteCalendarEvent(integration.id, "ext-1", booking_id=booking.id))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert outcome.data["already_deleted"] is True
    assert adapter.calls == ["delete_event", "get_event"]
    assert _mirrors(db, integration) == []


def test_deletion_check_waits_for_the_rate_limiter(db, ctx, queue, ticker, adapter, make_integration, make_booking):
    integration = make_integration()
    booking = make_booking(integration)
    _mirror(db, integration, booking)
    # Room for the delete call only
    ctx.rate_limiter = RateLimiter(limits={"google": 1}, window_seconds=60, clock=ticker)

    queue.dispatch(DeleteCalendarEvent(integration.id, "ext-1", booking_id=booking.id))
    [first] = queue.run_pending()

    assert first.status == "released"
    assert first.job.attempts == 0
    assert adapter.calls == ["delete_event"]
    assert len(_mirrors(db, integration)) == 1

    ctx.rate_limiter = RateLimiter(limits={"google": 10}, window_seconds=60, clock=ticker)
    ticker.advance(first.delay)
    [second] = queue.run_pending()

    assert second.status == "completed"
    assert second.data["already_deleted"] is True
    assert adapter.calls == ["delete_event", "delete_event", "get_event"]
    assert _mirrors(db, integration) == []


def test_provider_not_found_counts_as_deleted(db, queue, drain, adapter, make_integration, make_booking):
    integration = make_integration()
    booking = make_booking(integration)
    _mirror(db, integration, booking)
    adapter.errors["delete_event"] = EventNotFound(provider="google")

    queue.dispatch(DeleteCalendarEvent(integration.id, "ext-1", booking_id=booking.id))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert outcome.job.attempts == 1
    assert outcome.data["already_deleted"] is True
    assert _mirrors(db, integration) == []


def test_delete_runs_for_inactive_integrations(db, queue, drain, adapter, make_integration, make_booking):
    integration = make_integration(is_active=False)
    booking = make_booking(integration)
    adapter.events["ext-1"] = {"id": "ext-1"}
    _mirror(db, integration, booking)

    queue.dispatch(DeleteCalendarEvent(integration.id, "ext-1", booking_id=booking.id))

    assert [o.status for o in drain()] == ["completed"]
    assert adapter.calls_to("delete_event") == 1
    assert _mirrors(db, integration) == []


def test_failed_delete_leaves_a_cleanup_marker_that_the_sweep_finishes(
    db, queue, drain, adapter, notifier, make_integration, make_booking
):
    integration = make_integration()
    booking = make_booking(integration)
    adapter.events["ext-1"] = {"id": "ext-1"}
    _mirror(db, integration, booking)
    adapter.errors["delete_event"] = ProviderError("backend error 503", provider="google", status_code=503)

    queue.dispatch(DeleteCalendarEvent(integration.id, "ext-1", booking_id=booking.id))
    assert [o.status for o in drain()] == ["released", "released", "failed"]

    # The mirror never outlives the job, even when the remote event does
    assert _mirrors(db, integration) == []
    [marker] = db.query(PendingCleanup).all()
    assert marker.status == "pending"
    assert marker.external_event_id == "ext-1"
    assert marker.booking_id == booking.id
    assert _status(db, booking).calendar_deletion_failed is True
    assert notifier.count("deletion_failure") == 1
    db.expire_all()
    assert integration.sync_error_count == 1
    assert integration.is_active is True

    del adapter.errors["delete_event"]
    assert sweep_pending_cleanups(db, queue, NOW) == {"dispatched": 1, "abandoned": 0}
    assert [o.status for o in drain()] == ["completed"]

    db.expire_all()
    assert marker.status == "done"
    assert marker.attempts == 1
    assert "ext-1" not in adapter.events
    status = _status(db, booking)
    assert status.calendar_event_deleted is True
    assert status.calendar_deletion_failed is False
    # Sweep retries stay quiet
    assert notifier.count("deletion_failure") == 1


def test_sweep_abandons_exhausted_and_orphaned_markers(db, queue, make_integration):
    integration = make_integration()
    db.add_all([
        PendingCleanup(calendar_integration_id=integration.id, external_event_id="tired", attempts=5),
        PendingCleanup(calendar_integration_id=uuid.uuid4(), external_event_id="orphan"),
        PendingCleanup(calendar_integration_id=integration.id, external_event_id="fresh", attempts=1),
    ])
    db.commit()

    assert sweep_pending_cleanups(db, queue, NOW) == {"dispatched": 1, "abandoned": 2}

    statuses = {m.external_event_id: m.status for m in db.query(PendingCleanup).all()}
    assert statuses == {"tired": "abandoned", "orphan": "abandoned", "fresh": "pending"}
    job = queue.next_job()
    assert isinstance(job, DeleteCalendarEvent)
    assert job.external_event_id == "fresh"
    assert job.options == {"notify_failure": False}
