from datetime import timedelta

from calsync.models import Booking, BookingSyncStatus, CalendarEvent, CalendarSyncJob, ConflictReview
from calsync.services.calendar.google_calendar_service import GoogleCalendarService
from calsync.sync.concurrency import event_key
from calsync.sync.errors import RateLimitExceeded
from calsync.sync.jobs import ProcessCalendarWebhook

from conftest import NOW


def _records(db, integration):
    db.expire_all()
    return (
        db.query(CalendarSyncJob)
        .filter_by(calendar_integration_id=integration.id, job_type="webhook_sync")
        .order_by(CalendarSyncJob.created_at, CalendarSyncJob.status)
        .all()
    )


def test_duplicate_webhooks_are_recorded_but_not_reapplied(db, queue, drain, ticker, adapter, event_payload, make_integration):
    integration = make_integration()
    adapter.events["ext-1"] = event_payload("ext-1", NOW + timedelta(days=1), NOW + timedelta(days=1, hours=1))
    payload = {"id": "msg-1", "events": [{"id": "ext-1", "change_type": "updated"}]}

    queue.dispatch(ProcessCalendarWebhook(integration.id, payload))
    [first] = drain()
    assert first.status == "completed"
    assert first.data["created"] == 1
    assert adapter.calls == ["get_event"]

    # Same delivery again once the in-flight uniqueness window has passed
    ticker.advance(301)
    queue.dispatch(ProcessCalendarWebhook(integration.id, payload))
    [second] = drain()
    assert second.status == "duplicate_skipped"
    assert adapter.calls == ["get_event"]

    assert sorted(r.status for r in _records(db, integration)) == ["completed", "duplicate_skipped"]
    [mirror] = db.query(CalendarEvent).filter_by(external_event_id="ext-1").all()
    assert mirror.calendar_integration_id == integration.id


def test_failed_attempt_does_not_block_its_retry(db, queue, ticker, adapter, event_payload, make_integration):
    integration = make_integration()
    adapter.events["ext-1"] = event_payload("ext-1", NOW + timedelta(days=1), NOW + timedelta(days=1, hours=1))
    adapter.errors["get_event"] = RateLimitExceeded(provider="google")
    payload = {"id": "msg-1", "events": [{"id": "ext-1", "change_type": "updated"}]}

    queue.dispatch(ProcessCalendarWebhook(integration.id, payload))
    [first] = queue.run_pending()
    assert first.status == "released"
    # Webhook base delay plus the rate limit penalty
    assert 90 <= first.delay <= 105

    del adapter.errors["get_event"]
    ticker.advance(7200)
    [second] = queue.run_pending()

    assert second.status == "completed"
    assert second.job.attempts == 2
    assert sorted(r.status for r in _records(db, integration)) == ["completed", "failed"]


def test_invalid_signature_fails_without_retry(db, queue, drain, adapter, make_integration):
    integration = make_integration()
    adapter.verify_webhook_signature = lambda integration, payload, signature: False
    payload = {"id": "msg-1", "events": [{"id": "ext-1", "change_type": "updated"}]}

    queue.dispatch(ProcessCalendarWebhook(integration.id, payload, signature="bad"))
    [outcome] = drain()

    assert outcome.status == "failed"
    assert outcome.job.attempts == 1
    assert adapter.calls_to("get_event") == 0
    [record] = _records(db, integration)
    assert record.status == "failed"
    assert "signature" in record.error_message
    assert integration.sync_error_count == 1


def test_webhook_for_inactive_integration_is_skipped(db, queue, drain, adapter, make_integration):
    integration = make_integration(is_active=False)
    payload = {"id": "msg-1", "events": [{"id": "ext-1", "change_type": "updated"}]}

    queue.dispatch(ProcessCalendarWebhook(integration.id, payload))

    assert [o.status for o in drain()] == ["skipped"]
    assert adapter.calls == []
    assert _records(db, integration) == []


def _overlapping(event_payload, booking, external_id="ext-7", change_type="created"):
    item = event_payload(
        external_id,
        booking.scheduled_at + timedelta(minutes=30),
        booking.scheduled_at + timedelta(minutes=90),
        summary="Dentist",
    )
    item["change_type"] = change_type
    return item


def test_cancel_strategy_cancels_the_overlapped_booking(db, queue, drain, adapter, notifier, event_payload,
                                                        make_integration, make_booking):
    integration = make_integration(sync_settings={"conflict_resolution": "cancel_booking"})
    booking = make_booking(integration)
    payload = {"id": "msg-1", "events": [_overlapping(event_payload, booking)]}

    queue.dispatch(ProcessCalendarWebhook(integration.id, payload))
    [outcome] = drain()

    assert outcome.status == "completed"
    [conflict] = outcome.data["conflicts"]
    assert conflict["booking_id"] == str(booking.id)
    assert conflict["overlap_minutes"] == 30
    assert conflict["severity"] == "medium"
    # The payload carried the event, so nothing had to be fetched
    assert adapter.calls == []
    assert notifier.count("conflict") == 1

    db.expire_all()
    booking = db.get(Booking, booking.id)
    assert booking.status == "cancelled"
    assert booking.auto_cancelled is True
    assert booking.conflict_event_id == "ext-7"
    [record] = _records(db, integration)
    assert record.job_data["conflict_actions"] == ["cancelled"]


def test_manual_review_is_resolved_when_the_event_is_deleted(db, queue, drain, ticker, event_payload,
                                                             make_integration, make_booking):
    integration = make_integration()
    booking = make_booking(integration)

    queue.dispatch(ProcessCalendarWebhook(integration.id, {"id": "msg-1", "events": [_overlapping(event_payload, booking)]}))
    assert [o.status for o in drain()] == ["completed"]

    db.expire_all()
    review = db.query(ConflictReview).one()
    assert review.status == "open"
    status = db.query(BookingSyncStatus).filter_by(booking_id=booking.id).one()
    assert status.conflict_detected is True

    deleted = {"id": "msg-2", "events": [{"id": "ext-7", "change_type": "deleted"}]}
    queue.dispatch(ProcessCalendarWebhook(integration.id, deleted))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert outcome.data["deleted"] == 1
    db.expire_all()
    assert review.status == "resolved"
    assert status.conflict_detected is False
    assert db.query(CalendarEvent).filter_by(external_event_id="ext-7").count() == 0
    assert db.get(Booking, booking.id).status == "confirmed"


# ---- fetched changes ----

def _google_push(adapter, state="exists", number="41"):
    """Route the fake adapter's webhook parsing through the Google parser"""
    adapter.parse_webhook = GoogleCalendarService().parse_webhook
    return {"X-Goog-Resource-State": state, "X-Goog-Message-Number": number}


def test_exists_push_fetches_from_the_stored_sync_token(db, queue, drain, adapter, event_payload, make_integration):
    integration = make_integration(sync_settings={"sync_token": "tok-1"})
    adapter.feed = [event_payload("ext-a", NOW + timedelta(days=1), NOW + timedelta(days=1, hours=1))]
    adapter.next_sync_token = "tok-2"

    queue.dispatch(ProcessCalendarWebhook(integration.id, _google_push(adapter)))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert outcome.data["created"] == 1
    assert adapter.sync_tokens == ["tok-1"]
    db.expire_all()
    assert integration.get_setting("sync_token") == "tok-2"
    [record] = _records(db, integration)
    assert record.webhook_id == "41"
    assert record.job_data["resource_state"] == "exists"


def test_sync_handshake_push_fetches_nothing(db, queue, drain, adapter, make_integration):
    integration = make_integration(sync_settings={"sync_token": "tok-1"})

    queue.dispatch(ProcessCalendarWebhook(integration.id, _google_push(adapter, state="sync", number="1")))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert outcome.data["processed"] == 0
    assert adapter.calls == []
    db.expire_all()
    assert integration.get_setting("sync_token") == "tok-1"


def test_released_batch_keeps_the_old_sync_token(db, ctx, queue, ticker, adapter, event_payload, make_integration,
                                                 monkeypatch):
    monkeypatch.setattr("calsync.sync.changes.GUARD_WAIT_SECONDS", 0.01)
    integration = make_integration(sync_settings={"sync_token": "tok-1"})
    adapter.feed = [
        event_payload("ext-a", NOW + timedelta(days=1), NOW + timedelta(days=1, hours=1)),
        event_payload("ext-b", NOW + timedelta(days=2), NOW + timedelta(days=2, hours=1)),
    ]
    adapter.next_sync_token = "tok-2"

    queue.dispatch(ProcessCalendarWebhook(integration.id, _google_push(adapter)))
    # Another job is working on ext-b
    with ctx.guard.hold(event_key(integration.id, "ext-b")):
        [first] = queue.run_pending()

    assert first.status == "released"
    assert first.job.attempts == 0
    db.expire_all()
    assert integration.get_setting("sync_token") == "tok-1"
    assert {m.external_event_id for m in db.query(CalendarEvent).all()} == {"ext-a"}

    ticker.advance(60)
    [second] = queue.run_pending()

    assert second.status == "completed"
    assert adapter.sync_tokens == ["tok-1", "tok-1"]
    db.expire_all()
    assert integration.get_setting("sync_token") == "tok-2"
    assert {m.external_event_id for m in db.query(CalendarEvent).all()} == {"ext-a", "ext-b"}


# ---- breaker ----

def test_repeated_webhook_failures_trip_the_breaker_at_ten(db, runner, adapter, notifier, make_integration):
    integration = make_integration()
    adapter.verify_webhook_signature = lambda integration, payload, signature: False
    payload = {"id": "msg-1", "events": [{"id": "ext-1", "change_type": "updated"}]}

    outcomes = [runner.run(ProcessCalendarWebhook(integration.id, payload, signature="bad")) for _ in range(11)]

    assert [o.status for o in outcomes] == ["failed"] * 10 + ["skipped"]
    assert notifier.count("integration_disabled") == 1
    db.expire_all()
    assert integration.is_active is False
    assert integration.sync_error_count == 10
    assert [r.status for r in _records(db, integration)] == ["failed"] * 10


def test_notify_only_sends_one_notice_per_conflict(db, queue, drain, notifier, event_payload,
                                                   make_integration, make_booking):
    integration = make_integration(sync_settings={"conflict_resolution": "notify_only"})
    booking = make_booking(integration)

    queue.dispatch(ProcessCalendarWebhook(integration.id, {"id": "msg-1", "events": [_overlapping(event_payload, booking)]}))
    [outcome] = drain()

    assert outcome.status == "completed"
    assert notifier.count("conflict") == 1
    [(_, _, data)] = [sent for sent in notifier.sent if sent[0] == "conflict"]
    assert data["conflict"]["booking_id"] == str(booking.id)
    [record] = _records(db, integration)
    assert record.job_data["conflict_actions"] == ["notified"]
    db.expire_all()
    assert db.get(Booking, booking.id).status == "confirmed"
