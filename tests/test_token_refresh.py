from datetime import timedelta

from calsync.models import CalendarIntegration
from calsync.services.integration_service import record_failure
from calsync.sync.errors import TokenRefreshError
from calsync.sync.jobs import RefreshCalendarTokens, refresh_expiring_tokens
from calsync.sync.retry_policy import Urgency

from conftest import NOW


def test_refresh_schedules_the_next_run_an_hour_before_expiry(db, queue, adapter, make_integration):
    integration = make_integration(token_expires_at=NOW + timedelta(minutes=20), sync_error_count=2)
    adapter.refreshed_expiry = NOW + timedelta(hours=2)

    queue.dispatch(RefreshCalendarTokens(integration.id))
    [outcome] = queue.run_pending()

    assert outcome.status == "completed"
    assert outcome.data["next_refresh_in"] == 3600
    [(due_in, follow_up)] = queue.scheduled()
    assert due_in == 3600
    assert isinstance(follow_up, RefreshCalendarTokens)
    assert follow_up.integration_id == str(integration.id)

    db.expire_all()
    assert integration.token_expires_at == NOW + timedelta(hours=2)
    assert integration.sync_error_count == 0
    assert integration.needs_reauthorization is False


def test_short_lived_tokens_are_not_rescheduled(queue, adapter, make_integration):
    integration = make_integration()
    adapter.refreshed_expiry = NOW + timedelta(minutes=62)

    queue.dispatch(RefreshCalendarTokens(integration.id))
    [outcome] = queue.run_pending()

    assert outcome.status == "completed"
    assert outcome.data["next_refresh_in"] is None
    assert queue.pending_count == 0


def test_missing_refresh_token_requires_reauthorization(db, queue, drain, adapter, notifier, make_integration):
    integration = make_integration(refresh_token=None)

    queue.dispatch(RefreshCalendarTokens(integration.id))
    [outcome] = drain()

    assert outcome.status == "reauthorization_required"
    assert adapter.calls == []
    assert notifier.count("reauthorization_required") == 1

    db.expire_all()
    assert integration.is_active is False
    assert integration.needs_reauthorization is True
    assert integration.sync_error_count == 1


def test_revoked_grant_trips_the_token_breaker(db, runner, adapter, notifier, make_integration):
    integration = make_integration()
    adapter.errors["refresh_tokens"] = TokenRefreshError("invalid_grant: Token has been expired or revoked")

    statuses = [runner.run(RefreshCalendarTokens(integration.id)).status for _ in range(6)]

    assert statuses == ["failed"] * 5 + ["skipped"]
    assert adapter.calls_to("refresh_tokens") == 5
    assert notifier.count("integration_disabled") == 1
    assert notifier.count("reauthorization_required") == 5

    db.expire_all()
    assert integration.sync_error_count == 5
    assert integration.is_active is False
    assert integration.disabled_at == NOW


def test_sweep_dispatches_urgent_refreshes_for_expiring_tokens(db, queue, make_integration):
    expiring = make_integration(token_expires_at=NOW + timedelta(hours=1))
    make_integration(token_expires_at=NOW + timedelta(hours=3))
    make_integration(token_expires_at=NOW + timedelta(hours=1), is_active=False)
    make_integration(token_expires_at=NOW + timedelta(hours=1), refresh_token=None)

    assert refresh_expiring_tokens(db, queue, NOW) == {"dispatched": 1, "errors": 0}
    # Already queued, so a second sweep adds nothing
    assert refresh_expiring_tokens(db, queue, NOW) == {"dispatched": 0, "errors": 0}

    job = queue.next_job()
    assert job.integration_id == str(expiring.id)
    assert job.urgency == Urgency.URGENT
    assert job.queue == "calendar-tokens-urgent"
    assert job.options["schedule_next"] is False


def test_record_failure_trips_once_at_the_threshold(notifier):
    integration = CalendarIntegration(provider="google", is_active=True, sync_error_count=0)

    tripped = [record_failure(integration, Exception("boom"), threshold=10, notifier=notifier, now=NOW)
               for _ in range(12)]

    assert tripped.index(True) == 9
    assert tripped.count(True) == 1
    assert integration.sync_error_count == 12
    assert integration.is_active is False
    assert notifier.count("integration_disabled") == 1
