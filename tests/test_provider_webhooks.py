import uuid

import pytest

from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import ChangeType
from calsync.services.calendar.google_calendar_service import GoogleCalendarService
from calsync.services.calendar.outlook_service import OutlookCalendarService


def _integration(provider, **settings):
    return CalendarIntegration(id=uuid.uuid4(), provider=provider, sync_settings=settings)


@pytest.fixture
def google():
    return GoogleCalendarService(service_factory=lambda integration: None)


@pytest.fixture
def outlook():
    return OutlookCalendarService(http=object())


def _graph(*items, **extra):
    return {"value": list(items), **extra}


def _graph_item(event_id, change_type="updated", subscription="sub-1", **extra):
    return {"subscriptionId": subscription, "changeType": change_type, "resourceData": {"id": event_id}, **extra}


# ---- Google ----

def test_google_exists_push_requires_a_fetch(google):
    notification = google.parse_webhook({"X-Goog-Resource-State": "exists", "X-Goog-Message-Number": 41})

    assert notification.webhook_id == "41"
    assert notification.resource_state == "exists"
    assert notification.requires_fetch is True
    assert notification.changes == []


def test_google_sync_handshake_needs_no_fetch(google):
    notification = google.parse_webhook({"resource_state": "sync", "message_number": "1"})

    assert notification.resource_state == "sync"
    assert notification.requires_fetch is False


def test_google_push_without_message_number_has_no_id(google):
    assert google.parse_webhook({"X-Goog-Resource-State": "exists"}).webhook_id is None


@pytest.mark.parametrize(
    "signature,valid",
    [("channel-secret", True), ("channel-secreT", False), ("", False), (None, False)],
)
def test_google_channel_token_must_match(google, signature, valid):
    integration = _integration("google", webhook_token="channel-secret")
    assert google.verify_webhook_signature(integration, {}, signature) is valid


def test_google_channel_without_stored_token_is_rejected(google):
    assert google.verify_webhook_signature(_integration("google"), {}, "anything") is False


# ---- Outlook ----

def test_outlook_notifications_on_one_subscription_get_distinct_ids(outlook):
    first = outlook.parse_webhook(_graph(_graph_item("e1")))
    second = outlook.parse_webhook(_graph(_graph_item("e2")))

    assert first.webhook_id is not None
    assert second.webhook_id is not None
    assert first.webhook_id != second.webhook_id
    assert "sub-1" not in (first.webhook_id, second.webhook_id)
    # A redelivery of the same body keeps its id
    assert outlook.parse_webhook(_graph(_graph_item("e1"))).webhook_id == first.webhook_id


def test_outlook_prefers_the_notification_ids(outlook):
    assert outlook.parse_webhook(_graph(_graph_item("e1"), **{"@odata.id": "batch-9"})).webhook_id == "batch-9"
    assert outlook.parse_webhook(_graph(_graph_item("e1", id="n-3"))).webhook_id == "n-3"


def test_outlook_changes_carry_type_and_resource(outlook):
    notification = outlook.parse_webhook(_graph(
        _graph_item("e1", change_type="Created"),
        _graph_item("e2", change_type="deleted"),
        _graph_item("e3", change_type="missed"),
        {"subscriptionId": "sub-1", "changeType": "updated", "resourceData": {}},
    ))

    assert [(c.external_id, c.change_type) for c in notification.changes] == [
        ("e1", ChangeType.CREATED),
        ("e2", ChangeType.DELETED),
    ]
    # Graph only sends the id, so the event has to be fetched per change
    assert all(c.data is None for c in notification.changes)
    assert notification.requires_fetch is False


def test_outlook_empty_notification_has_no_id(outlook):
    notification = outlook.parse_webhook({"value": []})
    assert notification.webhook_id is None
    assert notification.changes == []


@pytest.mark.parametrize("signature,valid", [("state-secret", True), ("other", False), (None, False)])
def test_outlook_client_state_must_match(outlook, signature, valid):
    integration = _integration("outlook", client_state="state-secret")
    assert outlook.verify_webhook_signature(integration, {}, signature) is valid
