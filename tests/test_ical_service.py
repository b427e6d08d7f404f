import uuid
from datetime import timedelta

import httpx
import pytest
from icalendar import Calendar, Event

from calsync.models import Booking, CalendarIntegration
from calsync.services.calendar.ical_service import ICalService
from calsync.sync.errors import EventNotFound, ProviderError, RateLimitExceeded
from calsync.sync.normalizer import normalize_event

from conftest import NOW

FEED_URL = "https://calendar.example.com/feed.ics"


def _feed(*events) -> bytes:
    cal = Calendar()
    cal.add('prodid', '-//example//feed//EN')
    cal.add('version', '2.0')
    for uid, start, extra in events:
        event = Event()
        event.add('uid', uid)
        event.add('summary', f"Event {uid}")
        event.add('dtstart', start)
        event.add('dtend', start + timedelta(hours=1))
        for key, value in extra.items():
            event.add(key, value)
        cal.add_component(event)
    return cal.to_ical()


def _service(tmp_path, handler=None):
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200, content=b"")))
    return ICalService(export_dir=str(tmp_path), client=httpx.Client(transport=transport))


@pytest.fixture
def integration():
    return CalendarIntegration(id=uuid.uuid4(), provider="ical", ical_url=FEED_URL)


@pytest.fixture
def booking():
    return Booking(
        id=uuid.uuid4(), service_name="Consultation", client_name="Ada Lovelace",
        booking_reference="BK-1", scheduled_at=NOW + timedelta(days=3), duration_minutes=60,
    )


def test_exported_event_can_be_read_back_and_deleted(tmp_path, integration, booking):
    service = _service(tmp_path)

    external_id = service.create_event(integration, booking)
    item = service.get_event(integration, external_id)

    assert item["id"] == external_id
    assert item["summary"] == "Booking: Consultation"
    assert "Reference: BK-1" in item["description"]
    assert normalize_event(item).starts_at == booking.scheduled_at
    assert normalize_event(item).ends_at == booking.scheduled_at + timedelta(hours=1)

    assert service.delete_event(integration, external_id) is True
    assert service.get_event(integration, external_id) is None
    with pytest.raises(EventNotFound):
        service.delete_event(integration, external_id)


def test_updating_a_missing_export_is_not_found(tmp_path, integration, booking):
    with pytest.raises(EventNotFound):
        _service(tmp_path).update_event(integration, booking, "booking-nope")


def test_feed_is_a_snapshot_until_its_content_changes(tmp_path, integration):
    content = _feed(
        ("busy", NOW, {}),
        ("free", NOW + timedelta(hours=2), {"transp": "TRANSPARENT"}),
        ("off", NOW + timedelta(hours=4), {"status": "CANCELLED"}),
    )
    service = _service(tmp_path, lambda request: httpx.Response(200, content=content))

    first = service.get_event_changes(integration)
    assert first["full_snapshot"] is True
    items = {item["id"]: item for item in first["items"]}
    assert set(items) == {"busy", "free", "off"}
    assert normalize_event(items["busy"]).blocks_booking is True
    assert normalize_event(items["free"]).blocks_booking is False
    assert items["off"]["status"] == "cancelled"

    again = service.get_event_changes(integration, first["next_sync_token"])
    assert again == {"items": [], "next_sync_token": first["next_sync_token"], "full_snapshot": False}


def test_feed_without_url_has_nothing_to_report(tmp_path):
    integration = CalendarIntegration(id=uuid.uuid4(), provider="ical")
    result = _service(tmp_path).get_event_changes(integration, "token")
    assert result == {"items": [], "next_sync_token": "token", "full_snapshot": False}


@pytest.mark.parametrize(
    "status,error,fragment",
    [
        (404, ProviderError, "calendar_not_found"),
        (429, RateLimitExceeded, "rate limit"),
        (500, ProviderError, "500"),
    ],
)
def test_feed_http_errors_are_classified(tmp_path, integration, status, error, fragment):
    service = _service(tmp_path, lambda request: httpx.Response(status))
    with pytest.raises(error) as excinfo:
        service.get_event_changes(integration)
    assert fragment in str(excinfo.value)
