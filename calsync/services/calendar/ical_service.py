# calsync/services/calendar/ical_service.py
import hashlib
import logging
import os
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

import httpx
from icalendar import Calendar, Event

from calsync.config.settings import get_settings
from calsync.services.calendar.base import ProviderAdapter
from calsync.sync.errors import EventNotFound, ProviderError, RateLimitExceeded

logger = logging.getLogger(__name__)

PRODID = "-//calsync//booking calendar//EN"


class ICalService(ProviderAdapter):
    """Exports booking events as .ics files and reads a subscribed feed.

    A feed has no change cursor, so listings are full snapshots keyed by a
    content hash; an unchanged feed yields no items.
    """

    provider = "ical"

    def __init__(self, export_dir: Optional[str] = None, client: Optional[httpx.Client] = None):
        settings = get_settings()
        self.export_dir = export_dir or settings.ICAL_EXPORT_DIR
        self.client = client or httpx.Client(timeout=settings.ICAL_FETCH_TIMEOUT, follow_redirects=True)

    # ---- exported events ----

    def _path(self, integration, external_id: str) -> str:
        return os.path.join(self.export_dir, str(integration.id), f"{external_id}.ics")

    def _write(self, integration, booking, external_id: str):
        summary = self.event_summary(integration, booking)
        cal = Calendar()
        cal.add('prodid', PRODID)
        cal.add('version', '2.0')

        event = Event()
        event.add('uid', external_id)
        event.add('summary', summary['title'])
        event.add('description', summary['description'])
        event.add('dtstart', summary['start'])
        event.add('dtend', summary['end'])
        event.add('dtstamp', datetime.now(timezone.utc))
        cal.add_component(event)

        path = self._path(integration, external_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as fh:
            fh.write(cal.to_ical())

    def create_event(self, integration, booking) -> str:
        external_id = f"booking-{booking.id}-{uuid.uuid4().hex[:8]}"
        self._write(integration, booking, external_id)
        logger.info(f"Exported iCal event {external_id} for booking {booking.id}")
        return external_id

    def update_event(self, integration, booking, external_id: str) -> bool:
        if not os.path.exists(self._path(integration, external_id)):
            raise EventNotFound(f"iCal event {external_id} not found", provider=self.provider)
        self._write(integration, booking, external_id)
        return True

    def delete_event(self, integration, external_id: str) -> bool:
        path = self._path(integration, external_id)
        if not os.path.exists(path):
            raise EventNotFound(f"iCal event {external_id} does not exist", provider=self.provider)
        os.remove(path)
        return True

    def get_event(self, integration, external_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(integration, external_id)
        if os.path.exists(path):
            with open(path, 'rb') as fh:
                for item in _events_from_ical(fh.read()):
                    return item
        return None

    # ---- subscribed feed ----

    def get_event_changes(self, integration, sync_token: Optional[str] = None,
                          options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not integration.ical_url:
            return {'items': [], 'next_sync_token': sync_token, 'full_snapshot': False}

        try:
            response = self.client.get(integration.ical_url)
        except httpx.HTTPError as e:
            raise ProviderError(f"iCal feed fetch failed: {e}", provider=self.provider) from e
        if response.status_code == 429:
            raise RateLimitExceeded("rate limit exceeded fetching iCal feed", provider=self.provider)
        if response.status_code == 404:
            raise ProviderError("calendar_not_found: iCal feed returned 404", provider=self.provider, status_code=404)
        if response.status_code >= 400:
            raise ProviderError(f"iCal feed returned {response.status_code}", provider=self.provider,
                                status_code=response.status_code)

        digest = hashlib.sha256(response.content).hexdigest()
        if sync_token == digest:
            return {'items': [], 'next_sync_token': digest, 'full_snapshot': False}

        return {
            'items': list(_events_from_ical(response.content)),
            'next_sync_token': digest,
            'full_snapshot': True,
        }


def _time_field(value) -> Dict[str, str]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {'dateTime': value.isoformat()}
    if isinstance(value, date):
        return {'date': value.isoformat()}
    return {}


def _events_from_ical(content: bytes):
    """VEVENTs as Google-shaped dicts so the normalizer treats them alike"""
    cal = Calendar.from_ical(content)
    for component in cal.walk('VEVENT'):
        uid = str(component.get('UID') or '').strip()
        dtstart = component.get('DTSTART')
        if not uid or dtstart is None:
            continue
        dtend = component.get('DTEND')
        item = {
            'id': uid,
            'summary': str(component.get('SUMMARY')) if component.get('SUMMARY') else None,
            'description': str(component.get('DESCRIPTION')) if component.get('DESCRIPTION') else None,
            'start': _time_field(dtstart.dt),
            'transp': str(component.get('TRANSP') or 'OPAQUE'),
        }
        if dtend is not None:
            item['end'] = _time_field(dtend.dt)
        if str(component.get('STATUS') or '').upper() == 'CANCELLED':
            item['status'] = 'cancelled'
        yield item
