# calsync/services/calendar/google_calendar_service.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.config.settings import get_settings
from calsync.schemas.calendar_events import WebhookNotification
from calsync.services.calendar.base import ProviderAdapter, tokens_match
from calsync.sync.errors import EventNotFound, ProviderError, RateLimitExceeded, TokenRefreshError

logger = logging.getLogger(__name__)


class GoogleCalendarService(ProviderAdapter):
    provider = "google"
    SCOPES = ['https://www.googleapis.com/auth/calendar']

    def __init__(self, service_factory=None):
        settings = get_settings()
        self.client_config = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "token_uri": settings.GOOGLE_TOKEN_URI,
        }
        self._service_factory = service_factory

    # ---- credentials ----

    def _credentials(self, integration) -> Credentials:
        return Credentials(
            token=integration.access_token,
            refresh_token=integration.refresh_token,
            token_uri=self.client_config['token_uri'],
            client_id=self.client_config['client_id'],
            client_secret=self.client_config['client_secret'],
            scopes=self.SCOPES,
        )

    def _service(self, integration):
        if self._service_factory is not None:
            return self._service_factory(integration)
        return build('calendar', 'v3', credentials=self._credentials(integration), cache_discovery=False)

    def refresh_tokens(self, integration) -> bool:
        """Refresh the access token using the stored refresh token"""
        credentials = self._credentials(integration)
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            # str(e) carries Google's error code, e.g. "invalid_grant: Token has been expired or revoked."
            raise TokenRefreshError(str(e), provider=self.provider) from e

        integration.access_token = credentials.token
        if credentials.refresh_token:
            integration.refresh_token = credentials.refresh_token
        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        integration.token_expires_at = expiry or datetime.now(timezone.utc) + timedelta(hours=1)
        return True

    # ---- events ----

    def _event_body(self, integration, booking) -> Dict[str, Any]:
        summary = self.event_summary(integration, booking)
        body = {
            'summary': summary['title'],
            'description': summary['description'],
            'start': {'dateTime': summary['start'].isoformat(), 'timeZone': 'UTC'},
            'end': {'dateTime': summary['end'].isoformat(), 'timeZone': 'UTC'},
            'extendedProperties': {'private': {'booking_id': str(booking.id)}},
        }
        if booking.client_email:
            body['attendees'] = [{'email': booking.client_email}]
        return body

    def create_event(self, integration, booking) -> str:
        try:
            event = self._service(integration).events().insert(
                calendarId=integration.calendar_id or 'primary',
                body=self._event_body(integration, booking),
            ).execute()
        except HttpError as e:
            raise self._translate(e) from e
        logger.info(f"Created Google event {event['id']} for booking {booking.id}")
        return event['id']

    def update_event(self, integration, booking, external_id: str) -> bool:
        try:
            self._service(integration).events().patch(
                calendarId=integration.calendar_id or 'primary',
                eventId=external_id,
                body=self._event_body(integration, booking),
            ).execute()
        except HttpError as e:
            raise self._translate(e) from e
        return True

    def delete_event(self, integration, external_id: str) -> bool:
        try:
            self._service(integration).events().delete(
                calendarId=integration.calendar_id or 'primary',
                eventId=external_id,
            ).execute()
        except HttpError as e:
            raise self._translate(e) from e
        return True

    def get_event(self, integration, external_id: str) -> Optional[Dict[str, Any]]:
        try:
            event = self._service(integration).events().get(
                calendarId=integration.calendar_id or 'primary',
                eventId=external_id,
            ).execute()
        except HttpError as e:
            error = self._translate(e)
            if isinstance(error, EventNotFound):
                return None
            raise error from e
        if event.get('status') == 'cancelled':
            return None
        return event

    def get_event_changes(self, integration, sync_token: Optional[str] = None,
                          options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Incremental listing with a sync token, or a windowed full listing"""
        options = options or {}
        params = {
            'calendarId': integration.calendar_id or 'primary',
            'maxResults': options.get('max_results', 100),
            'showDeleted': options.get('show_deleted', True),
            'singleEvents': True,
        }
        if sync_token:
            params['syncToken'] = sync_token
        else:
            if options.get('time_min'):
                params['timeMin'] = options['time_min'].isoformat()
            if options.get('time_max'):
                params['timeMax'] = options['time_max'].isoformat()

        events = self._service(integration).events()
        items, page_token = [], None
        try:
            while True:
                response = events.list(pageToken=page_token, **params).execute()
                items.extend(response.get('items', []))
                page_token = response.get('nextPageToken')
                if not page_token:
                    break
        except HttpError as e:
            if sync_token and e.resp.status == 410:
                logger.warning(f"Sync token for integration {integration.id} expired, doing a full listing")
                return self.get_event_changes(integration, None, options)
            raise self._translate(e) from e

        return {
            'items': items,
            'next_sync_token': response.get('nextSyncToken'),
            'full_snapshot': False,
        }

    # ---- webhooks ----

    def verify_webhook_signature(self, integration, payload, signature) -> bool:
        return tokens_match(integration.get_setting('webhook_token'), signature)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookNotification:
        """Google push carries headers only; the changes have to be fetched"""
        state = payload.get('X-Goog-Resource-State') or payload.get('resource_state')
        message_number = payload.get('X-Goog-Message-Number') or payload.get('message_number')
        return WebhookNotification(
            webhook_id=str(message_number) if message_number else None,
            resource_state=state,
            requires_fetch=state == 'exists',
            changes=[],
        )

    def _translate(self, error: HttpError) -> Exception:
        status = error.resp.status
        reason = error.reason if hasattr(error, 'reason') else str(error)
        message = f"Google Calendar API error {status}: {reason}"
        if status in (404, 410):
            return EventNotFound(f"event not found ({message})", provider=self.provider, status_code=status)
        if status == 429 or (status == 403 and 'rate' in str(reason).lower()):
            return RateLimitExceeded(f"rate limit exceeded ({message})", provider=self.provider, status_code=status)
        if status == 401:
            return ProviderError(f"unauthorized ({message})", provider=self.provider, status_code=status)
        if status == 403:
            return ProviderError(f"forbidden ({message})", provider=self.provider, status_code=status)
        return ProviderError(message, provider=self.provider, status_code=status)
