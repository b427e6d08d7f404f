# calsync/services/calendar/outlook_service.py
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

import msal
import requests

from calsync.config.settings import get_settings
from calsync.schemas.calendar_events import ChangeNotification, ChangeType, WebhookNotification
from calsync.services.calendar.base import ProviderAdapter, tokens_match
from calsync.sync.errors import EventNotFound, ProviderError, RateLimitExceeded, TokenRefreshError

logger = logging.getLogger(__name__)


class OutlookCalendarService(ProviderAdapter):
    provider = "outlook"
    SCOPES = ['Calendars.ReadWrite']
    AUTHORITY = 'https://login.microsoftonline.com/common'
    GRAPH_ENDPOINT = 'https://graph.microsoft.com/v1.0'
    REQUEST_TIMEOUT = 30

    def __init__(self, http=None):
        settings = get_settings()
        self.client_id = settings.MICROSOFT_CLIENT_ID
        self.client_secret = settings.MICROSOFT_CLIENT_SECRET
        self.http = http or requests.Session()

    # ---- auth ----

    def _app(self) -> msal.ConfidentialClientApplication:
        return msal.ConfidentialClientApplication(
            self.client_id,
            authority=self.AUTHORITY,
            client_credential=self.client_secret
        )

    def refresh_tokens(self, integration) -> bool:
        """Refresh the access token through MSAL"""
        result = self._app().acquire_token_by_refresh_token(
            refresh_token=integration.refresh_token,
            scopes=self.SCOPES
        )

        if "error" in result:
            raise TokenRefreshError(
                f"{result['error']}: {result.get('error_description')}", provider=self.provider
            )

        integration.access_token = result['access_token']
        if result.get('refresh_token'):
            integration.refresh_token = result['refresh_token']
        integration.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=result.get('expires_in', 3600))
        return True

    def _headers(self, integration) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {integration.access_token}",
            'Content-Type': 'application/json',
            'Prefer': 'outlook.timezone="UTC"',
        }

    def _events_url(self, integration) -> str:
        calendar_id = integration.calendar_id
        if not calendar_id or calendar_id == 'primary':
            return f"{self.GRAPH_ENDPOINT}/me/events"
        return f"{self.GRAPH_ENDPOINT}/me/calendars/{calendar_id}/events"

    def _request(self, method: str, url: str, integration, **kwargs) -> requests.Response:
        response = self.http.request(
            method, url, headers=self._headers(integration), timeout=self.REQUEST_TIMEOUT, **kwargs
        )
        if response.status_code >= 400:
            raise self._translate(response)
        return response

    # ---- events ----

    def _event_body(self, integration, booking) -> Dict[str, Any]:
        summary = self.event_summary(integration, booking)
        body = {
            'subject': summary['title'],
            'body': {'contentType': 'text', 'content': summary['description']},
            'start': {'dateTime': summary['start'].strftime('%Y-%m-%dT%H:%M:%S'), 'timeZone': 'UTC'},
            'end': {'dateTime': summary['end'].strftime('%Y-%m-%dT%H:%M:%S'), 'timeZone': 'UTC'},
        }
        if booking.client_email:
            body['attendees'] = [{
                'emailAddress': {'address': booking.client_email, 'name': booking.client_name},
                'type': 'required',
            }]
        return body

    def create_event(self, integration, booking) -> str:
        response = self._request('POST', self._events_url(integration), integration,
                                 json=self._event_body(integration, booking))
        event_id = response.json()['id']
        logger.info(f"Created Outlook event {event_id} for booking {booking.id}")
        return event_id

    def update_event(self, integration, booking, external_id: str) -> bool:
        self._request('PATCH', f"{self.GRAPH_ENDPOINT}/me/events/{external_id}", integration,
                      json=self._event_body(integration, booking))
        return True

    def delete_event(self, integration, external_id: str) -> bool:
        response = self._request('DELETE', f"{self.GRAPH_ENDPOINT}/me/events/{external_id}", integration)
        return response.status_code in (200, 204)

    def get_event(self, integration, external_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._request('GET', f"{self.GRAPH_ENDPOINT}/me/events/{external_id}", integration)
        except EventNotFound:
            return None
        event = response.json()
        if event.get('isCancelled'):
            return None
        return event

    def get_event_changes(self, integration, sync_token: Optional[str] = None,
                          options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """calendarView delta query; the deltaLink is the sync token"""
        options = options or {}
        if sync_token:
            url, params = sync_token, None
        else:
            now = datetime.now(timezone.utc)
            start = options.get('time_min') or now - timedelta(days=7)
            end = options.get('time_max') or now + timedelta(days=90)
            url = f"{self.GRAPH_ENDPOINT}/me/calendarView/delta"
            params = {
                'startDateTime': start.strftime('%Y-%m-%dT%H:%M:%SZ'),
                'endDateTime': end.strftime('%Y-%m-%dT%H:%M:%SZ'),
            }

        items, delta_link = [], None
        while url:
            data = self._request('GET', url, integration, params=params).json()
            items.extend(data.get('value', []))
            params = None
            url = data.get('@odata.nextLink')
            delta_link = data.get('@odata.deltaLink', delta_link)

        return {'items': items, 'next_sync_token': delta_link, 'full_snapshot': False}

    # ---- webhooks ----

    def verify_webhook_signature(self, integration, payload, signature) -> bool:
        return tokens_match(integration.get_setting('client_state'), signature)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookNotification:
        """Graph change notifications embed the resource id and change type"""
        changes = []
        for item in payload.get('value') or []:
            resource = item.get('resourceData') or {}
            if not resource.get('id'):
                continue
            try:
                change = ChangeType(str(item.get('changeType', '')).lower())
            except ValueError:
                logger.info(f"Skipping Outlook change type {item.get('changeType')!r}")
                continue
            data = resource if 'start' in resource else None
            changes.append(ChangeNotification(external_id=resource['id'], change_type=change, data=data))

        # subscriptionId is shared by every notification on a subscription, so it cannot identify one
        webhook_id = payload.get('@odata.id')
        if not webhook_id and payload.get('value'):
            webhook_id = payload['value'][0].get('id')
        if not webhook_id and changes:
            raw = json.dumps(payload, sort_keys=True, default=str)
            webhook_id = hashlib.sha256(raw.encode()).hexdigest()
        return WebhookNotification(webhook_id=webhook_id, changes=changes)

    def _translate(self, response: requests.Response) -> Exception:
        try:
            error = response.json().get('error', {})
            detail = f"{error.get('code')}: {error.get('message')}"
        except ValueError:
            detail = response.text[:200]
        status = response.status_code
        message = f"Microsoft Graph error {status}: {detail}"
        if status in (404, 410):
            return EventNotFound(f"event not found ({message})", provider=self.provider, status_code=status)
        if status == 429:
            retry_after = response.headers.get('Retry-After')
            return RateLimitExceeded(
                f"rate limit exceeded ({message})", provider=self.provider, status_code=status,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status == 401:
            return ProviderError(f"unauthorized ({message})", provider=self.provider, status_code=status)
        if status == 403:
            return ProviderError(f"forbidden ({message})", provider=self.provider, status_code=status)
        return ProviderError(message, provider=self.provider, status_code=status)
