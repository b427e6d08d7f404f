# calsync/services/calendar/base.py
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from calsync.schemas.calendar_events import ChangeNotification, ChangeType, WebhookNotification

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """One external calendar provider.

    Errors are raised as ``calsync.sync.errors`` exceptions whose messages
    keep the provider's wording (``invalid_grant``, ``not found``...), since
    retry classification reads the message.
    """

    provider: str = ""

    @abstractmethod
    def create_event(self, integration, booking) -> str:
        """Create the remote event for a booking and return its external id"""

    @abstractmethod
    def update_event(self, integration, booking, external_id: str) -> bool:
        """Push the booking's current state to an existing remote event"""

    @abstractmethod
    def delete_event(self, integration, external_id: str) -> bool:
        """Delete a remote event"""

    @abstractmethod
    def get_event(self, integration, external_id: str) -> Optional[Dict[str, Any]]:
        """Raw provider payload for one event, or None when it is gone"""

    @abstractmethod
    def get_event_changes(self, integration, sync_token: Optional[str] = None,
                          options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Changed events since ``sync_token``: {"items", "next_sync_token", "full_snapshot"}"""

    def event_exists(self, integration, external_id: str) -> bool:
        return self.get_event(integration, external_id) is not None

    def refresh_tokens(self, integration) -> bool:
        """Renew the integration's OAuth tokens in place"""
        return True

    def verify_webhook_signature(self, integration, payload: Dict[str, Any], signature: str) -> bool:
        return True

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookNotification:
        """Generic push format: {"id": ..., "events": [{"id", "change_type", ...}]}"""
        changes = []
        for item in payload.get("events") or []:
            change = _change_type(item.get("change_type") or item.get("type"))
            if change is None or not item.get("id"):
                continue
            changes.append(ChangeNotification(external_id=str(item["id"]), change_type=change, data=item))
        webhook_id = payload.get("id")
        return WebhookNotification(webhook_id=str(webhook_id) if webhook_id else None, changes=changes)

    def event_summary(self, integration, booking) -> Dict[str, Any]:
        """Provider-neutral fields for a booking's remote event"""
        return {
            "title": integration.render_event_title(booking),
            "description": _description(booking),
            "start": booking.scheduled_at,
            "end": booking.end_time,
        }


def _change_type(value) -> Optional[ChangeType]:
    if not value:
        return None
    try:
        return ChangeType(str(value).lower())
    except ValueError:
        logger.info(f"Skipping unsupported change type {value!r}")
        return None


def _description(booking) -> str:
    lines = [f"Client: {booking.client_name}"]
    if booking.booking_reference:
        lines.append(f"Reference: {booking.booking_reference}")
    if booking.notes:
        lines.append("")
        lines.append(booking.notes)
    return "\n".join(lines)


def tokens_match(expected: Optional[str], given: Optional[str]) -> bool:
    if not expected or not given:
        return False
    return hmac.compare_digest(str(expected), str(given))
