# calsync/services/notification_service.py
import logging
from typing import Optional

import httpx

from calsync.config.settings import get_settings
from calsync.models.base import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = (
    "sync_success",
    "sync_failure",
    "conflict",
    "integration_disabled",
    "reauthorization_required",
    "update_failure",
    "deletion_failure",
    "webhook_processed",
)


class NotificationService:
    """Fire-and-forget notifications to the owning user.

    Always logged; also POSTed to NOTIFICATION_WEBHOOK_URL when configured.
    Delivery problems are logged and never raised.
    """

    def __init__(self, webhook_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        settings = get_settings()
        self.webhook_url = webhook_url if webhook_url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self.timeout = settings.NOTIFICATION_TIMEOUT
        self.client = client

    def notify(self, event: str, integration, **data):
        logger.info(f"📣 {event} for user {integration.user_id} (integration {integration.id}): {data}")
        if not self.webhook_url:
            return

        payload = {
            "event": event,
            "user_id": str(integration.user_id),
            "integration_id": str(integration.id),
            "provider": integration.provider,
            "data": data,
            "timestamp": utcnow().isoformat(),
        }
        try:
            if self.client is not None:
                response = self.client.post(self.webhook_url, json=payload)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"❌ Failed to deliver {event} notification: {e}")
