# calsync/services/token_service.py
import logging

from calsync.models.base import utcnow

logger = logging.getLogger(__name__)


class TokenService:
    """Renews OAuth tokens through the integration's provider adapter"""

    def __init__(self, registry):
        self.registry = registry

    def refresh_tokens(self, integration) -> bool:
        adapter = self.registry.get(integration.provider)
        refreshed = adapter.refresh_tokens(integration)
        if refreshed:
            integration.needs_reauthorization = False
            integration.updated_at = utcnow()
            logger.info(f"🔑 Refreshed tokens for integration {integration.id}, expires {integration.token_expires_at}")
        return refreshed
