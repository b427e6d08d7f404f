# calsync/services/integration_service.py
"""Error counting and the circuit breaker for calendar integrations"""
import logging
from typing import Optional

from calsync.models.base import utcnow

logger = logging.getLogger(__name__)


def reset_errors(integration, now=None):
    integration.sync_error_count = 0
    integration.last_sync_error = None
    integration.last_sync_at = now or utcnow()


def deactivate(integration, reason: str, notifier=None, now=None) -> bool:
    """Turn the integration off; returns False if it already was"""
    if not integration.is_active:
        return False
    integration.is_active = False
    integration.disabled_at = now or utcnow()
    logger.warning(f"🛑 Integration {integration.id} deactivated: {reason}")
    if notifier is not None:
        notifier.notify("integration_disabled", integration, reason=reason,
                        error_count=integration.sync_error_count)
    return True


def record_failure(integration, error, threshold: Optional[int] = None, notifier=None, now=None) -> bool:
    """Count one failed job; trip the breaker once the threshold is reached.

    Returns True only on the call that deactivated the integration.
    """
    integration.sync_error_count = (integration.sync_error_count or 0) + 1
    integration.last_sync_error = str(error)[:2000]
    logger.error(
        f"Integration {integration.id} failure #{integration.sync_error_count}: {error}"
    )
    if threshold is None or integration.sync_error_count < threshold:
        return False
    return deactivate(
        integration,
        f"{integration.sync_error_count} consecutive sync failures",
        notifier=notifier,
        now=now,
    )
