# calsync/services/calendar/registry.py
import logging
from typing import Callable, Dict, Optional

from calsync.services.calendar.base import ProviderAdapter

logger = logging.getLogger(__name__)


def _google():
    from calsync.services.calendar.google_calendar_service import GoogleCalendarService
    return GoogleCalendarService()


def _outlook():
    from calsync.services.calendar.outlook_service import OutlookCalendarService
    return OutlookCalendarService()


def _ical():
    from calsync.services.calendar.ical_service import ICalService
    return ICalService()


DEFAULT_FACTORIES: Dict[str, Callable[[], ProviderAdapter]] = {
    "google": _google,
    "outlook": _outlook,
    "ical": _ical,
}


class ProviderRegistry:
    """Adapter per provider name, built on first use"""

    def __init__(self, adapters: Optional[Dict[str, ProviderAdapter]] = None,
                 factories: Optional[Dict[str, Callable[[], ProviderAdapter]]] = None):
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._factories = dict(DEFAULT_FACTORIES if factories is None else factories)

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            factory = self._factories.get(provider)
            if factory is None:
                raise ValueError(f"Unsupported calendar provider: {provider}")
            adapter = self._adapters[provider] = factory()
        return adapter
