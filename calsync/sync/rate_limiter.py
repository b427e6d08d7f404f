"""
Per-provider, per-integration limiter for outbound calendar API calls
"""
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Dict, Optional

from calsync.config.redis import RedisKeys
from calsync.config.settings import get_settings

logger = logging.getLogger(__name__)


def default_limits() -> Dict[str, int]:
    settings = get_settings()
    return {
        "google": settings.GOOGLE_RATE_LIMIT,
        "outlook": settings.OUTLOOK_RATE_LIMIT,
        "ical": settings.ICAL_RATE_LIMIT,
    }


class RateLimiter:
    """Sliding window limiter kept in process memory.

    ``acquire`` returns 0 when the call may go ahead, otherwise the number of
    seconds until a slot frees up.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = limits if limits is not None else default_limits()
        self.window = window_seconds or get_settings().RATE_LIMIT_WINDOW_SECONDS
        self.clock = clock
        self._calls = defaultdict(deque)
        self._lock = threading.Lock()

    def _limit(self, provider: str) -> int:
        return self.limits.get(provider, 60)

    def acquire(self, provider: str, integration_id) -> int:
        key = (provider, str(integration_id))
        now = self.clock()
        with self._lock:
            calls = self._calls[key]
            while calls and now - calls[0] >= self.window:
                calls.popleft()

            if len(calls) >= self._limit(provider):
                oldest = calls[0] if calls else now
                wait = int(self.window - (now - oldest)) + 1
                logger.warning(f"⏳ Rate limit reached for {provider} integration {integration_id}, retry in {wait}s")
                return wait

            calls.append(now)
            return 0


class RedisRateLimiter:
    """Fixed window limiter shared by every worker through Redis"""

    def __init__(self, client, limits: Optional[Dict[str, int]] = None, window_seconds: Optional[int] = None):
        self.client = client
        self.limits = limits if limits is not None else default_limits()
        self.window = window_seconds or get_settings().RATE_LIMIT_WINDOW_SECONDS

    def acquire(self, provider: str, integration_id) -> int:
        now = int(time.time())
        window_start = now - now % self.window
        key = RedisKeys.RATE_LIMIT.format(
            provider=provider, integration_id=integration_id, window=window_start
        )

        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.window + 1)
        count, _ = pipe.execute()

        if count > self.limits.get(provider, 60):
            wait = window_start + self.window - now + 1
            logger.warning(f"⏳ Rate limit reached for {provider} integration {integration_id}, retry in {wait}s")
            return wait
        return 0
