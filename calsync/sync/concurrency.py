"""
Keyed mutual exclusion and uniqueness windows for calendar jobs
"""
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from calsync.config.redis import RedisKeys

logger = logging.getLogger(__name__)


def event_key(integration_id, external_event_id) -> str:
    return f"{integration_id}:{external_event_id}"


def booking_create_key(booking_id) -> str:
    return f"create_event_{booking_id}"


class GuardBusy(Exception):
    """Another job holds the key"""

    def __init__(self, key: str):
        super().__init__(f"concurrency key busy: {key}")
        self.key = key


class ConcurrencyGuard:
    """One lock per key; entries are dropped once nobody holds or waits on them"""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}
        self._mutex = threading.Lock()

    def _checkout(self, key: str) -> threading.Lock:
        with self._mutex:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str):
        with self._mutex:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, blocking: bool = False, timeout: float = -1):
        """Hold ``key`` for the duration of the block, or raise GuardBusy"""
        lock = self._checkout(key)
        acquired = lock.acquire(blocking, timeout) if blocking else lock.acquire(False)
        if not acquired:
            self._checkin(key)
            raise GuardBusy(key)
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)

    def is_held(self, key: str) -> bool:
        with self._mutex:
            lock = self._locks.get(key)
            return lock is not None and lock.locked()


class RedisConcurrencyGuard:
    """SET NX EX lock so workers on different hosts exclude each other"""

    RELEASE_SCRIPT = """
    if redis.call('get', KEYS[1]) == ARGV[1] then
        return redis.call('del', KEYS[1])
    end
    return 0
    """

    def __init__(self, client, ttl: int = 300):
        self.client = client
        self.ttl = ttl
        self._release = client.register_script(self.RELEASE_SCRIPT)

    @contextmanager
    def hold(self, key: str, blocking: bool = False, timeout: float = -1):
        redis_key = RedisKeys.JOB_LOCK.format(key=key)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + (timeout if timeout and timeout > 0 else 0)

        while not self.client.set(redis_key, token, nx=True, ex=self.ttl):
            if not blocking or time.monotonic() >= deadline:
                raise GuardBusy(key)
            time.sleep(0.05)
        try:
            yield
        finally:
            self._release(keys=[redis_key], args=[token])

    def is_held(self, key: str) -> bool:
        return bool(self.client.exists(RedisKeys.JOB_LOCK.format(key=key)))


class UniqueJobRegistry:
    """Rejects a job whose unique key was claimed within its window"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._claims: Dict[str, float] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, ttl: int) -> bool:
        now = self.clock()
        with self._lock:
            expires = self._claims.get(key)
            if expires is not None and expires > now:
                return False
            self._claims[key] = now + ttl
            return True

    def release(self, key: str):
        with self._lock:
            self._claims.pop(key, None)

    def is_claimed(self, key: str) -> bool:
        with self._lock:
            expires = self._claims.get(key)
            return expires is not None and expires > self.clock()


class RedisUniqueJobRegistry:
    def __init__(self, client):
        self.client = client

    def claim(self, key: str, ttl: int) -> bool:
        return bool(self.client.set(RedisKeys.UNIQUE_JOB.format(key=key), "1", nx=True, ex=ttl))

    def release(self, key: str):
        self.client.delete(RedisKeys.UNIQUE_JOB.format(key=key))

    def is_claimed(self, key: str) -> bool:
        return bool(self.client.exists(RedisKeys.UNIQUE_JOB.format(key=key)))


def build_coordination(backend: Optional[str] = None):
    """Guard, limiter and uniqueness registry for the configured backend"""
    from calsync.config.settings import get_settings
    from calsync.sync.rate_limiter import RateLimiter, RedisRateLimiter

    backend = backend or get_settings().COORDINATION_BACKEND
    if backend == "redis":
        from calsync.config.redis import get_redis

        client = get_redis()
        return RedisConcurrencyGuard(client), RedisRateLimiter(client), RedisUniqueJobRegistry(client)
    return ConcurrencyGuard(), RateLimiter(), UniqueJobRegistry()
