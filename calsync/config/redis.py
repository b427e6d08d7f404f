# calsync/config/redis.py
"""Redis configuration and connection setup"""
import redis
from typing import Optional

from calsync.config.settings import get_settings

# Redis connection pool
_redis_pool: Optional[redis.ConnectionPool] = None


def get_redis_pool() -> redis.ConnectionPool:
    """Get or create Redis connection pool"""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            retry_on_timeout=True,
        )
    return _redis_pool


def get_redis() -> redis.Redis:
    """Get Redis client from pool"""
    return redis.Redis(connection_pool=get_redis_pool())


# Redis key patterns for different data types
class RedisKeys:
    """Redis key patterns for consistent naming"""

    # Keyed mutual exclusion between jobs
    JOB_LOCK = "calsync:lock:{key}"

    # Uniqueness windows for enqueued jobs
    UNIQUE_JOB = "calsync:unique:{key}"

    # Rate limiting
    RATE_LIMIT = "calsync:ratelimit:{provider}:{integration_id}:{window}"
