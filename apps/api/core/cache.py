"""
Redis connection management.

Redis backs the request rate limiter and the invitation resend limiter.
Callers must degrade gracefully when it is unavailable (None).
"""
import logging
import time
from typing import Optional

import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None
_last_failure_at: float = 0.0
_RETRY_AFTER_FAILURE_S = 30


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client, _last_failure_at

    if _redis_client is not None:
        return _redis_client

    # Don't hammer a dead Redis on every request.
    if _last_failure_at and time.time() - _last_failure_at < _RETRY_AFTER_FAILURE_S:
        return None

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        client.ping()
        logger.info("Redis connection established")
        _redis_client = client
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Shared rate limiting disabled.")
        _redis_client = None
        _last_failure_at = time.time()
        return None

