"""
Redis client configuration for session storage.
"""

import os
import redis
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Suppress verbose Redis logs
logging.getLogger('redis').setLevel(logging.WARNING)

# Redis configuration; an empty REDIS_URL disables Redis entirely
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

_redis_client: Optional[redis.Redis] = None
_initialized = False


def _connect() -> Optional[redis.Redis]:
    if not REDIS_URL:
        logger.debug("REDIS_URL is empty. Using in-memory storage.")
        return None
    try:
        client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        client.ping()
        logger.debug("Redis connection established")
        return client
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.debug(f"Redis connection failed: {e}. Using in-memory storage.")
        return None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client instance, connecting on first use."""
    global _redis_client, _initialized
    if not _initialized:
        _redis_client = _connect()
        _initialized = True
    return _redis_client


def is_redis_available() -> bool:
    """Check if Redis is available."""
    return get_redis_client() is not None
