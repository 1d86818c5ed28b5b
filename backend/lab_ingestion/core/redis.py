"""Redis connection management."""

import logging

from redis import Redis
from redis.exceptions import RedisError

from lab_ingestion.core.config import settings

logger = logging.getLogger(__name__)

# Redis connection instance (lazy initialized)
_redis_client: Redis | None = None


def get_redis() -> Redis:
    """Get or create the Redis connection used by the import queues.

    RQ stores pickled job payloads, so the client keeps raw bytes
    (no decode_responses).
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url)
    return _redis_client


def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


def ping_redis() -> bool:
    """Check if Redis connection is healthy."""
    try:
        return bool(get_redis().ping())
    except RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False
