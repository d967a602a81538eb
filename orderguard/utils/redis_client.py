"""
Shared Redis connection.

Redis is optional: with REDIS_URL empty, get_redis() returns None and every
caller degrades (cache misses, DB lease locks, in-process rate limits).
"""
import logging

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create the Redis connection. None when Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        from orderguard.config import get_settings
        redis_url = get_settings().redis_url
        if not redis_url:
            return None
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(redis_url, decode_responses=True)
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection on shutdown."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.warning("Redis close failed: %s", str(e))
    _redis_client = None
