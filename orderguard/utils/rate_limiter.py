"""
Sliding-window rate limiter for the webhook endpoint.

Redis sorted set per identity when Redis is configured, otherwise an in-process
store created at startup (init_rate_limiter) and resettable in tests.
A limiter error never blocks a webhook.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_IP_LIMIT = 100  # requests per minute per IP
WINDOW_SECONDS = 60


class InMemoryRateLimitStore:
    """Per-identity request timestamps, guarded by its own lock."""

    def __init__(self, clock=time.time):
        self.clock = clock
        self._hits: dict[str, deque] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = clock()

    def _sweep(self, now: float, window: int) -> None:
        """Drop identities with no hits inside the window."""
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - window]:
            del self._hits[key]
        self._last_sweep = now

    async def hit(self, key: str, limit: int, window: int) -> tuple[bool, Optional[int]]:
        async with self._lock:
            now = self.clock()
            if now - self._last_sweep >= window:
                self._sweep(now, window)
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = int(hits[0] + window - now) + 1
                return False, max(retry_after, 1)
            hits.append(now)
            return True, None

    def clear(self) -> None:
        self._hits.clear()


_store: Optional[InMemoryRateLimitStore] = None


def init_rate_limiter(store: Optional[InMemoryRateLimitStore] = None) -> InMemoryRateLimitStore:
    global _store
    _store = store or InMemoryRateLimitStore()
    return _store


def get_rate_limit_store() -> InMemoryRateLimitStore:
    if _store is None:
        return init_rate_limiter()
    return _store


def reset_rate_limiter() -> None:
    global _store
    _store = None


async def _check_redis(redis, key: str, limit: int, window: int) -> tuple[bool, Optional[int]]:
    redis_key = f"orderguard:ratelimit:{key}"
    now = time.time()
    window_start = now - window

    pipe = redis.pipeline()
    # Remove expired entries
    pipe.zremrangebyscore(redis_key, 0, window_start)
    # Add current request (unique member so same-timestamp requests all count)
    pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
    # Count requests in window
    pipe.zcard(redis_key)
    # Oldest request still in window
    pipe.zrange(redis_key, 0, 0, withscores=True)
    pipe.expire(redis_key, window + 1)

    results = await pipe.execute()
    request_count = results[2]

    if request_count > limit:
        oldest = results[3][0][1] if results[3] else now
        retry_after = int(oldest + window - now) + 1
        logger.warning(
            "Rate limit exceeded: key=%s count=%d limit=%d",
            key, request_count, limit,
        )
        return False, max(retry_after, 1)

    return True, None


async def check_rate_limit(
    key: str,
    limit: int = DEFAULT_IP_LIMIT,
    window: int = WINDOW_SECONDS,
) -> tuple[bool, Optional[int]]:
    """
    Check if a request is within rate limits.

    Returns: (allowed: bool, retry_after_seconds: int | None)
    """
    try:
        from orderguard.utils.redis_client import get_redis
        redis = await get_redis()
        if redis is not None:
            return await _check_redis(redis, key, limit, window)
        return await get_rate_limit_store().hit(key, limit, window)
    except Exception as e:
        # Limiter failure should not block webhooks - allow through
        logger.warning("Rate limiter error: %s. Allowing request.", str(e))
        return True, None


async def check_webhook_rate_limit(client_ip: str) -> tuple[bool, Optional[int]]:
    """Per-IP limit for the payment webhook. Returns (allowed, retry_after_seconds)."""
    from orderguard.config import get_settings
    settings = get_settings()
    return await check_rate_limit(
        f"ip:{client_ip}",
        settings.webhook_rate_limit_per_minute,
        settings.webhook_rate_limit_window_seconds,
    )
