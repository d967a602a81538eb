"""
Payment intent cache - read-through Redis cache for hot payment intent lookups.

Key: payment_intent:{stripe_payment_intent_id}, TTL 1 hour by default.
Any authoritative write (webhook handler) invalidates the key.
Without Redis, or on a Redis error, every read is a miss; never an error.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from orderguard.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "payment_intent"


class _CacheMiss:
    def __repr__(self) -> str:
        return "CACHE_MISS"

    def __bool__(self) -> bool:
        return False


CACHE_MISS = _CacheMiss()

_stats = {"hits": 0, "misses": 0}


def _cache_key(payment_intent_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}:{payment_intent_id}"


def _ttl(ttl_seconds: Optional[int]) -> int:
    if ttl_seconds is not None:
        return ttl_seconds
    from orderguard.config import get_settings
    return get_settings().payment_cache_ttl_seconds


async def get(payment_intent_id: str) -> Any:
    """Cached value, or CACHE_MISS."""
    try:
        redis = await get_redis()
        if redis is None:
            _stats["misses"] += 1
            return CACHE_MISS
        cached = await redis.get(_cache_key(payment_intent_id))
    except Exception as e:
        logger.warning("Payment cache read failed: %s", str(e))
        _stats["misses"] += 1
        return CACHE_MISS

    if cached is None:
        _stats["misses"] += 1
        return CACHE_MISS
    try:
        value = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        _stats["misses"] += 1
        return CACHE_MISS
    _stats["hits"] += 1
    return value


async def set(payment_intent_id: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
    try:
        redis = await get_redis()
        if redis is None:
            return False
        await redis.set(
            _cache_key(payment_intent_id), json.dumps(value, default=str), ex=_ttl(ttl_seconds),
        )
        return True
    except Exception as e:
        logger.warning("Failed to cache payment intent %s: %s", payment_intent_id[:12], str(e))
        return False


async def invalidate(payment_intent_id: str) -> None:
    """Drop the cached entry. Call after any write to the payment intent."""
    try:
        redis = await get_redis()
        if redis is None:
            return
        await redis.delete(_cache_key(payment_intent_id))
    except Exception as e:
        logger.warning("Failed to invalidate payment intent cache: %s", str(e))


async def get_or_load(
    payment_intent_id: str,
    loader: Callable[[], Awaitable[Any]],
    ttl_seconds: Optional[int] = None,
) -> Any:
    """Read-through: return the cached value or load, cache and return it."""
    cached = await get(payment_intent_id)
    if cached is not CACHE_MISS:
        return cached
    value = await loader()
    if value is not None:
        await set(payment_intent_id, value, ttl_seconds)
    return value


def hit_rate() -> float:
    """Percentage of reads served from cache since startup (or last reset)."""
    total = _stats["hits"] + _stats["misses"]
    return (_stats["hits"] / total) * 100 if total else 0.0


def reset_stats() -> None:
    _stats["hits"] = 0
    _stats["misses"] = 0
