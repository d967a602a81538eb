"""
Per-order distributed locks - serializes every mutation of an order's state.

Primary backend: Redis SET NX EX with a unique owner token. Release is an atomic
compare-and-delete and renewal an atomic compare-and-expire (Lua), so only the
token holder can release or extend.

Fallback (Redis not configured or erroring): a lease row in order_lock_leases,
keyed by a stable 63-bit hash of the order id. A lease is taken by insert, or by
stealing a row whose expiry has passed. The holder renews it while working;
it expires only when the holder stops renewing.

Usage:
    async with order_lock(order_id):
        # mutate order state safely
"""
import asyncio
import hashlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from orderguard.exceptions import LockNotAcquiredError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "payment_lock"
LOCK_WAIT_SECONDS = 5.0
LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

_RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
else
    return 0
end
"""


class LockBackendUnavailable(Exception):
    """The backend cannot serve requests right now; try the next one."""


@dataclass
class LockResult:
    acquired: bool
    lock_key: str
    token: Optional[str] = None
    backend: str = "none"


def lock_key_for(order_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{order_id}"


def advisory_lock_id(lock_key: str) -> int:
    """Stable signed-64-bit-safe integer for a lock key (same on every process)."""
    digest = hashlib.sha256(lock_key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") & 0x7FFF_FFFF_FFFF_FFFF


class RedisLockBackend:
    name = "redis"

    async def _client(self):
        from orderguard.utils.redis_client import get_redis
        redis = await get_redis()
        if redis is None:
            raise LockBackendUnavailable("Redis not configured")
        return redis

    async def acquire(self, key: str, token: str, ttl_seconds: int) -> bool:
        redis = await self._client()
        return bool(await redis.set(key, token, nx=True, ex=ttl_seconds))

    async def release(self, key: str, token: str) -> bool:
        redis = await self._client()
        return bool(await redis.eval(_RELEASE_SCRIPT, 1, key, token))

    async def renew(self, key: str, token: str, ttl_seconds: int) -> bool:
        redis = await self._client()
        return bool(await redis.eval(_RENEW_SCRIPT, 1, key, token, int(ttl_seconds * 1000)))


class DatabaseLeaseBackend:
    name = "database"

    def __init__(self, session_factory=None):
        if session_factory is None:
            from orderguard.database import async_session_factory
            session_factory = async_session_factory
        self.session_factory = session_factory

    async def acquire(self, key: str, token: str, ttl_seconds: int) -> bool:
        from sqlalchemy import update
        from sqlalchemy.exc import IntegrityError
        from orderguard.models.lock_lease import OrderLockLease

        lock_id = advisory_lock_id(key)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)

        async with self.session_factory() as db:
            db.add(OrderLockLease(
                lock_id=lock_id, lock_key=key, token=token,
                acquired_at=now, expires_at=expires_at,
            ))
            try:
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()

            # Row exists: take it over only if its holder stopped renewing
            result = await db.execute(
                update(OrderLockLease)
                .where(
                    OrderLockLease.lock_id == lock_id,
                    OrderLockLease.expires_at < now,
                )
                .values(token=token, acquired_at=now, expires_at=expires_at)
            )
            await db.commit()
            if result.rowcount == 1:
                logger.warning("Took over expired lock lease %s", key)
                return True
            return False

    async def release(self, key: str, token: str) -> bool:
        from sqlalchemy import delete
        from orderguard.models.lock_lease import OrderLockLease

        async with self.session_factory() as db:
            result = await db.execute(
                delete(OrderLockLease).where(
                    OrderLockLease.lock_id == advisory_lock_id(key),
                    OrderLockLease.token == token,
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def renew(self, key: str, token: str, ttl_seconds: int) -> bool:
        from sqlalchemy import update
        from orderguard.models.lock_lease import OrderLockLease

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                update(OrderLockLease)
                .where(
                    OrderLockLease.lock_id == advisory_lock_id(key),
                    OrderLockLease.token == token,
                )
                .values(expires_at=expires_at)
            )
            await db.commit()
            return result.rowcount == 1


class InMemoryLockBackend:
    """Single-process backend for local runs and tests."""
    name = "memory"

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self._held: dict[str, tuple[str, float]] = {}  # key -> (token, expires_at)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str, token: str, ttl_seconds: int) -> bool:
        async with self._lock:
            held = self._held.get(key)
            if held and held[1] > self.clock():
                return False
            self._held[key] = (token, self.clock() + ttl_seconds)
            return True

    async def release(self, key: str, token: str) -> bool:
        async with self._lock:
            held = self._held.get(key)
            if not held or held[0] != token:
                return False
            del self._held[key]
            return True

    async def renew(self, key: str, token: str, ttl_seconds: int) -> bool:
        async with self._lock:
            held = self._held.get(key)
            if not held or held[0] != token:
                return False
            self._held[key] = (token, self.clock() + ttl_seconds)
            return True

    def is_held(self, key: str) -> bool:
        held = self._held.get(key)
        return bool(held and held[1] > self.clock())


class LockManager:
    """Tries each backend in order; a backend that errors hands over to the next."""

    def __init__(self, *backends, default_ttl_seconds: int = 300):
        self.backends = [b for b in backends if b is not None]
        self.default_ttl_seconds = default_ttl_seconds

    def _backend(self, name: str):
        for backend in self.backends:
            if backend.name == name:
                return backend
        return None

    async def acquire(self, order_id: str, ttl_seconds: Optional[int] = None) -> LockResult:
        key = lock_key_for(order_id)
        ttl = ttl_seconds or self.default_ttl_seconds
        token = uuid.uuid4().hex

        for backend in self.backends:
            try:
                acquired = await backend.acquire(key, token, ttl)
            except LockBackendUnavailable:
                continue
            except Exception as e:
                logger.warning(
                    "Lock backend %s failed for %s: %s. Trying fallback.",
                    backend.name, key, str(e),
                )
                continue
            return LockResult(
                acquired=acquired,
                lock_key=key,
                token=token if acquired else None,
                backend=backend.name,
            )

        logger.error("No lock backend available for %s", key)
        return LockResult(acquired=False, lock_key=key)

    async def release(self, result: LockResult) -> bool:
        backend = self._backend(result.backend)
        if not result.acquired or backend is None or result.token is None:
            return False
        try:
            released = await backend.release(result.lock_key, result.token)
        except Exception as e:
            logger.warning("Lock release error for %s: %s", result.lock_key, str(e))
            return False
        if not released:
            logger.warning("Lock %s was no longer held at release", result.lock_key)
        return released

    async def renew(self, result: LockResult, ttl_seconds: Optional[int] = None) -> bool:
        backend = self._backend(result.backend)
        if not result.acquired or backend is None or result.token is None:
            return False
        try:
            return await backend.renew(
                result.lock_key, result.token, ttl_seconds or self.default_ttl_seconds,
            )
        except Exception as e:
            logger.warning("Lock renew error for %s: %s", result.lock_key, str(e))
            return False


async def _renew_loop(manager: LockManager, result: LockResult, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if not await manager.renew(result):
            logger.error("Lost lock %s during renewal", result.lock_key)
            return


@asynccontextmanager
async def order_lock(
    order_id: str,
    ttl: Optional[int] = None,
    wait: float = LOCK_WAIT_SECONDS,
    manager: Optional[LockManager] = None,
):
    """
    Hold the lock for an order for the duration of the block, renewing it in the
    background. Raises LockNotAcquiredError if it is not obtained within `wait`.
    """
    from orderguard.config import get_settings
    manager = manager or get_lock_manager()

    result = await manager.acquire(order_id, ttl)
    elapsed = 0.0
    while not result.acquired and elapsed < wait:
        await asyncio.sleep(LOCK_POLL_INTERVAL)
        elapsed += LOCK_POLL_INTERVAL
        result = await manager.acquire(order_id, ttl)

    if not result.acquired:
        logger.warning(
            "Lock acquisition timed out for order %s",
            order_id[:8], extra={"order_id": order_id},
        )
        raise LockNotAcquiredError(order_id)

    renewer = asyncio.create_task(
        _renew_loop(manager, result, get_settings().order_lock_renew_interval_seconds)
    )
    try:
        yield result
    finally:
        renewer.cancel()
        try:
            # wait() never raises the renewer's CancelledError, only our own
            await asyncio.wait([renewer])
        finally:
            await manager.release(result)


_manager: Optional[LockManager] = None


def init_lock_manager(manager: Optional[LockManager] = None) -> LockManager:
    """Create the process-wide lock manager. Called from the app lifespan."""
    global _manager
    if manager is None:
        from orderguard.config import get_settings
        settings = get_settings()
        manager = LockManager(
            RedisLockBackend() if settings.redis_url else None,
            DatabaseLeaseBackend(),
            default_ttl_seconds=settings.order_lock_ttl_seconds,
        )
    _manager = manager
    return _manager


def get_lock_manager() -> LockManager:
    if _manager is None:
        return init_lock_manager()
    return _manager


def reset_lock_manager() -> None:
    global _manager
    _manager = None
