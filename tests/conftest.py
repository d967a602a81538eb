"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

# Settings are read once and cached; pin them before anything imports config
os.environ["REDIS_URL"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_orderguard"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_orderguard"
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ["SENDGRID_API_KEY"] = ""
os.environ["ALERT_WEBHOOK_URL"] = ""
os.environ["ALERT_RECIPIENT_EMAIL"] = ""
os.environ["RECONCILIATION_ENABLED"] = "false"

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from orderguard.config import get_settings
from orderguard.database import Base
import orderguard.models  # noqa: F401  registers every table on Base.metadata
from orderguard.services import payment_cache
from orderguard.utils.alerting import reset_local_cooldowns
from orderguard.utils.circuit_breaker import reset_circuit_breaker
from orderguard.utils.locks import InMemoryLockBackend, LockManager, init_lock_manager, reset_lock_manager
from orderguard.utils.metrics import operation_metrics
from orderguard.utils.rate_limiter import reset_rate_limiter

get_settings.cache_clear()


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite shared by several sessions (lock leases)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_resilience_state():
    """Fresh breaker, limiter, lock manager, cache stats and alert cooldowns per test."""
    reset_circuit_breaker()
    reset_rate_limiter()
    init_lock_manager(LockManager(InMemoryLockBackend()))
    payment_cache.reset_stats()
    reset_local_cooldowns()
    operation_metrics.clear()
    yield
    reset_circuit_breaker()
    reset_rate_limiter()
    reset_lock_manager()
    reset_local_cooldowns()
    operation_metrics.clear()


@pytest.fixture
def settings():
    return get_settings()
