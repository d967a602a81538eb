"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health          - basic liveness (always 200 if app running)
- GET /health/ready    - readiness check (DB + Redis)
- GET /health/payments - payment system check (DB + Stripe + Redis + webhooks)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import get_settings
from orderguard.database import get_db
from orderguard.services.payment_health import payment_health_check
from orderguard.utils.redis_client import get_redis

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis is optional: not configured counts as ready.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    if not get_settings().redis_url:
        checks["redis"] = True
    else:
        try:
            redis = await get_redis()
            await redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/payments")
async def payments_health(
    db: AsyncSession = Depends(get_db),
):
    """503 when unhealthy so the load balancer pulls the instance."""
    report = await payment_health_check(db)
    status_code = 503 if report["status"] == "unhealthy" else 200
    return JSONResponse(content=report, status_code=status_code)
