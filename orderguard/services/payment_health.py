"""
Payment health and metrics - read-only views over the payment tables and the
in-process resilience state.

get_payment_metrics(): 24-hour processing, volume and webhook statistics plus
cache/provider performance.
payment_health_check(): healthy / degraded / unhealthy from the database, Stripe,
Redis and the recent webhook failure rate.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import get_settings
from orderguard.models.payment import Payment, PaymentIntentRecord
from orderguard.models.webhook_event import WebhookEventRecord
from orderguard.services import payment_cache, payment_provider
from orderguard.utils.alerting import AlertType, send_alert
from orderguard.utils.circuit_breaker import CLOSED, get_circuit_breaker
from orderguard.utils.metrics import Timer, operation_metrics
from orderguard.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

METRICS_WINDOW = timedelta(hours=24)
PROCESSING_TIMEOUT = timedelta(hours=1)
WEBHOOK_HEALTH_WINDOW = timedelta(minutes=15)
WEBHOOK_HEALTH_SAMPLE = 100
WEBHOOK_FAILING_RATE = 0.2

FAILED_INTENT_STATUSES = ("canceled", "requires_payment_method")
FAILED_WEBHOOK_STATUSES = ("failed", "failed_permanent")


def _percent(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def _average_seconds(pairs) -> float:
    """Average of (end - start); both ends come from the same column type."""
    durations = [(end - start).total_seconds() for start, end in pairs if start and end]
    return round(sum(durations) / len(durations), 3) if durations else 0.0


async def _processing_metrics(db: AsyncSession, since: datetime, now: datetime) -> dict:
    rows = (await db.execute(
        select(PaymentIntentRecord.status, func.count())
        .where(PaymentIntentRecord.created_at >= since)
        .group_by(PaymentIntentRecord.status)
    )).all()
    counts = {status: count for status, count in rows}
    total = sum(counts.values())

    timed_out = (await db.execute(
        select(func.count()).select_from(PaymentIntentRecord).where(
            PaymentIntentRecord.created_at >= since,
            PaymentIntentRecord.status == "processing",
            PaymentIntentRecord.created_at < now - PROCESSING_TIMEOUT,
        )
    )).scalar() or 0

    succeeded = (await db.execute(
        select(PaymentIntentRecord.created_at, PaymentIntentRecord.succeeded_at).where(
            PaymentIntentRecord.created_at >= since,
            PaymentIntentRecord.status == "succeeded",
        )
    )).all()

    return {
        "total_intents": total,
        "average_processing_time": _average_seconds(succeeded),
        "success_rate": _percent(counts.get("succeeded", 0), total),
        "failure_rate": _percent(sum(counts.get(s, 0) for s in FAILED_INTENT_STATUSES), total),
        "timeout_rate": _percent(timed_out, total),
    }


async def _volume_metrics(db: AsyncSession, since: datetime) -> dict:
    rows = (await db.execute(
        select(Payment.created_at, Payment.amount).where(Payment.created_at >= since)
    )).all()

    hourly: dict[datetime, int] = {}
    for created_at, _amount in rows:
        hour = created_at.replace(minute=0, second=0, microsecond=0)
        hourly[hour] = hourly.get(hour, 0) + 1

    return {
        "payments_last_24h": len(rows),
        "volume_last_24h": sum(amount or 0 for _created, amount in rows),
        "peak_hourly_volume": max(hourly.values()) if hourly else 0,
    }


async def _webhook_metrics(db: AsyncSession, since: datetime) -> dict:
    rows = (await db.execute(
        select(
            WebhookEventRecord.status,
            WebhookEventRecord.retry_count,
            WebhookEventRecord.created_at,
            WebhookEventRecord.processed_at,
        ).where(WebhookEventRecord.created_at >= since)
    )).all()

    total = len(rows)
    failed = sum(1 for r in rows if r.status in FAILED_WEBHOOK_STATUSES)
    retried = sum(1 for r in rows if (r.retry_count or 0) > 0)
    processing_ms = _average_seconds((r.created_at, r.processed_at) for r in rows) * 1000

    return {
        "total_webhooks": total,
        "failed_webhooks": failed,
        "average_processing_time": round(processing_ms, 1),
        "retry_rate": _percent(retried, total),
    }


def _performance_metrics() -> dict:
    return {
        "cache_hit_rate": round(payment_cache.hit_rate(), 2),
        "api_latency": round(operation_metrics.average_latency_ms("stripe."), 1),
        "slow_operations": operation_metrics.slow_operations(),
        "circuit_breakers": get_circuit_breaker().snapshot(),
        "operations": operation_metrics.snapshot(),
    }


async def get_payment_metrics(db: AsyncSession) -> dict:
    now = datetime.now(timezone.utc)
    since = now - METRICS_WINDOW
    return {
        "processing": await _processing_metrics(db, since, now),
        "volume": await _volume_metrics(db, since),
        "webhooks": await _webhook_metrics(db, since),
        "performance": _performance_metrics(),
        "timestamp": now.isoformat(),
    }


async def _check_database(db: AsyncSession) -> dict:
    timer = Timer().start()
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "up", "latency": timer.stop(), "error": None}
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        return {"status": "down", "latency": 0, "error": str(e)}


async def _check_redis() -> dict:
    if not get_settings().redis_url:
        return {"status": "not_configured", "latency": 0, "error": None}
    timer = Timer().start()
    try:
        redis = await get_redis()
        await redis.ping()
        return {"status": "up", "latency": timer.stop(), "error": None}
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        return {"status": "down", "latency": 0, "error": str(e)}


async def _check_webhooks(db: AsyncSession) -> dict:
    since = datetime.now(timezone.utc) - WEBHOOK_HEALTH_WINDOW
    try:
        statuses = (await db.execute(
            select(WebhookEventRecord.status)
            .where(WebhookEventRecord.created_at >= since)
            .order_by(WebhookEventRecord.created_at.desc())
            .limit(WEBHOOK_HEALTH_SAMPLE)
        )).scalars().all()
    except Exception as e:
        logger.error("Webhook health check failed: %s", str(e))
        return {"status": "failing", "recent": 0, "failed": 0, "error": str(e)}

    failed = sum(1 for s in statuses if s in FAILED_WEBHOOK_STATUSES)
    if statuses and failed / len(statuses) > WEBHOOK_FAILING_RATE:
        status = "failing"
    elif failed:
        status = "delayed"
    else:
        status = "healthy"
    return {"status": status, "recent": len(statuses), "failed": failed, "error": None}


async def payment_health_check(db: AsyncSession) -> dict:
    """
    Overall status:
    - unhealthy: database or Stripe down
    - degraded: Redis down, webhooks delayed/failing, or an open breaker
    - healthy: otherwise
    """
    components = {
        "database": await _check_database(db),
        "stripe": await payment_provider.ping(),
        "redis": await _check_redis(),
        "webhooks": await _check_webhooks(db),
    }

    issues = []
    if components["database"]["status"] == "down":
        issues.append("Database unavailable")
    if components["stripe"]["status"] == "down":
        issues.append("Stripe API unavailable")
    if components["redis"]["status"] == "down":
        issues.append("Redis unavailable")
    if components["webhooks"]["status"] != "healthy":
        issues.append(f"Webhook processing {components['webhooks']['status']}")
    open_breakers = [
        name for name, s in get_circuit_breaker().snapshot().items() if s["state"] != CLOSED
    ]
    if open_breakers:
        issues.append("Circuit open: " + ", ".join(sorted(open_breakers)))

    if components["database"]["status"] == "down" or components["stripe"]["status"] == "down":
        status = "unhealthy"
    elif issues:
        status = "degraded"
    else:
        status = "healthy"

    if status != "healthy":
        logger.warning("Payment health %s: %s", status, "; ".join(issues))
    if status == "unhealthy":
        await send_alert(
            AlertType.HEALTH_CHECK_FAILED,
            "Payment system unhealthy: " + "; ".join(issues),
            severity="critical",
            extra={"components": {k: v["status"] for k, v in components.items()}},
            dedup_key="payments",
        )

    return {
        "status": status,
        "components": components,
        "issues": issues,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
