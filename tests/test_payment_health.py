"""
Tests for orderguard/services/payment_health.py - metrics and the health verdict.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from factories import make_order
from orderguard.models import Payment, PaymentIntentRecord, WebhookEventRecord
from orderguard.services import payment_cache
from orderguard.services.payment_health import get_payment_metrics, payment_health_check
from orderguard.utils.circuit_breaker import OPEN, get_circuit_breaker
from orderguard.utils.metrics import operation_metrics

STRIPE_UP = {"status": "up", "latency": 12, "error": None}
STRIPE_DOWN = {"status": "down", "latency": 0, "error": "connection refused"}


@pytest.fixture
def stripe_up():
    with patch("orderguard.services.payment_provider.ping", AsyncMock(return_value=STRIPE_UP)) as ping:
        yield ping


def _ago(**kwargs) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**kwargs)


async def add_webhooks(db, statuses):
    for i, status in enumerate(statuses):
        db.add(WebhookEventRecord(
            event_id=f"evt_h_{i}", event_type="payment_intent.succeeded", status=status,
        ))
    await db.commit()


class TestHealthCheck:
    async def test_all_good(self, db, stripe_up):
        report = await payment_health_check(db)
        assert report["status"] == "healthy"
        assert report["issues"] == []
        assert report["components"]["database"]["status"] == "up"
        assert report["components"]["redis"]["status"] == "not_configured"
        assert report["components"]["webhooks"]["status"] == "healthy"

    async def test_stripe_down_is_unhealthy_and_alerts(self, db):
        with patch("orderguard.services.payment_provider.ping", AsyncMock(return_value=STRIPE_DOWN)), \
             patch("orderguard.services.payment_health.send_alert", new_callable=AsyncMock) as alert:
            report = await payment_health_check(db)
        assert report["status"] == "unhealthy"
        assert "Stripe API unavailable" in report["issues"]
        alert.assert_awaited_once()
        assert alert.call_args.kwargs["dedup_key"] == "payments"

    async def test_database_down_is_unhealthy(self, stripe_up):
        broken = AsyncMock()
        broken.execute.side_effect = ConnectionError("db gone")
        with patch("orderguard.services.payment_health.send_alert", new_callable=AsyncMock):
            report = await payment_health_check(broken)
        assert report["status"] == "unhealthy"
        assert report["components"]["database"]["status"] == "down"
        assert report["components"]["webhooks"]["status"] == "failing"

    async def test_some_webhook_failures_are_delayed(self, db, stripe_up):
        await add_webhooks(db, ["processed"] * 9 + ["failed"])
        report = await payment_health_check(db)
        assert report["components"]["webhooks"]["status"] == "delayed"
        assert report["status"] == "degraded"

    async def test_many_webhook_failures_are_failing(self, db, stripe_up):
        await add_webhooks(db, ["processed"] * 7 + ["failed", "failed_permanent", "failed"])
        report = await payment_health_check(db)
        assert report["components"]["webhooks"]["status"] == "failing"
        assert "Webhook processing failing" in report["issues"]

    async def test_open_breaker_degrades(self, db, stripe_up):
        get_circuit_breaker().store.get("stripe.retrieve_payment_intent").state = OPEN
        report = await payment_health_check(db)
        assert report["status"] == "degraded"
        assert report["issues"] == ["Circuit open: stripe.retrieve_payment_intent"]

    async def test_redis_down_degrades(self, db, stripe_up, settings, monkeypatch):
        monkeypatch.setattr(settings, "redis_url", "redis://unreachable:6379/0")
        redis = AsyncMock()
        redis.ping.side_effect = ConnectionError("refused")
        with patch("orderguard.services.payment_health.get_redis", AsyncMock(return_value=redis)):
            report = await payment_health_check(db)
        assert report["components"]["redis"]["status"] == "down"
        assert report["status"] == "degraded"


class TestMetrics:
    async def test_empty_database(self, db):
        metrics = await get_payment_metrics(db)
        assert metrics["processing"]["total_intents"] == 0
        assert metrics["processing"]["success_rate"] == 0.0
        assert metrics["volume"]["payments_last_24h"] == 0
        assert metrics["webhooks"]["total_webhooks"] == 0
        assert "timestamp" in metrics

    async def test_processing_rates(self, db):
        order = await make_order(db)
        rows = [
            ("pi_1", "succeeded", _ago(minutes=30), _ago(minutes=29)),
            ("pi_2", "succeeded", _ago(minutes=20), _ago(minutes=19)),
            ("pi_3", "canceled", _ago(minutes=10), None),
            ("pi_4", "processing", _ago(hours=2), None),
        ]
        for pi_id, status, created, succeeded in rows:
            db.add(PaymentIntentRecord(
                stripe_payment_intent_id=pi_id, order_id=order.id, status=status,
                amount=1000, created_at=created, succeeded_at=succeeded,
            ))
        db.add(PaymentIntentRecord(
            stripe_payment_intent_id="pi_old", order_id=order.id, status="succeeded",
            amount=1000, created_at=_ago(days=3),
        ))
        await db.commit()

        processing = (await get_payment_metrics(db))["processing"]
        assert processing["total_intents"] == 4
        assert processing["success_rate"] == 50.0
        assert processing["failure_rate"] == 25.0
        assert processing["timeout_rate"] == 25.0
        assert processing["average_processing_time"] == pytest.approx(60, abs=1)

    async def test_volume_and_webhooks(self, db):
        order = await make_order(db)
        for i, amount in enumerate((25000, 40000)):
            db.add(Payment(
                order_id=order.id, amount=amount, transaction_id=f"pi_v{i}", created_at=_ago(minutes=5),
            ))
        db.add(WebhookEventRecord(event_id="evt_w1", event_type="t", status="processed",
                                  processed_at=datetime.now(timezone.utc)))
        db.add(WebhookEventRecord(event_id="evt_w2", event_type="t", status="failed", retry_count=2))
        await db.commit()

        metrics = await get_payment_metrics(db)
        assert metrics["volume"]["payments_last_24h"] == 2
        assert metrics["volume"]["volume_last_24h"] == 65000
        assert metrics["volume"]["peak_hourly_volume"] >= 1
        assert metrics["webhooks"]["total_webhooks"] == 2
        assert metrics["webhooks"]["failed_webhooks"] == 1
        assert metrics["webhooks"]["retry_rate"] == 50.0

    async def test_performance_section(self, db):
        operation_metrics.record("stripe.retrieve_payment_intent", 200, False)
        operation_metrics.record("stripe.ping", 1200, False)
        payment_cache._stats.update(hits=3, misses=1)

        performance = (await get_payment_metrics(db))["performance"]
        assert performance["api_latency"] == 700.0
        assert performance["slow_operations"] == 1
        assert performance["cache_hit_rate"] == 75.0
        assert "stripe.ping" in performance["operations"]
