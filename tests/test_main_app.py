"""
Tests for orderguard/main.py - app factory, correlation ids, internal auth wiring, lifespan.
"""
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from orderguard.database import get_db
from orderguard.main import create_app, lifespan


async def _mock_db():
    yield AsyncMock()


@pytest.fixture
def client():
    application = create_app()
    application.dependency_overrides[get_db] = _mock_db
    return TestClient(application)


# ---------------------------------------------------------------------------
# create_app
# ---------------------------------------------------------------------------


class TestCreateApp:
    def test_returns_fastapi_instance(self):
        assert isinstance(create_app(), FastAPI)

    def test_registers_routes(self):
        paths = {route.path for route in create_app().routes}
        assert "/api/v1/webhooks/stripe" in paths
        assert "/api/v1/orders/{order_id}/benchmarks" in paths
        assert "/api/v1/orders/{order_id}/benchmarks/compare" in paths
        assert "/api/v1/payments/reconcile" in paths
        assert "/health/payments" in paths


# ---------------------------------------------------------------------------
# CorrelationIdMiddleware
# ---------------------------------------------------------------------------


class TestCorrelationId:
    def test_generated_when_missing(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert len(response.headers["X-Correlation-ID"]) == 32

    def test_echoes_caller_id(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "trace-abc"})
        assert response.headers["X-Correlation-ID"] == "trace-abc"


# ---------------------------------------------------------------------------
# Internal routes require X-Internal-Token
# ---------------------------------------------------------------------------


class TestInternalAuth:
    def test_benchmarks_without_token(self, client):
        response = client.get(f"/api/v1/orders/{uuid.uuid4()}/benchmarks")
        assert response.status_code == 401

    def test_reconcile_with_wrong_token(self, client):
        response = client.post("/api/v1/payments/reconcile", headers={"X-Internal-Token": "nope"})
        assert response.status_code == 401

    def test_reconcile_with_token(self, client):
        summary = {"checked": 0, "updated": 0, "failed": 0, "escalated": 0}
        with patch("orderguard.api.payments.reconcile_stuck_payments", AsyncMock(return_value=summary)):
            response = client.post(
                "/api/v1/payments/reconcile", headers={"X-Internal-Token": "test-internal-token"},
            )
        assert response.status_code == 200
        assert response.json() == summary

    def test_stripe_webhook_needs_no_token(self, client):
        """The webhook authenticates by signature; a missing one is a 400, not a 401."""
        with patch("orderguard.api.webhooks.send_alert", new_callable=AsyncMock):
            response = client.post("/api/v1/webhooks/stripe", content=b"{}")
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# lifespan
# ---------------------------------------------------------------------------


class TestLifespan:
    async def test_startup_and_shutdown(self):
        with (
            patch("orderguard.utils.redis_client.close_redis", new_callable=AsyncMock) as close_redis,
            patch("orderguard.database.dispose_engine", new_callable=AsyncMock) as dispose,
        ):
            async with lifespan(FastAPI()):
                pass
        close_redis.assert_awaited_once()
        dispose.assert_awaited_once()

    async def test_reconciler_started_when_enabled(self, settings, monkeypatch):
        monkeypatch.setattr(settings, "reconciliation_enabled", True)
        with (
            patch("orderguard.workers.payment_reconciler.run_payment_reconciler", new_callable=AsyncMock) as run,
            patch("orderguard.utils.redis_client.close_redis", new_callable=AsyncMock),
            patch("orderguard.database.dispose_engine", new_callable=AsyncMock),
        ):
            async with lifespan(FastAPI()):
                pass
        run.assert_called_once()
