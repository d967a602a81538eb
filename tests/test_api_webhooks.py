"""
Tests for orderguard/api/webhooks.py - Stripe webhook route and its status mapping.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from factories import intent_event, make_order, stripe_signature
from orderguard.api.webhooks import _client_ip, _declared_length, stripe_webhook
from orderguard.exceptions import (
    PayloadTooLargeError,
    RateLimitedError,
    WebhookProcessingError,
    WebhookValidationError,
)
from orderguard.services.webhook_processor import WebhookResult

PROCESS = "orderguard.api.webhooks.process_stripe_webhook"


def _make_request(body: bytes = b"{}", headers: dict = None, host: str = "203.0.113.7"):
    request = MagicMock()
    request.headers = {"stripe-signature": "t=1,v1=abc", **(headers or {})}
    request.body = AsyncMock(return_value=body)
    request.client.host = host
    return request


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestClientIp:
    def test_forwarded_for_first_hop(self):
        request = _make_request(headers={"x-forwarded-for": "198.51.100.4, 10.0.0.1"})
        assert _client_ip(request) == "198.51.100.4"

    def test_falls_back_to_peer(self):
        assert _client_ip(_make_request()) == "203.0.113.7"

    def test_no_client(self):
        request = _make_request()
        request.client = None
        assert _client_ip(request) == "unknown"


class TestDeclaredLength:
    def test_parses_header(self):
        assert _declared_length(_make_request(headers={"content-length": "512"})) == 512

    def test_missing_or_garbage(self):
        assert _declared_length(_make_request()) is None
        assert _declared_length(_make_request(headers={"content-length": "lots"})) is None


# ---------------------------------------------------------------------------
# POST /api/v1/webhooks/stripe
# ---------------------------------------------------------------------------


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_processed_returns_received(self):
        """A handled event answers 200 with the processing status."""
        request = _make_request(body=b'{"id": "evt_1"}', headers={"x-forwarded-for": "198.51.100.4"})
        result = WebhookResult("evt_1", "payment_intent.succeeded", "processed")
        db = AsyncMock()
        with patch(PROCESS, AsyncMock(return_value=result)) as process:
            response = await stripe_webhook(request, db)

        assert response == {"received": True, "status": "processed"}
        args, kwargs = process.call_args
        assert args == (db, b'{"id": "evt_1"}', "t=1,v1=abc")
        assert kwargs["client_ip"] == "198.51.100.4"

    @pytest.mark.asyncio
    async def test_duplicate_and_permanent_failure_are_200(self):
        """Stripe must stop redelivering once an event is final."""
        for status in ("duplicate", "failed_permanent", "skipped"):
            result = WebhookResult("evt_1", "payment_intent.succeeded", status)
            with patch(PROCESS, AsyncMock(return_value=result)):
                response = await stripe_webhook(_make_request(), AsyncMock())
            assert response["status"] == status

    @pytest.mark.asyncio
    async def test_declared_size_rejected_before_reading_body(self, settings):
        request = _make_request(
            headers={"content-length": str(settings.webhook_max_payload_bytes + 1)},
        )
        with patch(PROCESS, new_callable=AsyncMock) as process:
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(request, AsyncMock())
        assert exc_info.value.status_code == 413
        request.body.assert_not_called()
        process.assert_not_called()

    @pytest.mark.asyncio
    async def test_rate_limited_sets_retry_after(self):
        with patch(PROCESS, AsyncMock(side_effect=RateLimitedError("ip:1.2.3.4", 42))):
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(_make_request(), AsyncMock())
        assert exc_info.value.status_code == 429
        assert exc_info.value.headers == {"Retry-After": "42"}

    @pytest.mark.asyncio
    async def test_bad_signature_is_400_and_alerts(self):
        with patch(PROCESS, AsyncMock(side_effect=WebhookValidationError("Invalid signature"))), \
             patch("orderguard.api.webhooks.send_alert", new_callable=AsyncMock) as alert:
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(_make_request(), AsyncMock())
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Invalid signature"
        alert.assert_awaited_once()
        assert alert.call_args.kwargs["dedup_key"] == "203.0.113.7"
        assert alert.call_args.kwargs["severity"] == "warning"

    @pytest.mark.asyncio
    async def test_oversized_body_is_413_without_alert(self):
        with patch(PROCESS, AsyncMock(side_effect=PayloadTooLargeError(2_000_000, 1_048_576))), \
             patch("orderguard.api.webhooks.send_alert", new_callable=AsyncMock) as alert:
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(_make_request(), AsyncMock())
        assert exc_info.value.status_code == 413
        alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_handler_failure_is_500_for_redelivery(self):
        with patch(PROCESS, AsyncMock(side_effect=WebhookProcessingError("evt_1", 2, "boom"))):
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(_make_request(), AsyncMock())
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self):
        with patch(PROCESS, AsyncMock(side_effect=KeyError("data"))):
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(_make_request(), AsyncMock())
        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Webhook processing failed"


class TestStripeWebhookEndToEnd:
    @pytest.mark.asyncio
    async def test_signed_delivery_updates_order(self, db):
        """Real signature, real processor, SQLite session."""
        order = await make_order(db)
        payload = json.dumps(intent_event(order_id=order.id, event_id="evt_e2e")).encode()
        request = _make_request(body=payload, headers={"stripe-signature": stripe_signature(payload)})

        with patch("orderguard.services.notifications.send_payment_succeeded", new_callable=AsyncMock):
            first = await stripe_webhook(request, db)
            second = await stripe_webhook(request, db)

        assert first == {"received": True, "status": "processed"}
        assert second == {"received": True, "status": "duplicate"}
        await db.refresh(order)
        assert order.state == "payment_received"
