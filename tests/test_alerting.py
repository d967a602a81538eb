"""
Tests for orderguard/utils/alerting.py - cooldown dedup and channel fan-out.
"""
from unittest.mock import AsyncMock, patch

import pytest

from orderguard.utils.alerting import AlertType, send_alert
from orderguard.utils.logging import log_context


@pytest.fixture
def channels():
    with patch("orderguard.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as webhook, \
         patch("orderguard.utils.alerting._send_email_alert", new_callable=AsyncMock) as email:
        yield webhook, email


class TestCooldown:
    async def test_same_incident_alerts_once(self, channels):
        webhook, _ = channels
        assert await send_alert(AlertType.WEBHOOK_PERMANENT_FAILURE, "dead", dedup_key="evt_1") is True
        assert await send_alert(AlertType.WEBHOOK_PERMANENT_FAILURE, "dead", dedup_key="evt_1") is False
        assert webhook.await_count == 1

    async def test_distinct_incidents_both_alert(self, channels):
        webhook, _ = channels
        assert await send_alert(AlertType.STUCK_PAYMENT, "stuck", dedup_key="pi_1") is True
        assert await send_alert(AlertType.STUCK_PAYMENT, "stuck", dedup_key="pi_2") is True
        assert webhook.await_count == 2

    async def test_unkeyed_alerts_share_type_cooldown(self, channels):
        assert await send_alert(AlertType.HEALTH_CHECK_FAILED, "down") is True
        assert await send_alert(AlertType.HEALTH_CHECK_FAILED, "still down") is False

    async def test_redis_cooldown_used_when_available(self, channels):
        redis = AsyncMock()
        redis.set.return_value = None
        with patch("orderguard.utils.redis_client.get_redis", AsyncMock(return_value=redis)):
            assert await send_alert(AlertType.PAYMENT_FAILED, "declined", dedup_key="pi_1") is False
        redis.set.assert_awaited_once()
        assert redis.set.call_args.args[0] == "orderguard:alert_cooldown:payment_failed:pi_1"


class TestChannels:
    async def test_warning_skips_email(self, channels):
        webhook, email = channels
        await send_alert(AlertType.WEBHOOK_SIGNATURE_INVALID, "bad sig", severity="warning")
        webhook.assert_awaited_once()
        email.assert_not_called()

    async def test_critical_sends_email(self, channels):
        _, email = channels
        await send_alert(AlertType.STUCK_PAYMENT, "stuck for a day", severity="critical", dedup_key="pi_9")
        email.assert_awaited_once()

    async def test_correlation_id_passed_through(self, channels):
        webhook, _ = channels
        await send_alert(AlertType.PAYMENT_FAILED, "declined", correlation_id="cid-1", dedup_key="x")
        assert webhook.call_args.args[3] == "cid-1"

    async def test_bound_order_context_is_attached(self, channels):
        webhook, email = channels
        with log_context(order_id="ord-1", payment_intent_id="pi_1"):
            await send_alert(
                AlertType.PAYMENT_FAILED, "declined", dedup_key="pi_1",
                extra={"payment_intent_id": "pi_override"},
            )
        extra = webhook.call_args.args[4]
        assert extra == {"order_id": "ord-1", "payment_intent_id": "pi_override"}
        assert email.call_args.args[3] == extra


class TestEmailAlert:
    async def test_skipped_without_recipient(self):
        with patch("orderguard.services.notifications._send_transactional", new_callable=AsyncMock) as send:
            from orderguard.utils.alerting import _send_email_alert
            await _send_email_alert("stuck_payment", "msg", None, None)
        send.assert_not_called()

    async def test_sent_to_configured_recipient(self, settings, monkeypatch):
        monkeypatch.setattr(settings, "alert_recipient_email", "ops@example.com")
        with patch("orderguard.services.notifications._send_transactional", new_callable=AsyncMock) as send:
            from orderguard.utils.alerting import _send_email_alert
            await _send_email_alert("stuck_payment", "msg", "cid-2", {"order_id": "abc"})
        send.assert_awaited_once()
        assert send.call_args.args[0] == "ops@example.com"
        assert "stuck_payment" in send.call_args.args[1]
