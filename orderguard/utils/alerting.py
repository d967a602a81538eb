"""
Operational alerting - payment failures, dead webhooks, stuck payments, open breakers.

Alert channels:
1. Structured log (always) - at ERROR/CRITICAL level, WARNING for warning severity
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var
3. Ops email (error/critical severity) - ALERT_RECIPIENT_EMAIL via SendGrid

Rate limiting: per-key cooldowns prevent alert storms. The key is the alert type,
plus an optional dedup_key (event id, payment intent id) so the same incident
alerts once while distinct incidents of the same type still get through.
Cooldowns stored in Redis, with an in-memory fallback.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds). Keyed incidents use long cooldowns so
# a redelivered dead webhook or a persistently stuck payment alerts once.
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_permanent_failure": 7 * 24 * 3600,
    "stuck_payment": 24 * 3600,
    "circuit_opened": 600,
}

# In-memory fallback when Redis is down (cleared on restart, but prevents alert storms)
_local_cooldowns: dict[str, float] = {}  # cooldown key -> expiry timestamp


def _get_cooldown_seconds(alert_type: str) -> int:
    """Get cooldown duration for an alert type (per-type override or default)."""
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    WEBHOOK_PERMANENT_FAILURE = "webhook_permanent_failure"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    PAYMENT_FAILED = "payment_failed"
    STUCK_PAYMENT = "stuck_payment"
    CIRCUIT_OPENED = "circuit_opened"
    HEALTH_CHECK_FAILED = "health_check_failed"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    dedup_key: Optional[str] = None,
) -> bool:
    """
    Send an alert through all configured channels.
    Returns False when the alert was suppressed by its cooldown.
    """
    cooldown_key = f"{alert_type}:{dedup_key}" if dedup_key else alert_type
    if not await _acquire_cooldown(cooldown_key, _get_cooldown_seconds(alert_type)):
        return False

    from orderguard.utils.logging import get_correlation_id, get_log_context
    cid = correlation_id or get_correlation_id()
    extra = {**get_log_context(), **(extra or {})} or None

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    elif severity == "warning":
        logger.warning(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)

    if severity in ("critical", "error"):
        await _send_email_alert(alert_type, message, cid, extra)
    return True


async def _acquire_cooldown(cooldown_key: str, cooldown: int) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.

    Uses Redis SET NX EX (atomic) to eliminate the race between check and record.
    Falls back to in-memory dict when Redis is unavailable or not configured.
    """
    try:
        from orderguard.utils.redis_client import get_redis
        redis = await get_redis()
        if redis is not None:
            acquired = await redis.set(
                f"orderguard:alert_cooldown:{cooldown_key}", "1", nx=True, ex=cooldown,
            )
            return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))

    now = time.monotonic()
    if now < _local_cooldowns.get(cooldown_key, 0):
        return False
    _local_cooldowns[cooldown_key] = now + cooldown
    return True


def reset_local_cooldowns() -> None:
    _local_cooldowns.clear()


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from orderguard.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        severity_emoji = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(
            severity, "ℹ️"
        )
        content = f"{severity_emoji} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert sending failure should never crash the system
        logger.warning("Failed to send webhook alert: %s", str(e))


async def _send_email_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert via transactional email to the configured alert recipient."""
    try:
        from orderguard.services.notifications import _send_transactional
        from orderguard.config import get_settings

        alert_email = get_settings().alert_recipient_email
        if not alert_email:
            logger.debug("Skipping email alert: no alert_recipient_email configured")
            return

        subject = f"OrderGuard Alert: {alert_type}"
        details = ""
        if correlation_id:
            details += f"<p><strong>Correlation ID:</strong> {correlation_id}</p>"
        if extra:
            for key, val in extra.items():
                details += f"<p><strong>{key}:</strong> {val}</p>"

        html = f"""
        <div style="font-family: -apple-system, sans-serif; max-width: 480px; margin: 0 auto; padding: 20px;">
          <h2 style="color: #ef4444; font-size: 18px;">Alert: {alert_type}</h2>
          <p style="color: #555; font-size: 14px;">{message}</p>
          {details}
          <hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;" />
          <p style="color: #999; font-size: 11px;">OrderGuard Payment Monitoring</p>
        </div>
        """
        text = f"Alert: {alert_type}\n\n{message}\n\nCorrelation ID: {correlation_id or 'N/A'}"

        await _send_transactional(alert_email, subject, html, text)
    except Exception as e:
        logger.warning("Failed to send email alert: %s", str(e))
