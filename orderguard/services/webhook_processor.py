"""
Stripe webhook processor - verify, deduplicate, dispatch, and record the outcome.

Pipeline:
1. Size guard (declared and actual body, 1 MiB) and per-IP rate limit
2. Signature verification (no record is written for a bad signature)
3. Idempotency: the event id is UNIQUE in payment_webhook_events
4. Pending record written before any side effect
5. Dispatch through EVENT_HANDLERS; unknown types are marked skipped
6. Handler applies intent/order changes under the order lock
7. Bookkeeping: processed, or failed with a retryable 500, or after
   max attempts failed_permanent with one alert and a 200

Stripe's own redelivery schedule drives retries; nothing here reschedules.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import get_settings
from orderguard.exceptions import (
    PayloadTooLargeError,
    RateLimitedError,
    WebhookProcessingError,
)
from orderguard.models.webhook_event import TERMINAL_STATUSES, WebhookEventRecord
from orderguard.services.payment_provider import verify_webhook_signature
from orderguard.services.webhook_handlers import (
    EVENT_HANDLERS,
    HandlerOutcome,
    send_notifications,
)
from orderguard.utils.alerting import AlertType, send_alert
from orderguard.utils.logging import get_correlation_id, log_context
from orderguard.utils.metrics import operation_metrics
from orderguard.utils.rate_limiter import check_webhook_rate_limit

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    status: str  # processed | skipped | duplicate | failed_permanent
    retry_count: int = 0


def enforce_size_limit(size: Optional[int]) -> None:
    limit = get_settings().webhook_max_payload_bytes
    if size is not None and size > limit:
        logger.error("Webhook payload too large: %d bytes", size)
        raise PayloadTooLargeError(size, limit)


async def process_stripe_webhook(
    db: AsyncSession,
    payload: bytes,
    sig_header: Optional[str],
    client_ip: str = "unknown",
    declared_length: Optional[int] = None,
) -> WebhookResult:
    """
    Run one Stripe delivery through the pipeline.

    Raises PayloadTooLargeError, RateLimitedError, WebhookValidationError
    (nothing recorded) or WebhookProcessingError (recorded as failed, retryable).
    """
    enforce_size_limit(declared_length)
    enforce_size_limit(len(payload))

    allowed, retry_after = await check_webhook_rate_limit(client_ip)
    if not allowed:
        logger.warning("Webhook rate limit exceeded for %s", client_ip)
        raise RateLimitedError(client_ip, retry_after or 60)

    event = verify_webhook_signature(payload, sig_header)
    event_id = event["id"]
    event_type = event["type"]

    with log_context(event_id=event_id, event_type=event_type):
        record = await _claim_event(db, event)
        if record is None:
            logger.info("Webhook event %s already handled", event_id)
            return WebhookResult(event_id, event_type, "duplicate")

        return await _dispatch(db, event, record)


async def _get_record(db: AsyncSession, event_id: str) -> Optional[WebhookEventRecord]:
    result = await db.execute(
        select(WebhookEventRecord).where(WebhookEventRecord.event_id == event_id)
    )
    return result.scalar_one_or_none()


async def _claim_event(db: AsyncSession, event: dict) -> Optional[WebhookEventRecord]:
    """
    Return the record this delivery may process, or None for a duplicate.

    New ids get a pending row (the UNIQUE event id settles concurrent inserts).
    A failed row is a redelivery and is re-claimed with a conditional update.
    A pending row is in flight, unless it has not moved for the stale window.
    """
    event_id = event["id"]
    existing = await _get_record(db, event_id)

    if existing is None:
        record = WebhookEventRecord(
            event_id=event_id,
            event_type=event["type"],
            status="pending",
            retry_count=0,
            event_data=event,
            correlation_id=get_correlation_id(),
        )
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Concurrent delivery of %s lost the insert race", event_id)
            return None
        return record

    if existing.status in TERMINAL_STATUSES:
        return None

    now = datetime.now(timezone.utc)
    conditions = [WebhookEventRecord.id == existing.id]
    if existing.status == "failed":
        conditions.append(WebhookEventRecord.status == "failed")
    elif existing.status == "pending":
        stale_before = now - timedelta(seconds=get_settings().webhook_pending_stale_seconds)
        conditions.append(WebhookEventRecord.status == "pending")
        conditions.append(WebhookEventRecord.updated_at < stale_before)
    else:
        logger.warning("Webhook %s has unknown status %s", event_id, existing.status)
        return None

    result = await db.execute(
        update(WebhookEventRecord)
        .where(*conditions)
        .values(status="pending", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None

    await db.refresh(existing)
    logger.info(
        "Re-claimed webhook %s for attempt %d", event_id, existing.retry_count + 1,
        extra={"event_id": event_id},
    )
    return existing


async def _dispatch(db: AsyncSession, event: dict, record: WebhookEventRecord) -> WebhookResult:
    event_id = event["id"]
    event_type = event["type"]
    handler = EVENT_HANDLERS.get(event_type)

    try:
        async with operation_metrics.track(f"webhook.{event_type}"):
            if handler is None:
                logger.info("Unhandled webhook event type: %s", event_type)
                outcome = HandlerOutcome(status="skipped")
            else:
                outcome = await handler(db, event, record)
    except Exception as e:
        return await _record_failure(db, event, record, e)

    record.status = outcome.status
    record.error_message = None
    record.processed_at = datetime.now(timezone.utc)
    await db.commit()

    logger.info(
        "Webhook %s %s (%s)", event_id, outcome.status, event_type,
        extra={"event_id": event_id, "event_type": event_type},
    )

    await send_notifications(outcome)
    return WebhookResult(event_id, event_type, outcome.status, record.retry_count)


async def _record_failure(
    db: AsyncSession,
    event: dict,
    record: WebhookEventRecord,
    error: Exception,
) -> WebhookResult:
    """Count the failed attempt. Raises WebhookProcessingError until attempts run out."""
    event_id = event["id"]
    max_attempts = get_settings().webhook_max_attempts

    await db.rollback()
    await db.refresh(record)
    record.retry_count = (record.retry_count or 0) + 1
    record.error_message = f"{type(error).__name__}: {error}"[:2000]

    if record.retry_count >= max_attempts:
        record.status = "failed_permanent"
        await db.commit()
        logger.error(
            "Webhook %s failed permanently after %d attempts: %s",
            event_id, record.retry_count, str(error),
            extra={"event_id": event_id, "event_type": event["type"]},
        )
        await send_alert(
            AlertType.WEBHOOK_PERMANENT_FAILURE,
            f"Stripe event {event_id} ({event['type']}) failed {record.retry_count} times "
            f"and will not be retried: {error}",
            severity="critical",
            extra={"event_id": event_id, "order_id": str(record.order_id) if record.order_id else None},
            dedup_key=event_id,
        )
        return WebhookResult(event_id, event["type"], "failed_permanent", record.retry_count)

    record.status = "failed"
    await db.commit()
    logger.warning(
        "Webhook %s failed (attempt %d/%d): %s",
        event_id, record.retry_count, max_attempts, str(error),
        extra={"event_id": event_id, "event_type": event["type"]},
    )
    raise WebhookProcessingError(event_id, record.retry_count, str(error))
