"""
Stuck payment reconciliation - catch up on payment intents whose webhooks never arrived.

An intent is stuck when it has sat in processing / requires_action /
requires_confirmation past the stuck threshold (1 hour). Each stuck intent is
fetched from Stripe (uncached, breaker-guarded, batched). A changed status is
applied through the same handlers the webhook path uses, so order transitions,
the Payment ledger row and customer emails behave identically.

An intent still processing after the escalation threshold (24 hours) raises one
stuck_payment alert per intent.
"""
import logging
from datetime import datetime, timedelta, timezone
from functools import partial

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import get_settings
from orderguard.models.payment import PENDING_INTENT_STATUSES, PaymentIntentRecord
from orderguard.services.payment_provider import retrieve_payment_intent
from orderguard.services.webhook_handlers import EVENT_HANDLERS, send_notifications
from orderguard.utils.alerting import AlertType, send_alert
from orderguard.utils.batching import process_in_batches

logger = logging.getLogger(__name__)

MAX_INTENTS_PER_RUN = 100

# Stripe status -> the event type that would have reported it
STATUS_EVENT_TYPES = {
    "succeeded": "payment_intent.succeeded",
    "requires_payment_method": "payment_intent.payment_failed",
    "canceled": "payment_intent.canceled",
    "requires_action": "payment_intent.requires_action",
    "processing": "payment_intent.processing",
}


def synthetic_event(intent: dict) -> dict:
    """Shape a fetched intent like the webhook event that would have carried it."""
    status = intent.get("status") or ""
    return {
        "id": f"reconcile:{intent.get('id')}:{status}",
        "type": STATUS_EVENT_TYPES.get(status, "payment_intent.processing"),
        "data": {"object": intent},
    }


async def reconcile_stuck_payments(db: AsyncSession) -> dict:
    """
    Returns: {"checked": int, "updated": int, "failed": int, "escalated": int}
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    stuck_before = now - timedelta(seconds=settings.stuck_payment_after_seconds)
    escalate_before = now - timedelta(seconds=settings.stuck_payment_escalate_after_seconds)

    result = await db.execute(
        select(PaymentIntentRecord)
        .where(
            PaymentIntentRecord.status.in_(PENDING_INTENT_STATUSES),
            PaymentIntentRecord.updated_at < stuck_before,
        )
        .order_by(PaymentIntentRecord.updated_at)
        .limit(MAX_INTENTS_PER_RUN)
    )
    stuck = list(result.scalars().all())
    summary = {"checked": len(stuck), "updated": 0, "failed": 0, "escalated": 0}
    if not stuck:
        return summary

    # Age comparison stays in SQL; SQLite hands back naive datetimes
    overdue = await db.execute(
        select(PaymentIntentRecord.id).where(
            PaymentIntentRecord.id.in_([r.id for r in stuck]),
            PaymentIntentRecord.status == "processing",
            PaymentIntentRecord.created_at < escalate_before,
        )
    )
    overdue_ids = set(overdue.scalars().all())

    # Plain snapshot: a rollback below expires the ORM rows
    rows = [(r.id, r.stripe_payment_intent_id, r.status, r.order_id) for r in stuck]
    pi_ids = [row[1] for row in rows]
    logger.info("Reconciling %d stuck payment intents", len(rows))
    fetched = await process_in_batches(
        pi_ids,
        partial(retrieve_payment_intent, use_cache=False),
        batch_size=settings.provider_batch_size,
        delay_seconds=settings.provider_batch_delay_seconds,
    )

    for (record_id, pi_id, previous, order_id), intent in zip(rows, fetched.results):
        if isinstance(intent, Exception):
            summary["failed"] += 1
            logger.warning(
                "Could not fetch payment intent %s: %s", pi_id[:12], str(intent),
                extra={"payment_intent_id": pi_id},
            )
            continue

        stripe_status = intent.get("status")
        if stripe_status and stripe_status != previous:
            event = synthetic_event(intent)
            try:
                outcome = await EVENT_HANDLERS[event["type"]](db, event, None)
            except Exception as e:
                await db.rollback()
                summary["failed"] += 1
                logger.error(
                    "Reconciliation of %s failed: %s", pi_id[:12], str(e),
                    extra={"payment_intent_id": pi_id},
                )
                continue
            summary["updated"] += 1
            logger.info(
                "Reconciled payment intent %s: %s -> %s",
                pi_id[:12], previous, stripe_status,
                extra={"payment_intent_id": pi_id},
            )
            await send_notifications(outcome)
            continue

        if record_id in overdue_ids:
            escalated = await send_alert(
                AlertType.STUCK_PAYMENT,
                f"Payment intent {pi_id} has been processing for over "
                f"{settings.stuck_payment_escalate_after_seconds // 3600} hours",
                severity="critical",
                extra={"payment_intent": pi_id, "order_id": str(order_id)},
                dedup_key=pi_id,
            )
            if escalated:
                summary["escalated"] += 1

    logger.info(
        "Reconciliation finished: %d checked, %d updated, %d failed, %d escalated",
        summary["checked"], summary["updated"], summary["failed"], summary["escalated"],
    )
    return summary
