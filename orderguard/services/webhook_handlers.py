"""
Stripe event handlers - one per event type, selected through EVENT_HANDLERS.

Payment intent handlers mirror the intent into payment_intents, link the event
record to the order/intent, and apply the order state transition, all under the
order lock and committed before the lock is released. Customer notifications are
collected on the outcome; the processor sends them after the state commit.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.models.order import Account, Order
from orderguard.models.payment import Payment, PaymentIntentRecord
from orderguard.models.webhook_event import WebhookEventRecord
from orderguard.services import notifications, payment_cache
from orderguard.utils.alerting import AlertType, send_alert
from orderguard.utils.locks import order_lock
from orderguard.utils.logging import log_context

logger = logging.getLogger(__name__)

# A succeeded payment may only move these states forward to payment_received
SUCCESS_FROM_STATES = ("draft", "pending_confirmation", "payment_pending", "payment_failed")

# Once Stripe reports one of these, a late event must not move the mirror back
FINAL_INTENT_STATUSES = ("succeeded", "canceled")


@dataclass
class HandlerOutcome:
    status: str = "processed"  # processed | skipped
    order_id: Optional[uuid.UUID] = None
    transitioned: bool = False
    notifications: list[tuple[str, Callable[[], Awaitable]]] = field(default_factory=list)


async def send_notifications(outcome: HandlerOutcome) -> None:
    """Best-effort: the state change is already committed."""
    for name, send in outcome.notifications:
        try:
            await send()
        except Exception as e:
            logger.warning("Notification %s failed: %s", name, str(e))


def order_id_from_metadata(obj: dict) -> Optional[uuid.UUID]:
    metadata = obj.get("metadata") or {}
    raw = metadata.get("order_id") or metadata.get("orderId")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        logger.warning("Invalid order id in Stripe metadata: %s", str(raw)[:40])
        return None


async def get_intent_record(db: AsyncSession, stripe_payment_intent_id: str) -> Optional[PaymentIntentRecord]:
    result = await db.execute(
        select(PaymentIntentRecord).where(
            PaymentIntentRecord.stripe_payment_intent_id == stripe_payment_intent_id
        )
    )
    return result.scalar_one_or_none()


async def _account_email(db: AsyncSession, order: Order) -> Optional[str]:
    if not order.account_id:
        return None
    account = await db.get(Account, order.account_id)
    return account.email if account else None


def _mirror_intent(record: PaymentIntentRecord, intent: dict, event_id: str) -> None:
    """Copy Stripe's view of the intent onto our mirror row."""
    now = datetime.now(timezone.utc)
    status = intent.get("status") or record.status

    if record.status in FINAL_INTENT_STATUSES and status != record.status:
        logger.info(
            "Ignoring out-of-order status %s for payment intent %s (already %s)",
            status, record.stripe_payment_intent_id[:12], record.status,
        )
    else:
        record.status = status

    if intent.get("amount") is not None:
        record.amount = intent["amount"]
    if intent.get("amount_received") is not None:
        record.amount_received = intent["amount_received"]
    if intent.get("currency"):
        record.currency = intent["currency"]
    payment_method = intent.get("payment_method")
    if isinstance(payment_method, dict):
        payment_method = payment_method.get("id")
    if payment_method:
        record.payment_method_id = payment_method

    error = intent.get("last_payment_error")
    if error:
        record.last_error = error.get("message") or str(error)
        record.failure_code = error.get("code")
        record.failure_message = error.get("message")
    elif record.status == "succeeded":
        record.last_error = None
        record.failure_code = None
        record.failure_message = None

    record.last_webhook_event_id = event_id
    if record.status in ("requires_action", "processing", "succeeded") and not record.confirmed_at:
        record.confirmed_at = now
    if record.status == "succeeded" and not record.succeeded_at:
        record.succeeded_at = now
    if record.status == "canceled" and not record.canceled_at:
        record.canceled_at = now


OnApplied = Callable[[AsyncSession, Order, PaymentIntentRecord, dict, HandlerOutcome], Awaitable[None]]


async def _apply_intent_event(
    db: AsyncSession,
    event: dict,
    record: Optional[WebhookEventRecord],
    on_applied: Optional[OnApplied] = None,
) -> HandlerOutcome:
    intent = event["data"]["object"]
    pi_id = intent.get("id")
    if not pi_id:
        raise ValueError("payment_intent event without an id")

    mirror = await get_intent_record(db, pi_id)
    order_id = mirror.order_id if mirror else order_id_from_metadata(intent)
    if order_id is None:
        logger.warning(
            "Payment intent %s has no order reference - nothing to update",
            pi_id[:12], extra={"payment_intent_id": pi_id},
        )
        return HandlerOutcome()

    order = await db.get(Order, order_id)
    if order is None:
        logger.warning(
            "Payment intent %s references unknown order %s",
            pi_id[:12], str(order_id)[:8], extra={"payment_intent_id": pi_id},
        )
        return HandlerOutcome()

    outcome = HandlerOutcome(order_id=order.id)
    with log_context(order_id=order.id, payment_intent_id=pi_id):
        await _apply_locked(db, event, record, order, mirror, intent, on_applied, outcome)

    await payment_cache.invalidate(pi_id)
    logger.info(
        "Applied %s to order %s (state=%s)",
        event["type"], str(order.id)[:8], order.state,
        extra={"order_id": str(order.id), "event_id": event["id"], "payment_intent_id": pi_id},
    )
    return outcome


async def _apply_locked(db, event, record, order, mirror, intent, on_applied, outcome) -> None:
    pi_id = intent["id"]
    async with order_lock(str(order.id)):
        # Re-read under the lock: another writer may have moved the order
        await db.refresh(order)
        if mirror is None:
            mirror = await get_intent_record(db, pi_id)
        if mirror is None:
            mirror = PaymentIntentRecord(
                stripe_payment_intent_id=pi_id,
                order_id=order.id,
                account_id=order.account_id,
                status=intent.get("status") or "requires_payment_method",
                amount=intent.get("amount") or 0,
                currency=intent.get("currency") or "usd",
                stripe_customer_id=intent.get("customer") if isinstance(intent.get("customer"), str) else None,
                intent_metadata=intent.get("metadata") or {},
            )
            db.add(mirror)
        else:
            await db.refresh(mirror)

        _mirror_intent(mirror, intent, event["id"])
        if on_applied is not None:
            await on_applied(db, order, mirror, intent, outcome)

        await db.flush()
        if record is not None:
            record.order_id = order.id
            record.payment_intent_id = mirror.id
        await db.commit()


async def _on_succeeded(db, order, mirror, intent, outcome) -> None:
    if order.state not in SUCCESS_FROM_STATES:
        logger.info(
            "Order %s already %s - succeeded payment does not change state",
            str(order.id)[:8], order.state,
        )
        return

    now = datetime.now(timezone.utc)
    order.state = "payment_received"
    order.paid_at = now
    outcome.transitioned = True

    amount = intent.get("amount_received") or intent.get("amount") or mirror.amount
    currency = (intent.get("currency") or mirror.currency or "usd").upper()
    existing = await db.execute(
        select(Payment.id).where(Payment.transaction_id == mirror.stripe_payment_intent_id)
    )
    if existing.scalar_one_or_none() is None:
        db.add(Payment(
            order_id=order.id,
            account_id=order.account_id,
            amount=amount,
            currency=currency,
            status="completed",
            method="stripe",
            transaction_id=mirror.stripe_payment_intent_id,
            stripe_payment_intent_id=mirror.stripe_payment_intent_id,
            processed_at=now,
        ))

    email = await _account_email(db, order)
    if email:
        outcome.notifications.append((
            "payment_succeeded",
            partial(notifications.send_payment_succeeded, email, str(order.id), amount, currency),
        ))


async def _on_failed(db, order, mirror, intent, outcome) -> None:
    if order.state == "payment_pending":
        order.state = "payment_failed"
        outcome.transitioned = True
    else:
        logger.info(
            "Order %s is %s - failed payment does not change state",
            str(order.id)[:8], order.state,
        )

    error = intent.get("last_payment_error") or {}
    error_message = error.get("message") or "Payment failed"
    error_code = error.get("code") or "unknown_error"

    email = await _account_email(db, order)
    if email:
        outcome.notifications.append((
            "payment_failed",
            partial(notifications.send_payment_failed, email, str(order.id), error_message),
        ))
    outcome.notifications.append((
        "payment_failed_alert",
        partial(
            send_alert,
            AlertType.PAYMENT_FAILED,
            f"Payment failed for order {order.id}: {error_code} - {error_message}",
            severity="error",
            extra={
                "order_id": str(order.id),
                "customer": email or "unknown",
                "payment_intent": mirror.stripe_payment_intent_id,
            },
            dedup_key=mirror.stripe_payment_intent_id + ":" + (mirror.last_webhook_event_id or ""),
        ),
    ))


async def _on_requires_action(db, order, mirror, intent, outcome) -> None:
    email = await _account_email(db, order)
    if email:
        outcome.notifications.append((
            "payment_action_required",
            partial(notifications.send_payment_action_required, email, str(order.id)),
        ))


async def handle_payment_intent_succeeded(db, event, record) -> HandlerOutcome:
    return await _apply_intent_event(db, event, record, _on_succeeded)


async def handle_payment_intent_failed(db, event, record) -> HandlerOutcome:
    return await _apply_intent_event(db, event, record, _on_failed)


async def handle_payment_intent_canceled(db, event, record) -> HandlerOutcome:
    return await _apply_intent_event(db, event, record)


async def handle_payment_intent_requires_action(db, event, record) -> HandlerOutcome:
    return await _apply_intent_event(db, event, record, _on_requires_action)


async def handle_payment_intent_processing(db, event, record) -> HandlerOutcome:
    return await _apply_intent_event(db, event, record)


async def handle_payment_method_attached(db, event, record) -> HandlerOutcome:
    method = event["data"]["object"]
    logger.info(
        "Payment method attached: %s to customer %s",
        method.get("id"), method.get("customer"),
    )
    return HandlerOutcome()


async def handle_customer_event(db, event, record) -> HandlerOutcome:
    logger.info("Customer event received: %s", event["type"])
    return HandlerOutcome()


EVENT_HANDLERS: dict[str, Callable[..., Awaitable[HandlerOutcome]]] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "payment_intent.canceled": handle_payment_intent_canceled,
    "payment_intent.requires_action": handle_payment_intent_requires_action,
    "payment_intent.processing": handle_payment_intent_processing,
    "payment_method.attached": handle_payment_method_attached,
    "customer.created": handle_customer_event,
    "customer.updated": handle_customer_event,
}
