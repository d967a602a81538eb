"""
Tests for orderguard/services/payment_reconciliation.py - catching up on missed webhooks.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from factories import make_order
from orderguard.models import Payment, PaymentIntentRecord
from orderguard.services.payment_reconciliation import (
    reconcile_stuck_payments,
    synthetic_event,
)
from orderguard.services.webhook_handlers import EVENT_HANDLERS

RETRIEVE = "orderguard.services.payment_reconciliation.retrieve_payment_intent"


async def stuck_intent(db, order, pi_id="pi_stuck_1", status="processing", age=timedelta(hours=2)):
    then = datetime.now(timezone.utc) - age
    record = PaymentIntentRecord(
        stripe_payment_intent_id=pi_id,
        order_id=order.id,
        account_id=order.account_id,
        status=status,
        amount=50000,
        currency="usd",
        created_at=then,
        updated_at=then,
    )
    db.add(record)
    await db.commit()
    return record


def stripe_intent(pi_id, status, order_id, amount=50000):
    return {
        "id": pi_id,
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": "usd",
        "metadata": {"order_id": str(order_id)},
    }


@pytest.fixture
def quiet_alerts():
    with patch("orderguard.utils.alerting._send_webhook_alert", new_callable=AsyncMock), \
         patch("orderguard.utils.alerting._send_email_alert", new_callable=AsyncMock):
        yield


@pytest.fixture
def emails():
    with patch("orderguard.services.notifications.send_payment_succeeded", new_callable=AsyncMock) as ok, \
         patch("orderguard.services.notifications.send_payment_failed", new_callable=AsyncMock) as failed:
        yield {"succeeded": ok, "failed": failed}


def test_synthetic_event_shape():
    event = synthetic_event({"id": "pi_1", "status": "requires_payment_method"})
    assert event["id"] == "reconcile:pi_1:requires_payment_method"
    assert event["type"] == "payment_intent.payment_failed"
    assert event["data"]["object"]["id"] == "pi_1"


async def test_nothing_stuck(db):
    with patch(RETRIEVE, new_callable=AsyncMock) as retrieve:
        summary = await reconcile_stuck_payments(db)
    assert summary == {"checked": 0, "updated": 0, "failed": 0, "escalated": 0}
    retrieve.assert_not_called()


async def test_recent_intents_are_left_alone(db):
    order = await make_order(db)
    await stuck_intent(db, order, age=timedelta(minutes=10))
    with patch(RETRIEVE, new_callable=AsyncMock) as retrieve:
        summary = await reconcile_stuck_payments(db)
    assert summary["checked"] == 0
    retrieve.assert_not_called()


async def test_missed_success_is_applied(db, emails):
    order = await make_order(db)
    await stuck_intent(db, order)
    fetched = stripe_intent("pi_stuck_1", "succeeded", order.id)

    with patch(RETRIEVE, AsyncMock(return_value=fetched)) as retrieve:
        summary = await reconcile_stuck_payments(db)

    retrieve.assert_awaited_once_with("pi_stuck_1", use_cache=False)
    assert summary == {"checked": 1, "updated": 1, "failed": 0, "escalated": 0}
    await db.refresh(order)
    assert order.state == "payment_received"
    payments = (await db.execute(select(func.count()).select_from(Payment))).scalar_one()
    assert payments == 1
    emails["succeeded"].assert_awaited_once()


async def test_missed_failure_is_applied(db, emails, quiet_alerts):
    order = await make_order(db)
    await stuck_intent(db, order, status="requires_action")
    fetched = stripe_intent("pi_stuck_1", "requires_payment_method", order.id)

    with patch(RETRIEVE, AsyncMock(return_value=fetched)):
        summary = await reconcile_stuck_payments(db)

    assert summary["updated"] == 1
    await db.refresh(order)
    assert order.state == "payment_failed"
    emails["failed"].assert_awaited_once()


async def test_long_processing_escalates_once(db, quiet_alerts):
    order = await make_order(db)
    await stuck_intent(db, order, age=timedelta(hours=30))
    fetched = stripe_intent("pi_stuck_1", "processing", order.id)

    with patch(RETRIEVE, AsyncMock(return_value=fetched)):
        first = await reconcile_stuck_payments(db)
        second = await reconcile_stuck_payments(db)

    assert first == {"checked": 1, "updated": 0, "failed": 0, "escalated": 1}
    assert second["escalated"] == 0


async def test_unchanged_but_young_is_not_escalated(db):
    order = await make_order(db)
    await stuck_intent(db, order, age=timedelta(hours=3))
    fetched = stripe_intent("pi_stuck_1", "processing", order.id)

    with patch(RETRIEVE, AsyncMock(return_value=fetched)), \
         patch("orderguard.services.payment_reconciliation.send_alert", new_callable=AsyncMock) as alert:
        summary = await reconcile_stuck_payments(db)

    assert summary == {"checked": 1, "updated": 0, "failed": 0, "escalated": 0}
    alert.assert_not_called()


async def test_fetch_error_is_counted(db):
    first = await make_order(db)
    second = await make_order(db, email="second@example.com")
    await stuck_intent(db, first, pi_id="pi_a")
    await stuck_intent(db, second, pi_id="pi_b")

    async def retrieve(pi_id, use_cache=True):
        if pi_id == "pi_a":
            raise RuntimeError("stripe down")
        return stripe_intent(pi_id, "processing", second.id)

    with patch(RETRIEVE, side_effect=retrieve):
        summary = await reconcile_stuck_payments(db)
    assert summary["checked"] == 2
    assert summary["failed"] == 1
    assert summary["updated"] == 0


async def test_handler_error_rolls_back_and_continues(db, emails):
    first = await make_order(db)
    second = await make_order(db, email="second@example.com")
    await stuck_intent(db, first, pi_id="pi_a", status="requires_action")
    await stuck_intent(db, second, pi_id="pi_b")

    async def retrieve(pi_id, use_cache=True):
        order_id = first.id if pi_id == "pi_a" else second.id
        status = "canceled" if pi_id == "pi_a" else "succeeded"
        return stripe_intent(pi_id, status, order_id)

    broken = AsyncMock(side_effect=RuntimeError("lock backend down"))
    with patch(RETRIEVE, side_effect=retrieve), \
         patch.dict(EVENT_HANDLERS, {"payment_intent.canceled": broken}):
        summary = await reconcile_stuck_payments(db)

    assert summary["failed"] == 1
    assert summary["updated"] == 1
    await db.refresh(second)
    assert second.state == "payment_received"

