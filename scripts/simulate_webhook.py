"""
Simulate a signed Stripe webhook delivery against a local instance.

Signs the payload the way Stripe does (t=<timestamp>,v1=<HMAC-SHA256 of "t.body">)
with STRIPE_WEBHOOK_SECRET, so the full verification path runs.

Usage:
    python scripts/simulate_webhook.py --order-id <uuid>
    python scripts/simulate_webhook.py --type payment_intent.payment_failed --order-id <uuid>
    python scripts/simulate_webhook.py --event-id evt_123 --repeat 2   # idempotency check
"""
import argparse
import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid

import httpx

from orderguard.config import get_settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_event(event_type: str, event_id: str, order_id: str, payment_intent_id: str) -> dict:
    status = {
        "payment_intent.succeeded": "succeeded",
        "payment_intent.payment_failed": "requires_payment_method",
        "payment_intent.canceled": "canceled",
        "payment_intent.requires_action": "requires_action",
        "payment_intent.processing": "processing",
    }.get(event_type, "processing")

    intent = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "amount": 50000,
        "amount_received": 50000 if status == "succeeded" else 0,
        "currency": "usd",
        "status": status,
        "metadata": {"order_id": order_id},
    }
    if status == "requires_payment_method":
        intent["last_payment_error"] = {"code": "card_declined", "message": "Your card was declined."}

    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": intent},
    }


def sign(payload: str, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


async def send(payload: str, secret: str):
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": sign(payload, secret, int(time.time())),
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhooks/stripe", content=payload, headers=headers,
        )
        logger.info("Webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate a Stripe webhook delivery")
    parser.add_argument("--type", default="payment_intent.succeeded")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--payment-intent-id", default=None)
    parser.add_argument("--repeat", type=int, default=1)
    args = parser.parse_args()

    secret = get_settings().stripe_webhook_secret
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET must be set to sign the payload")
        return

    event = build_event(
        args.type,
        args.event_id or f"evt_{uuid.uuid4().hex[:24]}",
        args.order_id,
        args.payment_intent_id or f"pi_{uuid.uuid4().hex[:24]}",
    )
    payload = json.dumps(event)
    for _ in range(args.repeat):
        await send(payload, secret)


if __name__ == "__main__":
    asyncio.run(main())
