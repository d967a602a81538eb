"""
Stripe payment provider - signature verification and payment intent lookups.

All Stripe SDK calls are synchronous and run via run_in_executor, inside the
circuit breaker so a failing Stripe is not hammered by retries.
"""
import asyncio
import json
import logging
from typing import Optional

from orderguard.config import get_settings
from orderguard.exceptions import TransientDependencyError, WebhookValidationError
from orderguard.services import payment_cache
from orderguard.utils.circuit_breaker import get_circuit_breaker
from orderguard.utils.metrics import operation_metrics

logger = logging.getLogger(__name__)


def _get_stripe():
    """Get configured Stripe module with per-request API key. Raises if not configured."""
    import stripe
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise ValueError("Stripe secret key not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 1
    return stripe


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous Stripe SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


async def _guarded(operation: str, func, *args, **kwargs):
    """Stripe call under the breaker, timed into the operation metrics."""
    settings = get_settings()

    async def call():
        async with operation_metrics.track(operation):
            return await _run_sync(func, *args, **kwargs)

    return await get_circuit_breaker().execute(
        operation,
        call,
        failure_threshold=settings.breaker_failure_threshold,
        timeout_ms=settings.stripe_api_timeout_seconds * 1000,
        reset_timeout_ms=settings.breaker_reset_timeout_ms,
    )


def verify_webhook_signature(payload: bytes, sig_header: Optional[str]) -> dict:
    """
    Verify the Stripe-Signature header against the raw body and parse the event.

    Raises WebhookValidationError on a missing/bad signature or malformed body.
    Raises TransientDependencyError if no webhook secret is configured, so Stripe
    keeps redelivering until the deployment is fixed.
    """
    import stripe

    if not sig_header:
        raise WebhookValidationError("Missing stripe-signature header")

    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not set - cannot verify payment webhooks")
        raise TransientDependencyError("Stripe webhook secret not configured")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            body,
            sig_header,
            settings.stripe_webhook_secret,
            settings.stripe_signature_tolerance_seconds,
        )
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise WebhookValidationError("Invalid signature")
    except UnicodeDecodeError:
        raise WebhookValidationError("Payload is not valid UTF-8")

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise WebhookValidationError("Malformed event payload")

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookValidationError("Event is missing id or type")
    return event


async def retrieve_payment_intent(payment_intent_id: str, use_cache: bool = True) -> dict:
    """
    Fetch a PaymentIntent as a plain dict.
    Read-through cached unless use_cache=False (reconciliation wants Stripe's view).
    """
    async def load() -> dict:
        stripe = _get_stripe()
        intent = await _guarded(
            "stripe.retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id,
        )
        return json.loads(str(intent))

    if not use_cache:
        intent = await load()
        await payment_cache.set(payment_intent_id, intent)
        return intent
    return await payment_cache.get_or_load(payment_intent_id, load)


async def ping() -> dict:
    """
    Cheap authenticated call used by the health check.

    Returns: {"status": "up"|"down", "latency": int, "error": str|None}
    """
    from orderguard.utils.metrics import Timer
    timer = Timer().start()
    try:
        stripe = _get_stripe()
        await _guarded("stripe.ping", stripe.PaymentIntent.list, limit=1)
        return {"status": "up", "latency": timer.stop(), "error": None}
    except Exception as e:
        logger.warning("Stripe health check failed: %s", str(e))
        return {"status": "down", "latency": 0, "error": str(e)}
