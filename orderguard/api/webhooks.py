"""
Stripe webhook endpoint. No auth - Stripe signature verification only.

Responses:
- 200 {"received": true}: processed, skipped, duplicate, or permanently failed
- 400 bad signature / malformed event
- 413 payload over the size limit
- 429 rate limited (Retry-After header)
- 500 transient failure; Stripe redelivers
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.api.deps import to_http_error
from orderguard.database import get_db
from orderguard.exceptions import (
    OrderGuardError,
    RateLimitedError,
    WebhookValidationError,
)
from orderguard.services.webhook_processor import (
    enforce_size_limit,
    process_stripe_webhook,
)
from orderguard.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _declared_length(request: Request):
    raw = request.headers.get("content-length")
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    declared = _declared_length(request)
    try:
        # Reject on the declared size before reading the body
        enforce_size_limit(declared)
        payload = await request.body()
        result = await process_stripe_webhook(
            db,
            payload,
            request.headers.get("stripe-signature"),
            client_ip=_client_ip(request),
            declared_length=declared,
        )
    except RateLimitedError as e:
        raise HTTPException(
            status_code=429,
            detail=e.message,
            headers={"Retry-After": str(e.retry_after)},
        )
    except WebhookValidationError as e:
        if e.status_code == 400:
            await send_alert(
                AlertType.WEBHOOK_SIGNATURE_INVALID,
                f"Rejected Stripe webhook from {_client_ip(request)}: {e.message}",
                severity="warning",
                dedup_key=_client_ip(request),
            )
        raise to_http_error(e)
    except OrderGuardError as e:
        logger.error("Stripe webhook failed: %s", e.message)
        raise to_http_error(e)
    except Exception as e:
        logger.error("Stripe webhook crashed: %s", str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, "status": result.status}
