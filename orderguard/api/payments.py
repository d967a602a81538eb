"""
Internal payment endpoints - metrics dashboard feed and manual reconciliation.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.api.deps import require_internal_token
from orderguard.database import get_db
from orderguard.schemas.api_responses import ReconcileResponse
from orderguard.services.payment_health import get_payment_metrics
from orderguard.services.payment_reconciliation import reconcile_stuck_payments

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/payments",
    tags=["payments"],
    dependencies=[Depends(require_internal_token)],
)


@router.get("/metrics")
async def payment_metrics(db: AsyncSession = Depends(get_db)):
    try:
        return await get_payment_metrics(db)
    except Exception as e:
        logger.error("Payment metrics failed: %s", str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to compute payment metrics")


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(db: AsyncSession = Depends(get_db)):
    """Run one stuck-payment reconciliation pass now."""
    summary = await reconcile_stuck_payments(db)
    return ReconcileResponse(**summary)
