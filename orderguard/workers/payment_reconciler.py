"""
Payment reconciler - periodically re-checks payment intents stuck in pending states.
Runs every RECONCILIATION_INTERVAL_SECONDS (default 15 minutes).
"""
import asyncio
import logging

from orderguard.config import get_settings

logger = logging.getLogger(__name__)


async def run_payment_reconciler():
    """Main reconciler loop. Runs until cancelled."""
    interval = get_settings().reconciliation_interval_seconds
    logger.info("Payment reconciler started (interval=%ds)", interval)

    while True:
        try:
            summary = await reconcile_once()
            if summary["checked"]:
                logger.info(
                    "Payment reconciler: %d checked, %d updated",
                    summary["checked"], summary["updated"],
                )
        except Exception as e:
            logger.error("Payment reconciler error: %s", str(e), exc_info=True)

        await asyncio.sleep(interval)


async def reconcile_once() -> dict:
    from orderguard.database import async_session_factory
    from orderguard.services.payment_reconciliation import reconcile_stuck_payments

    async with async_session_factory() as db:
        return await reconcile_stuck_payments(db)
