"""
OrderGuard - order integrity core for the link-building marketplace.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from orderguard.config import get_settings
from orderguard.api.router import api_router
from orderguard.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("orderguard")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    from orderguard.database import dispose_engine
    from orderguard.services import payment_cache
    from orderguard.utils.circuit_breaker import init_circuit_breaker
    from orderguard.utils.locks import init_lock_manager
    from orderguard.utils.rate_limiter import init_rate_limiter
    from orderguard.utils.redis_client import close_redis

    settings = get_settings()
    logger.info("OrderGuard starting up (env=%s)", settings.app_env)

    if not settings.stripe_webhook_secret:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not set - Stripe webhooks will be answered with 500 "
            "until it is configured."
        )
    if not settings.internal_api_token:
        logger.warning("INTERNAL_API_TOKEN not set - internal routes are disabled.")
    if not settings.redis_url:
        logger.warning(
            "REDIS_URL not set - payment cache disabled, order locks use database leases."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    # Process-wide resilience state
    init_circuit_breaker()
    init_rate_limiter()
    init_lock_manager()
    payment_cache.reset_stats()

    worker_tasks: list[asyncio.Task] = []
    if settings.reconciliation_enabled:
        from orderguard.workers.payment_reconciler import run_payment_reconciler
        worker_tasks.append(asyncio.create_task(run_payment_reconciler()))
        logger.info("Payment reconciler started")

    yield

    logger.info("OrderGuard shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    await close_redis()
    await dispose_engine()
    logger.info("OrderGuard shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="OrderGuard",
        description="Order integrity core: payment webhooks, benchmarks and drift",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type", "X-Correlation-ID", "X-Internal-Token",
            "Accept", "Origin", "Stripe-Signature",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
