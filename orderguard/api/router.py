"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from orderguard.api.webhooks import router as webhooks_router
from orderguard.api.benchmarks import router as benchmarks_router
from orderguard.api.payments import router as payments_router
from orderguard.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(benchmarks_router)
api_router.include_router(payments_router)
api_router.include_router(health_router)
