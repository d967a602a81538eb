"""
Internal benchmark endpoints - capture, history, and drift comparison.

All routes require the X-Internal-Token header.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.api.deps import require_internal_token, to_http_error
from orderguard.database import get_db
from orderguard.exceptions import OrderGuardError
from orderguard.models.benchmark import BenchmarkComparison, OrderBenchmark
from orderguard.schemas.api_responses import (
    BenchmarkHistoryResponse,
    BenchmarkResponse,
    CompareRequest,
    ComparisonResponse,
    CreateBenchmarkRequest,
)
from orderguard.services import benchmarks, drift

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/orders/{order_id}",
    tags=["benchmarks"],
    dependencies=[Depends(require_internal_token)],
)


def _benchmark_response(benchmark: OrderBenchmark) -> BenchmarkResponse:
    return BenchmarkResponse(
        id=str(benchmark.id),
        order_id=str(benchmark.order_id),
        version=benchmark.version,
        is_latest=benchmark.is_latest,
        capture_reason=benchmark.capture_reason,
        captured_by=benchmark.captured_by,
        notes=benchmark.notes,
        captured_at=benchmark.captured_at,
        benchmark_data=benchmarks.load_benchmark_data(benchmark),
    )


def _comparison_response(comparison: BenchmarkComparison) -> ComparisonResponse:
    return ComparisonResponse(
        id=str(comparison.id),
        benchmark_id=str(comparison.benchmark_id),
        order_id=str(comparison.order_id),
        compared_by=comparison.compared_by,
        compared_at=comparison.compared_at,
        comparison_data=drift.load_comparison_data(comparison),
    )


@router.post("/benchmarks", response_model=BenchmarkResponse, status_code=201)
async def create_benchmark(
    order_id: str,
    body: CreateBenchmarkRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        benchmark = await benchmarks.create_order_benchmark(
            db, order_id, body.actor_id, reason=body.reason,
        )
    except OrderGuardError as e:
        raise to_http_error(e)
    return _benchmark_response(benchmark)


@router.get("/benchmarks/latest", response_model=BenchmarkResponse)
async def get_latest_benchmark(
    order_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        benchmark = await benchmarks.get_latest_benchmark(db, order_id)
    except OrderGuardError as e:
        raise to_http_error(e)
    if benchmark is None:
        raise HTTPException(status_code=404, detail="No benchmark found for this order")
    return _benchmark_response(benchmark)


@router.get("/benchmarks", response_model=BenchmarkHistoryResponse)
async def list_benchmarks(
    order_id: str,
    db: AsyncSession = Depends(get_db),
):
    """All versions, newest first."""
    try:
        history = await benchmarks.get_benchmark_history(db, order_id)
    except OrderGuardError as e:
        raise to_http_error(e)
    return BenchmarkHistoryResponse(
        benchmarks=[_benchmark_response(b) for b in history],
        total=len(history),
    )


@router.post("/benchmarks/compare", response_model=ComparisonResponse, status_code=201)
async def compare_benchmark(
    order_id: str,
    body: CompareRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        comparison = await drift.compare_to_benchmark(db, order_id, actor_id=body.actor_id)
    except OrderGuardError as e:
        raise to_http_error(e)
    return _comparison_response(comparison)


@router.get("/comparisons/latest", response_model=ComparisonResponse)
async def get_latest_comparison(
    order_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        comparison = await drift.get_latest_comparison(db, order_id)
    except OrderGuardError as e:
        raise to_http_error(e)
    if comparison is None:
        raise HTTPException(status_code=404, detail="No comparison found for this order")
    return _comparison_response(comparison)
