"""
API request/response schemas for the internal benchmark and payment endpoints.
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel

from orderguard.schemas.benchmark import BenchmarkData
from orderguard.schemas.comparison import ComparisonData


class CreateBenchmarkRequest(BaseModel):
    actor_id: str
    reason: Literal["order_confirmed", "order_submitted", "manual_update", "client_revision"] = (
        "order_confirmed"
    )


class CompareRequest(BaseModel):
    actor_id: Optional[str] = None


class BenchmarkResponse(BaseModel):
    id: str
    order_id: str
    version: int
    is_latest: bool
    capture_reason: str
    captured_by: Optional[str] = None
    notes: Optional[str] = None
    captured_at: Optional[datetime] = None
    benchmark_data: BenchmarkData


class BenchmarkHistoryResponse(BaseModel):
    benchmarks: list[BenchmarkResponse]
    total: int


class ComparisonResponse(BaseModel):
    id: str
    benchmark_id: str
    order_id: str
    compared_by: Optional[str] = None
    compared_at: Optional[datetime] = None
    comparison_data: ComparisonData


class ReconcileResponse(BaseModel):
    checked: int
    updated: int
    failed: int
    escalated: int
