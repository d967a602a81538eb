"""
Drift report payload, stored in benchmark_comparisons.comparison_data.
"""
from typing import Literal, Optional
from pydantic import BaseModel, Field


class MissingDomain(BaseModel):
    domain: str
    domain_id: Optional[str] = None
    reason: str


class ExtraDomain(BaseModel):
    domain: str
    domain_id: Optional[str] = None
    reason: str = "Added after confirmation"


class Substitution(BaseModel):
    requested_domain: str
    delivered_domain: str


class TargetPageAnalysis(BaseModel):
    url: str
    requested: int = 0
    delivered: int = 0
    missing: list[MissingDomain] = Field(default_factory=list)
    substitutions: list[Substitution] = Field(default_factory=list)
    extras: list[ExtraDomain] = Field(default_factory=list)


class ClientAnalysis(BaseModel):
    client_id: str
    client_name: str = ""
    requested: int = 0
    delivered: int = 0
    in_progress: int = 0
    target_page_analysis: list[TargetPageAnalysis] = Field(default_factory=list)


class DriftIssue(BaseModel):
    type: Literal["missing", "substitution", "extra"]
    description: str
    affected_items: list[str] = Field(default_factory=list)


class ComparisonData(BaseModel):
    schema_version: Literal[1] = 1
    benchmark_version: int
    live_source: Literal["modern", "legacy", "unfulfilled"]
    requested_links: int = 0
    delivered_links: int = 0
    in_progress_links: int = 0
    completion_percentage: int = 0
    expected_revenue: int = 0  # cents
    actual_revenue: int = 0  # cents
    revenue_difference: int = 0  # cents, actual - expected
    client_analysis: list[ClientAnalysis] = Field(default_factory=list)
    issues: list[DriftIssue] = Field(default_factory=list)
    dr_range: list[int] = Field(default_factory=list)  # [min, max] or []
    traffic_range: list[int] = Field(default_factory=list)
