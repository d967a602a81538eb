"""
Benchmark snapshot payload, stored in order_benchmarks.benchmark_data.

Versioned by schema_version: rows are re-validated on read, so a shape change
needs a new version rather than silently reinterpreting history.
"""
from typing import Literal, Optional
from pydantic import BaseModel, Field


class DomainMetrics(BaseModel):
    dr: Optional[int] = None
    traffic: Optional[int] = None
    quality_score: Optional[float] = None


class RequestedDomain(BaseModel):
    domain_id: Optional[str] = None
    domain: str = ""
    wholesale_price: int = 0  # cents
    retail_price: int = 0  # cents
    anchor_text: Optional[str] = None
    special_instructions: Optional[str] = None
    metrics: DomainMetrics = Field(default_factory=DomainMetrics)


class BenchmarkTargetPage(BaseModel):
    url: str
    page_id: Optional[str] = None
    requested_links: int = 0
    requested_domains: list[RequestedDomain] = Field(default_factory=list)


class BenchmarkClientGroup(BaseModel):
    client_id: str
    client_name: str = ""
    link_count: int = 0
    target_pages: list[BenchmarkTargetPage] = Field(default_factory=list)
    original_request: bool = False  # True when no delivery had started at capture time


class OriginalConstraints(BaseModel):
    budget_range: list[int] = Field(default_factory=list)
    dr_range: list[int] = Field(default_factory=list)
    min_traffic: Optional[int] = None
    estimated_links: Optional[int] = None
    categories: list[str] = Field(default_factory=list)
    types: list[str] = Field(default_factory=list)
    niches: list[str] = Field(default_factory=list)
    estimated_pricing: Optional[dict] = None
    estimated_price_per_link: Optional[int] = None


class BenchmarkData(BaseModel):
    schema_version: Literal[1] = 1
    source: Literal["modern", "legacy", "unfulfilled"]
    order_total: int = 0
    service_fee: int = 0
    client_groups: list[BenchmarkClientGroup] = Field(default_factory=list)
    total_requested_links: int = 0
    total_clients: int = 0
    total_target_pages: int = 0
    total_unique_domains: int = 0
    original_constraints: OriginalConstraints = Field(default_factory=OriginalConstraints)

    def client_group(self, client_id: str) -> Optional[BenchmarkClientGroup]:
        for group in self.client_groups:
            if group.client_id == client_id:
                return group
        return None
