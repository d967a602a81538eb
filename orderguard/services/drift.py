"""
Drift comparator - diff live fulfillment against the latest benchmark.

Per target page:
- missing: requested domains that are absent, or present only as excluded
- extras: included domains that were never requested ("Added after confirmation")
- substitutions: informational pairing of missing with extras on the same page;
  both lists keep every entry

Totals: completion = round-half-up(delivered / requested * 100), 0 when nothing
was requested. Revenue is the sum of delivered retail prices. DR/traffic ranges
come from Website rows, falling back to the metrics snapshot on the unit.

Every comparison is persisted as a new, append-only BenchmarkComparison.
"""
import logging
import uuid
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.exceptions import BenchmarkNotFoundError
from orderguard.models.benchmark import BenchmarkComparison
from orderguard.models.fulfillment import Website
from orderguard.schemas.benchmark import BenchmarkData, RequestedDomain
from orderguard.schemas.comparison import (
    ClientAnalysis,
    ComparisonData,
    DriftIssue,
    ExtraDomain,
    MissingDomain,
    Substitution,
    TargetPageAnalysis,
)
from orderguard.services.benchmarks import (
    get_latest_benchmark,
    load_benchmark_data,
    parse_order_id,
)
from orderguard.services.fulfillment_sources import DeliveryUnit, load_fulfillment

logger = logging.getLogger(__name__)

NOT_DELIVERED_REASON = "Not yet delivered"
EXCLUDED_REASON = "Excluded"
EXTRA_REASON = "Added after confirmation"


def completion_percentage(delivered: int, requested: int) -> int:
    """round(delivered / requested * 100) with halves rounded up; 0 when requested is 0."""
    if requested <= 0:
        return 0
    return (delivered * 200 + requested) // (2 * requested)


def _requested_key(domain: RequestedDomain) -> Optional[str]:
    return domain.domain_id or (domain.domain.lower() if domain.domain else None)


def analyse_page(
    url: str,
    requested: int,
    requested_domains: list[RequestedDomain],
    units: list[DeliveryUnit],
) -> TargetPageAnalysis:
    missing: list[MissingDomain] = []
    requested_keys = set()
    for domain in requested_domains:
        key = _requested_key(domain)
        requested_keys.add(key)
        matches = [u for u in units if key is not None and u.match_key == key]
        if not matches:
            missing.append(MissingDomain(
                domain=domain.domain, domain_id=domain.domain_id, reason=NOT_DELIVERED_REASON,
            ))
        elif all(u.excluded for u in matches):
            missing.append(MissingDomain(
                domain=domain.domain,
                domain_id=domain.domain_id,
                reason=matches[0].exclusion_reason or EXCLUDED_REASON,
            ))

    extras: list[ExtraDomain] = []
    seen = set()
    for unit in units:
        key = unit.match_key
        if not unit.included or key is None or key in requested_keys or key in seen:
            continue
        seen.add(key)
        extras.append(ExtraDomain(
            domain=unit.domain or unit.domain_id or "", domain_id=unit.domain_id, reason=EXTRA_REASON,
        ))

    substitutions = [
        Substitution(requested_domain=m.domain, delivered_domain=e.domain)
        for m, e in zip(missing, extras)
    ]

    return TargetPageAnalysis(
        url=url,
        requested=requested,
        delivered=sum(1 for u in units if u.delivered),
        missing=missing,
        substitutions=substitutions,
        extras=extras,
    )


def _page_issues(page: TargetPageAnalysis) -> list[DriftIssue]:
    issues = []
    if page.missing:
        issues.append(DriftIssue(
            type="missing",
            description=f"{len(page.missing)} domains missing for {page.url}",
            affected_items=[m.domain for m in page.missing],
        ))
    if page.substitutions:
        issues.append(DriftIssue(
            type="substitution",
            description=f"{len(page.substitutions)} substitutions for {page.url}",
            affected_items=[s.requested_domain for s in page.substitutions],
        ))
    if page.extras:
        issues.append(DriftIssue(
            type="extra",
            description=f"{len(page.extras)} domains added after confirmation for {page.url}",
            affected_items=[e.domain for e in page.extras],
        ))
    return issues


def _range(values: list[int]) -> list[int]:
    return [min(values), max(values)] if values else []


def build_comparison(
    benchmark: BenchmarkData,
    benchmark_version: int,
    live_source: str,
    units: list[DeliveryUnit],
    website_metrics: Optional[dict[str, tuple[Optional[int], Optional[int]]]] = None,
) -> ComparisonData:
    """Pure diff of a benchmark snapshot against live delivery units."""
    website_metrics = website_metrics or {}

    units_by_client: dict[str, list[DeliveryUnit]] = {}
    for unit in units:
        units_by_client.setdefault(unit.client_id, []).append(unit)

    client_ids = [g.client_id for g in benchmark.client_groups]
    client_ids += [cid for cid in units_by_client if cid not in client_ids]

    analyses: list[ClientAnalysis] = []
    issues: list[DriftIssue] = []
    for client_id in client_ids:
        group = benchmark.client_group(client_id)
        client_units = units_by_client.get(client_id, [])
        pages = group.target_pages if group else []

        page_analyses = []
        known_urls = set()
        for page in pages:
            known_urls.add(page.url)
            on_page = [u for u in client_units if u.target_page_url == page.url]
            page_analyses.append(
                analyse_page(page.url, page.requested_links, page.requested_domains, on_page)
            )
        # Live pages the benchmark never had: everything on them is extra
        for url in dict.fromkeys(u.target_page_url for u in client_units):
            if url not in known_urls:
                on_page = [u for u in client_units if u.target_page_url == url]
                page_analyses.append(analyse_page(url, 0, [], on_page))

        for page in page_analyses:
            issues.extend(_page_issues(page))

        analyses.append(ClientAnalysis(
            client_id=client_id,
            client_name=group.client_name if group else "",
            requested=group.link_count if group else 0,
            delivered=sum(1 for u in client_units if u.delivered),
            in_progress=sum(1 for u in client_units if u.in_progress),
            target_page_analysis=page_analyses,
        ))

    delivered_units = [u for u in units if u.delivered]
    dr_values, traffic_values = [], []
    for unit in delivered_units:
        site_dr, site_traffic = website_metrics.get(unit.domain_id or "", (None, None))
        dr = site_dr if site_dr is not None else unit.dr
        traffic = site_traffic if site_traffic is not None else unit.traffic
        if dr is not None:
            dr_values.append(dr)
        if traffic is not None:
            traffic_values.append(traffic)

    requested_total = benchmark.total_requested_links
    delivered_total = len(delivered_units)
    expected_revenue = benchmark.order_total
    actual_revenue = sum(u.retail_price for u in delivered_units)

    return ComparisonData(
        benchmark_version=benchmark_version,
        live_source=live_source,
        requested_links=requested_total,
        delivered_links=delivered_total,
        in_progress_links=sum(1 for u in units if u.in_progress),
        completion_percentage=completion_percentage(delivered_total, requested_total),
        expected_revenue=expected_revenue,
        actual_revenue=actual_revenue,
        revenue_difference=actual_revenue - expected_revenue,
        client_analysis=analyses,
        issues=issues,
        dr_range=_range(dr_values),
        traffic_range=_range(traffic_values),
    )


async def _website_metrics(
    db: AsyncSession, units: list[DeliveryUnit],
) -> dict[str, tuple[Optional[int], Optional[int]]]:
    ids = set()
    for unit in units:
        if not unit.delivered or not unit.domain_id:
            continue
        try:
            ids.add(uuid.UUID(unit.domain_id))
        except ValueError:
            continue
    if not ids:
        return {}
    result = await db.execute(
        select(Website.id, Website.domain_rating, Website.total_traffic).where(Website.id.in_(ids))
    )
    return {str(wid): (dr, traffic) for wid, dr, traffic in result.all()}


async def compare_to_benchmark(
    db: AsyncSession,
    order_id: Union[str, uuid.UUID],
    actor_id: Optional[str] = None,
) -> BenchmarkComparison:
    """
    Diff live state against the latest benchmark and persist the report.
    Raises BenchmarkNotFoundError when the order has no benchmark yet.
    """
    oid = parse_order_id(order_id)
    benchmark = await get_latest_benchmark(db, oid)
    if benchmark is None:
        raise BenchmarkNotFoundError(str(oid))

    snapshot = load_benchmark_data(benchmark)
    source = await load_fulfillment(db, oid)
    units = source.delivery_units()
    report = build_comparison(
        snapshot, benchmark.version, source.kind, units, await _website_metrics(db, units),
    )

    comparison = BenchmarkComparison(
        benchmark_id=benchmark.id,
        order_id=oid,
        compared_by=actor_id,
        comparison_data=report.model_dump(mode="json"),
    )
    db.add(comparison)
    await db.commit()

    logger.info(
        "Order %s compared to benchmark v%d: %d/%d delivered (%d%%), %d issues",
        str(oid)[:8], benchmark.version, report.delivered_links, report.requested_links,
        report.completion_percentage, len(report.issues),
        extra={"order_id": str(oid)},
    )
    return comparison


async def get_latest_comparison(
    db: AsyncSession, order_id: Union[str, uuid.UUID],
) -> Optional[BenchmarkComparison]:
    result = await db.execute(
        select(BenchmarkComparison)
        .where(BenchmarkComparison.order_id == parse_order_id(order_id))
        .order_by(BenchmarkComparison.compared_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def load_comparison_data(comparison: BenchmarkComparison) -> ComparisonData:
    return ComparisonData.model_validate(comparison.comparison_data)
