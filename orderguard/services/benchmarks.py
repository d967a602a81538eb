"""
Order benchmarks - versioned snapshots of what an order committed to deliver.

create_order_benchmark() runs as one transaction:
1. Lock the order row (SELECT ... FOR UPDATE) so concurrent confirmations queue
2. Flip the current latest benchmark off
3. Build the snapshot from the order's fulfillment source
4. Insert version = max + 1 with is_latest = True

The (order_id, version) unique constraint and the partial unique index on
is_latest back this up: a writer that slips past the row lock fails with
ConcurrencyConflict instead of creating a second latest row.
"""
import logging
import uuid
from typing import Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.exceptions import ConcurrencyConflict, OrderNotFoundError
from orderguard.models.benchmark import CAPTURE_REASONS, OrderBenchmark
from orderguard.models.order import Order
from orderguard.schemas.benchmark import BenchmarkData, OriginalConstraints
from orderguard.services.fulfillment_sources import FulfillmentSource, load_fulfillment

logger = logging.getLogger(__name__)

INITIAL_REASONS = ("order_confirmed", "order_submitted")
INITIAL_NOTE = "Initial benchmark created at order confirmation"


def parse_order_id(order_id: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except ValueError:
        raise OrderNotFoundError(str(order_id))


def _present(*values) -> list:
    return [v for v in values if v is not None]


def build_benchmark_data(order: Order, source: FulfillmentSource) -> BenchmarkData:
    """Snapshot the committed plan: client groups, aggregate counts, original constraints."""
    groups = source.benchmark_groups()

    unique_domains = set()
    for group in groups:
        for page in group.target_pages:
            for domain in page.requested_domains:
                unique_domains.add(domain.domain_id or domain.domain.lower())

    price_per_link = order.estimated_price_per_link
    if price_per_link is None:
        prices = source.priced_links()
        if prices:
            price_per_link = round(sum(prices) / len(prices))

    return BenchmarkData(
        source=source.kind,
        order_total=order.total_retail or 0,
        service_fee=order.service_fee or 0,
        client_groups=groups,
        total_requested_links=sum(g.link_count for g in groups),
        total_clients=len(groups),
        total_target_pages=sum(len(g.target_pages) for g in groups),
        total_unique_domains=len(unique_domains),
        original_constraints=OriginalConstraints(
            budget_range=_present(order.estimated_budget_min, order.estimated_budget_max),
            dr_range=_present(order.preferences_dr_min, order.preferences_dr_max),
            min_traffic=order.preferences_traffic_min,
            estimated_links=order.estimated_links_count,
            categories=order.preferences_categories or [],
            types=order.preferences_types or [],
            niches=order.preferences_niches or [],
            estimated_pricing=order.estimator_snapshot,
            estimated_price_per_link=price_per_link,
        ),
    )


async def create_order_benchmark(
    db: AsyncSession,
    order_id: Union[str, uuid.UUID],
    actor_id: Optional[str],
    reason: str = "order_confirmed",
) -> OrderBenchmark:
    if reason not in CAPTURE_REASONS:
        raise ValueError(f"Unknown capture reason: {reason}")
    oid = parse_order_id(order_id)

    result = await db.execute(select(Order).where(Order.id == oid).with_for_update())
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(str(oid))

    source = await load_fulfillment(db, oid)
    data = build_benchmark_data(order, source)

    current_max = (await db.execute(
        select(func.max(OrderBenchmark.version)).where(OrderBenchmark.order_id == oid)
    )).scalar()
    version = (current_max or 0) + 1

    await db.execute(
        update(OrderBenchmark)
        .where(OrderBenchmark.order_id == oid, OrderBenchmark.is_latest.is_(True))
        .values(is_latest=False)
    )
    benchmark = OrderBenchmark(
        order_id=oid,
        version=version,
        is_latest=True,
        benchmark_type="initial",
        capture_reason=reason,
        captured_by=actor_id,
        benchmark_data=data.model_dump(mode="json"),
        notes=INITIAL_NOTE if reason in INITIAL_REASONS else None,
    )
    db.add(benchmark)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning(
            "Concurrent benchmark creation for order %s", str(oid)[:8],
            extra={"order_id": str(oid)},
        )
        raise ConcurrencyConflict(
            f"Another benchmark for order {str(oid)[:8]} was created concurrently"
        )

    logger.info(
        "Benchmark v%d created for order %s (source=%s, links=%d)",
        version, str(oid)[:8], data.source, data.total_requested_links,
        extra={"order_id": str(oid)},
    )
    return benchmark


async def get_latest_benchmark(
    db: AsyncSession, order_id: Union[str, uuid.UUID],
) -> Optional[OrderBenchmark]:
    result = await db.execute(
        select(OrderBenchmark).where(
            OrderBenchmark.order_id == parse_order_id(order_id),
            OrderBenchmark.is_latest.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_benchmark_history(
    db: AsyncSession, order_id: Union[str, uuid.UUID],
) -> list[OrderBenchmark]:
    result = await db.execute(
        select(OrderBenchmark)
        .where(OrderBenchmark.order_id == parse_order_id(order_id))
        .order_by(OrderBenchmark.version.desc())
    )
    return list(result.scalars().all())


def load_benchmark_data(benchmark: OrderBenchmark) -> BenchmarkData:
    """Re-validate a stored snapshot against its schema version."""
    return BenchmarkData.model_validate(benchmark.benchmark_data)
