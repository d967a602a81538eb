"""
Tests for orderguard/services/benchmarks.py - versioned, single-latest order benchmarks.
"""
import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from factories import make_client, make_group, make_line_item, make_order, make_submission, make_website
from orderguard.exceptions import OrderNotFoundError
from orderguard.models import OrderBenchmark
from orderguard.services.benchmarks import (
    INITIAL_NOTE,
    create_order_benchmark,
    get_benchmark_history,
    get_latest_benchmark,
    load_benchmark_data,
    parse_order_id,
)


async def latest_count(db, order_id) -> int:
    result = await db.execute(
        select(func.count()).select_from(OrderBenchmark).where(
            OrderBenchmark.order_id == order_id, OrderBenchmark.is_latest.is_(True),
        )
    )
    return result.scalar_one()


async def five_links_two_pages(db):
    order = await make_order(db, state="confirmed", total_retail=125000, service_fee=5000)
    client = await make_client(db)
    for _ in range(3):
        await make_line_item(db, order, client, "https://acme.example/hiking-boots")
    for _ in range(2):
        await make_line_item(db, order, client, "https://acme.example/tents")
    await db.commit()
    return order


class TestCreate:
    async def test_first_benchmark(self, db):
        order = await five_links_two_pages(db)
        benchmark = await create_order_benchmark(db, str(order.id), "admin-1")

        assert benchmark.version == 1
        assert benchmark.is_latest is True
        assert benchmark.capture_reason == "order_confirmed"
        assert benchmark.captured_by == "admin-1"
        assert benchmark.notes == INITIAL_NOTE

        data = load_benchmark_data(benchmark)
        assert data.source == "modern"
        assert data.total_requested_links == 5
        assert data.total_clients == 1
        assert data.total_target_pages == 2
        assert data.total_unique_domains == 0
        assert data.order_total == 125000
        assert data.service_fee == 5000

    async def test_repeated_creates_keep_one_latest(self, db):
        order = await five_links_two_pages(db)
        for _ in range(4):
            await create_order_benchmark(db, order.id, None, reason="manual_update")

        assert await latest_count(db, order.id) == 1
        latest = await get_latest_benchmark(db, order.id)
        assert latest.version == 4
        assert latest.notes is None

        history = await get_benchmark_history(db, order.id)
        assert [b.version for b in history] == [4, 3, 2, 1]
        assert [b.is_latest for b in history] == [True, False, False, False]

    async def test_orders_are_versioned_independently(self, db):
        first = await five_links_two_pages(db)
        second = await make_order(db, email="other@example.com")
        await create_order_benchmark(db, first.id, None)
        await create_order_benchmark(db, first.id, None)
        benchmark = await create_order_benchmark(db, second.id, None)
        assert benchmark.version == 1
        assert await latest_count(db, first.id) == 1

    async def test_unknown_order(self, db):
        with pytest.raises(OrderNotFoundError):
            await create_order_benchmark(db, uuid.uuid4(), None)

    async def test_unknown_reason(self, db):
        order = await make_order(db)
        with pytest.raises(ValueError):
            await create_order_benchmark(db, order.id, None, reason="because")

    async def test_unfulfilled_order_uses_original_request(self, db):
        order = await make_order(db)
        client = await make_client(db)
        await make_group(db, order, client, 5, ["https://acme.example/a", "https://acme.example/b"])
        await db.commit()

        data = load_benchmark_data(await create_order_benchmark(db, order.id, None))
        assert data.source == "unfulfilled"
        assert data.total_requested_links == 5
        assert data.client_groups[0].original_request is True

    async def test_legacy_order_counts_unique_domains(self, db):
        order = await make_order(db)
        client = await make_client(db)
        a = await make_website(db, "a.example")
        b = await make_website(db, "b.example")
        group = await make_group(db, order, client, 3, ["https://acme.example/a", "https://acme.example/b"])
        await make_submission(db, group, a, "https://acme.example/a")
        await make_submission(db, group, b, "https://acme.example/a")
        await make_submission(db, group, a, "https://acme.example/b")
        await db.commit()

        data = load_benchmark_data(await create_order_benchmark(db, order.id, None))
        assert data.source == "legacy"
        assert data.total_requested_links == 3
        assert data.total_target_pages == 2
        assert data.total_unique_domains == 2


class TestOriginalConstraints:
    async def test_estimator_inputs_are_captured(self, db):
        order = await make_order(
            db,
            estimated_budget_min=50000, estimated_budget_max=90000,
            preferences_dr_min=30, preferences_dr_max=70,
            preferences_traffic_min=1000, estimated_links_count=5,
            preferences_categories=["outdoors"], estimated_price_per_link=18000,
        )
        constraints = load_benchmark_data(
            await create_order_benchmark(db, order.id, None)
        ).original_constraints
        assert constraints.budget_range == [50000, 90000]
        assert constraints.dr_range == [30, 70]
        assert constraints.min_traffic == 1000
        assert constraints.estimated_links == 5
        assert constraints.categories == ["outdoors"]
        assert constraints.estimated_price_per_link == 18000

    async def test_price_per_link_falls_back_to_average(self, db):
        order = await make_order(db)
        client = await make_client(db)
        await make_line_item(db, order, client, "u", estimated_price=10000)
        await make_line_item(db, order, client, "u", estimated_price=20001)
        await db.commit()

        constraints = load_benchmark_data(
            await create_order_benchmark(db, order.id, None)
        ).original_constraints
        assert constraints.estimated_price_per_link == 15000
        assert constraints.budget_range == []


class TestDatabaseGuarantees:
    async def test_second_latest_row_is_rejected(self, db):
        order = await five_links_two_pages(db)
        await create_order_benchmark(db, order.id, None)

        db.add(OrderBenchmark(
            order_id=order.id, version=2, is_latest=True,
            capture_reason="manual_update", benchmark_data={},
        ))
        with pytest.raises(IntegrityError):
            await db.commit()
        await db.rollback()

    async def test_duplicate_version_is_rejected(self, db):
        order = await five_links_two_pages(db)
        await create_order_benchmark(db, order.id, None)

        db.add(OrderBenchmark(
            order_id=order.id, version=1, is_latest=False,
            capture_reason="manual_update", benchmark_data={},
        ))
        with pytest.raises(IntegrityError):
            await db.commit()
        await db.rollback()


class TestParseOrderId:
    def test_accepts_uuid_and_string(self):
        oid = uuid.uuid4()
        assert parse_order_id(oid) is oid
        assert parse_order_id(str(oid)) == oid

    def test_garbage_is_not_found(self):
        with pytest.raises(OrderNotFoundError):
            parse_order_id("not-a-uuid")
