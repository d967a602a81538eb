"""
Order benchmarks and drift comparisons.

OrderBenchmark: immutable, versioned snapshot of what an order committed to deliver.
The database enforces one row per (order, version) and at most one is_latest row
per order (partial unique index).

BenchmarkComparison: append-only drift report against a specific benchmark.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from orderguard.database import Base

CAPTURE_REASONS = ("order_confirmed", "order_submitted", "manual_update", "client_revision")


class OrderBenchmark(Base):
    __tablename__ = "order_benchmarks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    is_latest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    benchmark_type: Mapped[str] = mapped_column(String(30), nullable=False, default="initial")
    capture_reason: Mapped[str] = mapped_column(String(30), nullable=False)
    captured_by: Mapped[Optional[str]] = mapped_column(String(255))
    benchmark_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("order_id", "version", name="uq_order_benchmarks_order_version"),
        Index(
            "uq_order_benchmarks_latest",
            "order_id",
            unique=True,
            postgresql_where=text("is_latest"),
            sqlite_where=text("is_latest = 1"),
        ),
    )


class BenchmarkComparison(Base):
    __tablename__ = "benchmark_comparisons"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    benchmark_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("order_benchmarks.id"), nullable=False
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False
    )
    compared_by: Mapped[Optional[str]] = mapped_column(String(255))
    comparison_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    compared_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_benchmark_comparisons_order_id", "order_id"),
    )
