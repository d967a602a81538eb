"""
Account and Order models - the minimal order surface the integrity core reads and writes.

Order lifecycle: draft → pending_confirmation → payment_pending → payment_received
→ confirmed → in_progress → completed. Side exits: payment_failed, cancelled, refunded.
All money columns are integer cents.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from orderguard.database import Base

ORDER_STATES = (
    "draft",
    "pending_confirmation",
    "payment_pending",
    "payment_failed",
    "payment_received",
    "confirmed",
    "in_progress",
    "completed",
    "cancelled",
    "refunded",
)


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255))
    company_name: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id")
    )
    state: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")

    # Pricing snapshot (cents)
    total_retail: Mapped[int] = mapped_column(Integer, default=0)
    total_wholesale: Mapped[int] = mapped_column(Integer, default=0)
    service_fee: Mapped[int] = mapped_column(Integer, default=0)

    # Estimator inputs captured at order creation
    estimated_budget_min: Mapped[Optional[int]] = mapped_column(Integer)
    estimated_budget_max: Mapped[Optional[int]] = mapped_column(Integer)
    estimated_links_count: Mapped[Optional[int]] = mapped_column(Integer)
    estimated_price_per_link: Mapped[Optional[int]] = mapped_column(Integer)
    estimator_snapshot: Mapped[Optional[dict]] = mapped_column(JSONB)
    preferences_dr_min: Mapped[Optional[int]] = mapped_column(Integer)
    preferences_dr_max: Mapped[Optional[int]] = mapped_column(Integer)
    preferences_traffic_min: Mapped[Optional[int]] = mapped_column(Integer)
    preferences_categories: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    preferences_types: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    preferences_niches: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_orders_account_id", "account_id"),
        Index("ix_orders_state", "state"),
    )

    def __repr__(self) -> str:
        return f"<Order {str(self.id)[:8]} state={self.state}>"
