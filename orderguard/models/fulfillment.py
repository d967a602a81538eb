"""
Fulfillment records read by the benchmark and drift engines.

Two coexisting models:
- Modern: one OrderLineItem per requested link.
- Legacy: OrderGroup per client, holding candidate OrderSiteSubmission rows that
  are included in or excluded from the final selection.
Website carries the domain metrics (DR, traffic) used for observed ranges.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from orderguard.database import Base


class Client(Base):
    """The brand a link is built for. An order can serve several clients."""
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class Website(Base):
    __tablename__ = "websites"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    domain_rating: Mapped[Optional[int]] = mapped_column(Integer)
    total_traffic: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )
    target_page_url: Mapped[Optional[str]] = mapped_column(Text)
    target_page_id: Mapped[Optional[str]] = mapped_column(String(255))
    anchor_text: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="draft"
    )  # draft, pending, approved, in_progress, submitted, delivered, completed, cancelled, refunded

    assigned_domain_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("websites.id")
    )
    assigned_domain: Mapped[Optional[str]] = mapped_column(String(255))

    # Cents
    wholesale_price: Mapped[Optional[int]] = mapped_column(Integer)
    estimated_price: Mapped[Optional[int]] = mapped_column(Integer)
    approved_price: Mapped[Optional[int]] = mapped_column(Integer)

    item_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_order_line_items_order_id", "order_id"),
    )

    @property
    def retail_price(self) -> int:
        if self.approved_price is not None:
            return self.approved_price
        return self.estimated_price or 0


class OrderGroup(Base):
    """Legacy per-client grouping with the originally requested target pages."""
    __tablename__ = "order_groups"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )
    link_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_pages: Mapped[Optional[list]] = mapped_column(
        JSONB, default=list
    )  # [{"url": ..., "pageId": ...}]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_order_groups_order_id", "order_id"),
    )


class OrderSiteSubmission(Base):
    __tablename__ = "order_site_submissions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("order_groups.id"), nullable=False
    )
    domain_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("websites.id")
    )
    submission_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending"
    )  # pending, submitted, in_progress, client_approved, client_rejected, completed
    inclusion_status: Mapped[Optional[str]] = mapped_column(
        String(30)
    )  # included, excluded, saved_for_later
    exclusion_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Cents, frozen when the site was proposed
    wholesale_price_snapshot: Mapped[Optional[int]] = mapped_column(Integer)
    retail_price_snapshot: Mapped[Optional[int]] = mapped_column(Integer)

    # targetPageUrl, domain, anchorText, specialInstructions, dr, traffic, qualityScore
    submission_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_order_site_submissions_group_id", "order_group_id"),
    )
