"""
Fulfillment sources - one view over the two coexisting fulfillment models.

load_fulfillment() picks the variant once per order:
- ModernFulfillment: the order has line items (cancelled/refunded ones are ignored)
- LegacyFulfillment: order groups with at least one site submission
- Unfulfilled: neither; only the originally requested structure exists

Each variant yields benchmark client groups (what was committed) and
DeliveryUnits (what is live), which is all the benchmark and drift engines read.

"Delivered" deliberately differs between the models:
- modern: the item has an assigned domain
- legacy: submission status in {completed, client_approved, pending}, or included
"""
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.models.fulfillment import (
    Client,
    OrderGroup,
    OrderLineItem,
    OrderSiteSubmission,
    Website,
)
from orderguard.schemas.benchmark import (
    BenchmarkClientGroup,
    BenchmarkTargetPage,
    DomainMetrics,
    RequestedDomain,
)

logger = logging.getLogger(__name__)

INACTIVE_ITEM_STATUSES = ("cancelled", "refunded")
IN_PROGRESS_STATUSES = ("in_progress", "submitted")
LEGACY_DELIVERED_STATUSES = ("completed", "client_approved", "pending")
UNASSIGNED_PAGE = "unassigned"


@dataclass
class DeliveryUnit:
    """One live link slot, normalised from a line item or a site submission."""
    client_id: str
    target_page_url: str
    domain_id: Optional[str] = None
    domain: str = ""
    delivered: bool = False
    in_progress: bool = False
    included: bool = False
    excluded: bool = False
    exclusion_reason: Optional[str] = None
    retail_price: int = 0
    wholesale_price: int = 0
    dr: Optional[int] = None
    traffic: Optional[int] = None

    @property
    def match_key(self) -> Optional[str]:
        return self.domain_id or (self.domain.lower() if self.domain else None)


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _original_request_group(group: OrderGroup, client_name: str) -> BenchmarkClientGroup:
    """The group as requested at order creation: target pages, no domains yet."""
    pages = group.target_pages or []
    per_page = math.ceil((group.link_count or 0) / (len(pages) or 1))
    return BenchmarkClientGroup(
        client_id=str(group.client_id),
        client_name=client_name,
        link_count=group.link_count or 0,
        target_pages=[
            BenchmarkTargetPage(
                url=page.get("url") or "",
                page_id=page.get("pageId"),
                requested_links=per_page,
            )
            for page in pages
        ],
        original_request=True,
    )


@dataclass
class ModernFulfillment:
    items: list[OrderLineItem]
    client_names: dict[str, str] = field(default_factory=dict)
    kind: str = "modern"

    def benchmark_groups(self) -> list[BenchmarkClientGroup]:
        by_client: dict[str, dict[str, list[OrderLineItem]]] = {}
        for item in self.items:
            pages = by_client.setdefault(str(item.client_id), {})
            pages.setdefault(item.target_page_url or UNASSIGNED_PAGE, []).append(item)

        groups = []
        for client_id, pages in by_client.items():
            target_pages = []
            for url, items in pages.items():
                domains = []
                for item in items:
                    if not (item.assigned_domain_id or item.assigned_domain):
                        continue
                    meta = item.item_metadata or {}
                    domains.append(RequestedDomain(
                        domain_id=str(item.assigned_domain_id) if item.assigned_domain_id else None,
                        domain=item.assigned_domain or "",
                        wholesale_price=item.wholesale_price or 0,
                        retail_price=item.retail_price,
                        anchor_text=item.anchor_text,
                        special_instructions=meta.get("specialInstructions"),
                        metrics=DomainMetrics(
                            dr=_int_or_none(meta.get("dr")),
                            traffic=_int_or_none(meta.get("traffic")),
                        ),
                    ))
                target_pages.append(BenchmarkTargetPage(
                    url=url,
                    page_id=items[0].target_page_id,
                    requested_links=len(items),
                    requested_domains=domains,
                ))
            groups.append(BenchmarkClientGroup(
                client_id=client_id,
                client_name=self.client_names.get(client_id, ""),
                link_count=sum(p.requested_links for p in target_pages),
                target_pages=target_pages,
            ))
        return groups

    def delivery_units(self) -> list[DeliveryUnit]:
        units = []
        for item in self.items:
            meta = item.item_metadata or {}
            has_domain = bool(item.assigned_domain_id or item.assigned_domain)
            units.append(DeliveryUnit(
                client_id=str(item.client_id),
                target_page_url=item.target_page_url or UNASSIGNED_PAGE,
                domain_id=str(item.assigned_domain_id) if item.assigned_domain_id else None,
                domain=item.assigned_domain or "",
                delivered=has_domain,
                in_progress=item.status in IN_PROGRESS_STATUSES,
                included=has_domain,
                retail_price=item.retail_price,
                wholesale_price=item.wholesale_price or 0,
                dr=_int_or_none(meta.get("dr")),
                traffic=_int_or_none(meta.get("traffic")),
            ))
        return units

    def priced_links(self) -> list[int]:
        return [item.retail_price for item in self.items if item.retail_price]


@dataclass
class LegacyFulfillment:
    groups: list[OrderGroup]
    submissions: dict[str, list[OrderSiteSubmission]]  # group id -> submissions
    client_names: dict[str, str] = field(default_factory=dict)
    domains: dict[str, str] = field(default_factory=dict)  # website id -> domain
    kind: str = "legacy"

    def _domain(self, sub: OrderSiteSubmission) -> str:
        meta = sub.submission_metadata or {}
        if meta.get("domain"):
            return meta["domain"]
        if sub.domain_id:
            return self.domains.get(str(sub.domain_id), str(sub.domain_id))
        return ""

    def benchmark_groups(self) -> list[BenchmarkClientGroup]:
        result = []
        for group in self.groups:
            client_name = self.client_names.get(str(group.client_id), "")
            included = [
                s for s in self.submissions.get(str(group.id), [])
                if s.inclusion_status == "included"
            ]
            if not included:
                result.append(_original_request_group(group, client_name))
                continue

            pages: dict[str, list[RequestedDomain]] = {}
            for sub in included:
                meta = sub.submission_metadata or {}
                pages.setdefault(meta.get("targetPageUrl") or UNASSIGNED_PAGE, []).append(
                    RequestedDomain(
                        domain_id=str(sub.domain_id) if sub.domain_id else None,
                        domain=self._domain(sub),
                        wholesale_price=sub.wholesale_price_snapshot or 0,
                        retail_price=sub.retail_price_snapshot or 0,
                        anchor_text=meta.get("anchorText"),
                        special_instructions=meta.get("specialInstructions"),
                        metrics=DomainMetrics(
                            dr=_int_or_none(meta.get("dr")),
                            traffic=_int_or_none(meta.get("traffic")),
                            quality_score=meta.get("qualityScore"),
                        ),
                    )
                )

            page_ids = {p.get("url"): p.get("pageId") for p in (group.target_pages or [])}
            result.append(BenchmarkClientGroup(
                client_id=str(group.client_id),
                client_name=client_name,
                link_count=len(included),
                target_pages=[
                    BenchmarkTargetPage(
                        url=url,
                        page_id=page_ids.get(url),
                        requested_links=len(domains),
                        requested_domains=domains,
                    )
                    for url, domains in pages.items()
                ],
            ))
        return result

    def delivery_units(self) -> list[DeliveryUnit]:
        units = []
        for group in self.groups:
            for sub in self.submissions.get(str(group.id), []):
                meta = sub.submission_metadata or {}
                units.append(DeliveryUnit(
                    client_id=str(group.client_id),
                    target_page_url=meta.get("targetPageUrl") or UNASSIGNED_PAGE,
                    domain_id=str(sub.domain_id) if sub.domain_id else None,
                    domain=self._domain(sub),
                    delivered=(
                        sub.submission_status in LEGACY_DELIVERED_STATUSES
                        or sub.inclusion_status == "included"
                    ),
                    in_progress=sub.submission_status in IN_PROGRESS_STATUSES,
                    included=sub.inclusion_status == "included",
                    excluded=sub.inclusion_status == "excluded",
                    exclusion_reason=sub.exclusion_reason,
                    retail_price=sub.retail_price_snapshot or 0,
                    wholesale_price=sub.wholesale_price_snapshot or 0,
                    dr=_int_or_none(meta.get("dr")),
                    traffic=_int_or_none(meta.get("traffic")),
                ))
        return units

    def priced_links(self) -> list[int]:
        return [
            s.retail_price_snapshot
            for subs in self.submissions.values() for s in subs
            if s.inclusion_status == "included" and s.retail_price_snapshot
        ]


@dataclass
class Unfulfilled:
    groups: list[OrderGroup]
    client_names: dict[str, str] = field(default_factory=dict)
    kind: str = "unfulfilled"

    def benchmark_groups(self) -> list[BenchmarkClientGroup]:
        return [
            _original_request_group(g, self.client_names.get(str(g.client_id), ""))
            for g in self.groups
        ]

    def delivery_units(self) -> list[DeliveryUnit]:
        return []

    def priced_links(self) -> list[int]:
        return []


FulfillmentSource = Union[ModernFulfillment, LegacyFulfillment, Unfulfilled]


async def _client_names(db: AsyncSession, client_ids: set) -> dict[str, str]:
    if not client_ids:
        return {}
    result = await db.execute(select(Client.id, Client.name).where(Client.id.in_(client_ids)))
    return {str(cid): name for cid, name in result.all()}


async def load_fulfillment(db: AsyncSession, order_id: uuid.UUID) -> FulfillmentSource:
    """Select and load the fulfillment variant for an order."""
    result = await db.execute(
        select(OrderLineItem)
        .where(OrderLineItem.order_id == order_id)
        .order_by(OrderLineItem.added_at, OrderLineItem.id)
    )
    items = list(result.scalars().all())
    if items:
        active = [i for i in items if i.status not in INACTIVE_ITEM_STATUSES]
        names = await _client_names(db, {i.client_id for i in active})
        return ModernFulfillment(items=active, client_names=names)

    result = await db.execute(
        select(OrderGroup)
        .where(OrderGroup.order_id == order_id)
        .order_by(OrderGroup.created_at, OrderGroup.id)
    )
    groups = list(result.scalars().all())
    names = await _client_names(db, {g.client_id for g in groups})

    submissions: dict[str, list[OrderSiteSubmission]] = {}
    if groups:
        result = await db.execute(
            select(OrderSiteSubmission)
            .where(OrderSiteSubmission.order_group_id.in_([g.id for g in groups]))
            .order_by(OrderSiteSubmission.created_at, OrderSiteSubmission.id)
        )
        for sub in result.scalars().all():
            submissions.setdefault(str(sub.order_group_id), []).append(sub)

    if not submissions:
        return Unfulfilled(groups=groups, client_names=names)

    domain_ids = {s.domain_id for subs in submissions.values() for s in subs if s.domain_id}
    domains: dict[str, str] = {}
    if domain_ids:
        result = await db.execute(
            select(Website.id, Website.domain).where(Website.id.in_(domain_ids))
        )
        domains = {str(wid): domain for wid, domain in result.all()}

    return LegacyFulfillment(
        groups=groups, submissions=submissions, client_names=names, domains=domains,
    )
