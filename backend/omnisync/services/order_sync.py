"""Order sync engine.

WHAT:
    Pages through each platform's orders, normalizes them through the
    adapter, and upserts them into the canonical store keyed on
    (tenant, platform, platform_order_id).

WHY:
    - Webhooks and scheduled imports deliver the same order repeatedly and
      out of order; the upsert must be idempotent.
    - Line items are immutable once the order exists: a re-import only moves
      status, total and shipping address.
    - A single malformed order is logged and skipped, never aborting the page.

REFERENCES:
    - omnisync/adapters/base.py (fetch_orders, normalize_order)
    - omnisync/models.py::Order (uq_order_tenant_platform_order)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from omnisync.adapters.base import NormalizedOrder, OrderFilter
from omnisync.adapters.registry import AdapterFactory
from omnisync.errors import AdapterError, CredentialError, NotConnectedError
from omnisync.models import Order, OrderItem, PlatformEnum, Product
from omnisync.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

# Hard stop against a platform that keeps returning a cursor
MAX_PAGES = 200


@dataclass
class OrderSyncResult:
    """Outcome of importing orders from one platform."""
    platform: str
    success: bool
    order_count: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OrderSyncEngine:
    """Import orders for one tenant from a set of platforms."""

    def __init__(self, db: Session, adapters: AdapterFactory):
        self.db = db
        self.adapters = adapters

    async def import_orders(
        self,
        tenant_id: UUID,
        platforms: Sequence[PlatformEnum],
        order_filter: Optional[OrderFilter] = None,
        max_orders: Optional[int] = None,
    ) -> List[OrderSyncResult]:
        order_filter = order_filter or OrderFilter()
        results = []
        for platform in platforms:
            results.append(await self._import_platform(tenant_id, PlatformEnum(platform), order_filter, max_orders))
        return results

    async def _import_platform(
        self,
        tenant_id: UUID,
        platform: PlatformEnum,
        order_filter: OrderFilter,
        max_orders: Optional[int],
    ) -> OrderSyncResult:
        result = OrderSyncResult(platform=platform.value, success=False)
        try:
            adapter = self.adapters.get(tenant_id, platform)
            if adapter is None:
                raise NotConnectedError(f"{platform.value} is not connected")

            cursor = order_filter.cursor
            for _ in range(MAX_PAGES):
                page = await adapter.fetch_orders(replace(order_filter, cursor=cursor))
                for raw in page.items:
                    self._import_one(tenant_id, platform, adapter, raw, order_filter, result)
                    if max_orders and result.order_count >= max_orders:
                        break
                if not page.next_cursor or (max_orders and result.order_count >= max_orders):
                    break
                cursor = page.next_cursor

        except CredentialError as exc:
            self.adapters.mark_error(tenant_id, platform, str(exc))
            result.error = str(exc)
            return result
        except AdapterError as exc:
            result.error = exc.message
            result.retryable = True
            logger.warning(
                "[ORDER_SYNC] %s import failed for tenant %s (%s): %s",
                platform.value, tenant_id, "transient" if exc.retryable else "rejected", exc,
            )
            return result
        except NotConnectedError as exc:
            result.error = str(exc)
            return result

        result.success = True
        logger.info(
            "[ORDER_SYNC] %s: %d orders (%d new, %d updated, %d skipped) for tenant %s",
            platform.value, result.order_count, result.created, result.updated, result.skipped, tenant_id,
        )
        return result

    def _import_one(self, tenant_id, platform, adapter, raw, order_filter, result: OrderSyncResult) -> None:
        try:
            normalized = adapter.normalize_order(raw)
            if order_filter.status and normalized.status != order_filter.status:
                return
            created = self.upsert_order(tenant_id, platform, normalized)
        except Exception as exc:
            self.db.rollback()
            result.skipped += 1
            logger.warning("[ORDER_SYNC] Skipping malformed %s order: %s", platform.value, exc)
            capture_exception(exc, extra={"platform": platform.value, "tenant_id": str(tenant_id)})
            return

        result.order_count += 1
        if created:
            result.created += 1
        else:
            result.updated += 1

    def upsert_order(self, tenant_id: UUID, platform: PlatformEnum, normalized: NormalizedOrder) -> bool:
        """Insert or update one order. Returns True when a new row was created."""
        try:
            created = self._upsert(tenant_id, platform, normalized)
            self.db.commit()
            return created
        except IntegrityError:
            # A concurrent import inserted the same order first
            self.db.rollback()
            self._upsert(tenant_id, platform, normalized)
            self.db.commit()
            return False

    def _upsert(self, tenant_id: UUID, platform: PlatformEnum, normalized: NormalizedOrder) -> bool:
        existing = (
            self.db.query(Order)
            .filter(
                Order.tenant_id == tenant_id,
                Order.platform == platform,
                Order.platform_order_id == normalized.platform_order_id,
            )
            .first()
        )
        if existing:
            existing.status = normalized.status
            existing.total = normalized.total
            existing.shipping_address = normalized.shipping_address
            return False

        order = Order(
            tenant_id=tenant_id,
            platform=platform,
            platform_order_id=normalized.platform_order_id,
            status=normalized.status,
            customer_name=normalized.customer_name,
            customer_email=normalized.customer_email,
            shipping_address=normalized.shipping_address,
            total=normalized.total,
            currency=normalized.currency,
            order_date=normalized.order_date,
        )
        skus = {item.sku for item in normalized.items if item.sku}
        product_ids = {}
        if skus:
            product_ids = dict(
                self.db.query(Product.sku, Product.id)
                .filter(Product.tenant_id == tenant_id, Product.sku.in_(skus))
                .all()
            )
        for item in normalized.items:
            order.items.append(OrderItem(
                sku=item.sku,
                title=item.title,
                quantity=item.quantity,
                price=item.price,
                platform_item_id=item.platform_item_id,
                product_id=product_ids.get(item.sku),
            ))
        self.db.add(order)
        self.db.flush()
        return True
