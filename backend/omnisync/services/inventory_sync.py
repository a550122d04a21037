"""Inventory sync engine.

WHAT:
    - import: pull platform stock and overwrite canonical quantities by SKU
    - export: push a product's canonical quantity to platforms
    - oversell guard: clamp listing snapshots so their sum never exceeds the
      canonical quantity
    - bulk updates, low-stock query and the inventory audit log

WHY:
    The canonical Product.quantity is the truth; every change to it is
    appended to InventoryLog. Import is last-writer-wins across platforms
    (no conflict resolution).

REFERENCES:
    - omnisync/services/product_sync.py (listing upsert helpers)
    - omnisync/routers/inventory.py
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session, selectinload

from omnisync.adapters.registry import AdapterFactory
from omnisync.errors import AdapterError, CredentialError, NotConnectedError, ValidationError
from omnisync.models import (
    InventoryLog,
    PlatformEnum,
    PlatformListing,
    Product,
    ProductStatusEnum,
    utcnow,
)
from omnisync.services.product_sync import get_listing, upsert_listing

logger = logging.getLogger(__name__)

MAX_PAGES = 200
DEFAULT_LOW_STOCK_THRESHOLD = 10


@dataclass
class InventorySyncResult:
    """Outcome of an inventory import or export against one platform."""
    platform: str
    success: bool
    updated: int = 0
    unmatched: int = 0
    error: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OversellCorrection:
    product_id: str
    sku: str
    canonical_quantity: int
    listed_before: int
    per_listing: int
    listing_ids: List[str] = field(default_factory=list)


class InventorySyncEngine:

    def __init__(self, db: Session, adapters: Optional[AdapterFactory] = None):
        self.db = db
        self.adapters = adapters

    # -------------------------------------------------------------------------
    # Canonical quantity changes
    # -------------------------------------------------------------------------

    def set_quantity(self, product: Product, new_quantity: int, reason: str) -> Optional[InventoryLog]:
        """Change canonical stock and append the audit entry. Caller commits.

        No-op (and no log entry) when the quantity is unchanged.
        """
        if new_quantity < 0:
            raise ValidationError("Quantity cannot be negative")
        old_quantity = product.quantity or 0
        if old_quantity == new_quantity:
            return None
        product.quantity = new_quantity
        log = InventoryLog(
            product_id=product.id,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            change_reason=reason,
        )
        self.db.add(log)
        return log

    def _get_product(self, tenant_id: UUID, product_id: UUID) -> Product:
        product = (
            self.db.query(Product)
            .filter(Product.id == product_id, Product.tenant_id == tenant_id)
            .first()
        )
        if not product:
            raise ValidationError(f"Product {product_id} not found")
        return product

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    async def import_inventory(self, tenant_id: UUID, platforms: Sequence[PlatformEnum]) -> List[InventorySyncResult]:
        results = []
        for platform in platforms:
            results.append(await self._import_platform(tenant_id, PlatformEnum(platform)))
        return results

    async def _import_platform(self, tenant_id: UUID, platform: PlatformEnum) -> InventorySyncResult:
        result = InventorySyncResult(platform=platform.value, success=False)
        try:
            adapter = self.adapters.get(tenant_id, platform)
            if adapter is None:
                raise NotConnectedError(f"{platform.value} is not connected")

            cursor = None
            for _ in range(MAX_PAGES):
                page = await adapter.fetch_products(cursor)
                for level in adapter.inventory_levels(page.items):
                    product = (
                        self.db.query(Product)
                        .filter(Product.tenant_id == tenant_id, Product.sku == level.sku)
                        .first()
                    )
                    if not product:
                        result.unmatched += 1
                        continue
                    if self.set_quantity(product, level.quantity, f"synced from {platform.value}"):
                        result.updated += 1
                    listing = get_listing(self.db, product.id, platform)
                    upsert_listing(
                        self.db,
                        product,
                        platform,
                        platform_listing_id=(listing.platform_listing_id if listing and listing.platform_listing_id else level.platform_listing_id),
                        quantity=level.quantity,
                        last_synced_at=utcnow(),
                    )
                self.db.commit()
                if not page.next_cursor:
                    break
                cursor = page.next_cursor

        except CredentialError as exc:
            self.db.rollback()
            self.adapters.mark_error(tenant_id, platform, str(exc))
            result.error = str(exc)
            return result
        except AdapterError as exc:
            self.db.rollback()
            result.error = exc.message
            result.retryable = True
            logger.warning(
                "[INVENTORY_SYNC] %s import failed for tenant %s (%s): %s",
                platform.value, tenant_id, "transient" if exc.retryable else "rejected", exc,
            )
            return result
        except NotConnectedError as exc:
            result.error = str(exc)
            return result

        result.success = True
        logger.info(
            "[INVENTORY_SYNC] Imported %s: %d updated, %d unmatched SKUs (tenant %s)",
            platform.value, result.updated, result.unmatched, tenant_id,
        )
        return result

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    async def export_inventory(
        self,
        tenant_id: UUID,
        product_id: UUID,
        platforms: Sequence[PlatformEnum],
    ) -> List[InventorySyncResult]:
        product = self._get_product(tenant_id, product_id)
        results = []
        for platform in platforms:
            results.append(await self._push(tenant_id, product, PlatformEnum(platform), product.quantity))
        return results

    async def _push(self, tenant_id: UUID, product: Product, platform: PlatformEnum, quantity: int) -> InventorySyncResult:
        result = InventorySyncResult(platform=platform.value, success=False)
        listing = get_listing(self.db, product.id, platform)
        try:
            adapter = self.adapters.get(tenant_id, platform)
            if adapter is None:
                raise NotConnectedError(f"{platform.value} is not connected")
            await adapter.update_inventory(
                product.sku,
                quantity,
                listing_id=listing.platform_listing_id if listing else None,
            )
        except CredentialError as exc:
            self.adapters.mark_error(tenant_id, platform, str(exc))
            result.error = str(exc)
            return result
        except AdapterError as exc:
            result.error = exc.message
            result.retryable = True
            logger.warning(
                "[INVENTORY_SYNC] Push of %s to %s failed (%s): %s",
                product.sku, platform.value, "transient" if exc.retryable else "rejected", exc,
            )
            if listing:
                listing.sync_error = exc.message[:1000]
                self.db.commit()
            return result
        except NotConnectedError as exc:
            result.error = str(exc)
            return result

        upsert_listing(
            self.db,
            product,
            platform,
            quantity=quantity,
            sync_error=None,
            last_synced_at=utcnow(),
        )
        self.db.commit()
        result.success = True
        result.updated = 1
        return result

    # -------------------------------------------------------------------------
    # Bulk update
    # -------------------------------------------------------------------------

    async def bulk_update(self, tenant_id: UUID, updates: Sequence[Any]) -> List[Dict[str, Any]]:
        """Apply local quantity changes, then push to any platforms named per update.

        Each entry needs `product_id`, `quantity`, optional `reason` and
        `platforms`. Entries are independent: a missing product is reported
        and the rest continue.
        """
        outcomes = []
        for update in updates:
            entry: Dict[str, Any] = {"productId": str(update.product_id), "success": False}
            try:
                product = self._get_product(tenant_id, update.product_id)
            except ValidationError as exc:
                entry["error"] = str(exc)
                outcomes.append(entry)
                continue

            self.set_quantity(product, update.quantity, update.reason or "bulk update")
            self.db.commit()
            entry.update({"success": True, "sku": product.sku, "quantity": product.quantity})

            if update.platforms:
                pushes = [await self._push(tenant_id, product, PlatformEnum(p), product.quantity) for p in update.platforms]
                entry["platforms"] = [r.to_dict() for r in pushes]
            outcomes.append(entry)

        logger.info("[INVENTORY_SYNC] Bulk update applied %d/%d entries", sum(1 for o in outcomes if o["success"]), len(outcomes))
        return outcomes

    # -------------------------------------------------------------------------
    # Oversell guard
    # -------------------------------------------------------------------------

    def enforce_oversell_guard(self, tenant_id: UUID, product_id: Optional[UUID] = None) -> List[OversellCorrection]:
        """Clamp listing quantities so their sum never exceeds canonical stock.

        When the sum of live listings exceeds Product.quantity, every listing
        is set to quantity // listing_count. Running it again without an
        intervening change mutates nothing.
        """
        query = (
            self.db.query(Product)
            .options(selectinload(Product.listings))
            .filter(Product.tenant_id == tenant_id)
        )
        if product_id:
            query = query.filter(Product.id == product_id)

        corrections = []
        for product in query.all():
            live = [listing for listing in product.listings if listing.platform_listing_id]
            if not live:
                continue
            listed = sum(listing.quantity or 0 for listing in live)
            canonical = product.quantity or 0
            if listed <= canonical:
                continue

            per_listing = canonical // len(live)
            for listing in live:
                listing.quantity = per_listing
            corrections.append(OversellCorrection(
                product_id=str(product.id),
                sku=product.sku,
                canonical_quantity=canonical,
                listed_before=listed,
                per_listing=per_listing,
                listing_ids=[listing.platform_listing_id for listing in live],
            ))
            logger.warning(
                "[INVENTORY_SYNC] Oversell on %s: listed %d > stock %d, clamped to %d per listing",
                product.sku, listed, canonical, per_listing,
            )

        if corrections:
            self.db.commit()
        return corrections

    async def reconcile(self, tenant_id: UUID, push: bool = True) -> Dict[str, Any]:
        """Run the oversell guard and push the clamped quantities to each platform."""
        corrections = self.enforce_oversell_guard(tenant_id)
        pushed: List[Dict[str, Any]] = []
        if push and self.adapters is not None:
            for correction in corrections:
                product = self._get_product(tenant_id, UUID(correction.product_id))
                for listing in list(product.listings):
                    if not listing.platform_listing_id:
                        continue
                    outcome = await self._push(tenant_id, product, listing.platform, listing.quantity)
                    pushed.append({"sku": product.sku, **outcome.to_dict()})
        return {"corrections": [asdict(c) for c in corrections], "pushed": pushed}

    # -------------------------------------------------------------------------
    # Read models
    # -------------------------------------------------------------------------

    def check_low_stock(self, tenant_id: UUID, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> List[Product]:
        return (
            self.db.query(Product)
            .filter(
                Product.tenant_id == tenant_id,
                Product.status == ProductStatusEnum.active,
                Product.quantity <= threshold,
            )
            .order_by(Product.quantity.asc(), Product.sku.asc())
            .all()
        )

    def get_inventory_logs(self, tenant_id: UUID, product_id: UUID, limit: int = 50) -> List[InventoryLog]:
        self._get_product(tenant_id, product_id)
        return (
            self.db.query(InventoryLog)
            .filter(InventoryLog.product_id == product_id)
            .order_by(InventoryLog.created_at.desc())
            .limit(limit)
            .all()
        )
