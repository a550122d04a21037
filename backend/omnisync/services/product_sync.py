"""Product sync engine.

WHAT:
    Projects one canonical Product onto a set of platforms: creates the
    listing where none exists, updates it where one does, and records the
    outcome on the PlatformListing row.

WHY:
    - Partial-failure isolation: one platform failing never blocks the
      others in the same batch; each platform gets its own result.
    - The caller (job handler or router) decides whether "success" means
      every platform succeeded.

REFERENCES:
    - omnisync/adapters/base.py (create_listing / update_listing)
    - omnisync/services/sync_jobs.py (queue handler)
    - omnisync/routers/products.py (synchronous trigger)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.adapters.registry import AdapterFactory
from omnisync.errors import AdapterError, CredentialError, NotConnectedError, ValidationError
from omnisync.models import PlatformEnum, PlatformListing, Product, utcnow
from omnisync.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


@dataclass
class ProductSyncResult:
    """Outcome of syncing one product to one platform."""
    platform: str
    success: bool
    platform_listing_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_listing(db: Session, product_id: UUID, platform: PlatformEnum) -> Optional[PlatformListing]:
    return (
        db.query(PlatformListing)
        .filter(PlatformListing.product_id == product_id, PlatformListing.platform == platform)
        .first()
    )


def upsert_listing(db: Session, product: Product, platform: PlatformEnum, **fields: Any) -> PlatformListing:
    """Create or update the (product, platform) listing row. Caller commits."""
    listing = get_listing(db, product.id, platform)
    if listing is None:
        listing = PlatformListing(product_id=product.id, platform=platform)
        db.add(listing)
    for key, value in fields.items():
        setattr(listing, key, value)
    return listing


class ProductSyncEngine:
    """Create/update listings for one product across platforms."""

    def __init__(self, db: Session, adapters: AdapterFactory):
        self.db = db
        self.adapters = adapters

    async def sync_product(
        self,
        tenant_id: UUID,
        product_id: UUID,
        platforms: Sequence[PlatformEnum],
    ) -> List[ProductSyncResult]:
        """Sync a product to every requested platform.

        Raises:
            ValidationError: product does not exist for this tenant.
        """
        product = (
            self.db.query(Product)
            .filter(Product.id == product_id, Product.tenant_id == tenant_id)
            .first()
        )
        if not product:
            raise ValidationError(f"Product {product_id} not found")

        results = []
        for platform in platforms:
            results.append(await self._sync_to_platform(tenant_id, product, PlatformEnum(platform)))

        ok = sum(1 for r in results if r.success)
        logger.info(
            "[PRODUCT_SYNC] %s synced to %d/%d platforms",
            product.sku, ok, len(results),
        )
        return results

    async def _sync_to_platform(self, tenant_id: UUID, product: Product, platform: PlatformEnum) -> ProductSyncResult:
        listing = get_listing(self.db, product.id, platform)
        try:
            adapter = self.adapters.get(tenant_id, platform)
            if adapter is None:
                raise NotConnectedError(f"{platform.value} is not connected")

            if listing and listing.platform_listing_id:
                listing_id = await adapter.update_listing(listing.platform_listing_id, product)
            else:
                listing_id = await adapter.create_listing(product)

        except CredentialError as exc:
            self.adapters.mark_error(tenant_id, platform, str(exc))
            return self._record_failure(product, platform, str(exc), retryable=False)
        except AdapterError as exc:
            # Every platform rejection goes back to the queue until its retry ceiling
            logger.info("[PRODUCT_SYNC] %s rejection from %s", "Transient" if exc.retryable else "Permanent", platform.value)
            return self._record_failure(product, platform, exc.message, retryable=True)
        except NotConnectedError as exc:
            return self._record_failure(product, platform, str(exc), retryable=False)
        except Exception as exc:
            logger.exception("[PRODUCT_SYNC] Unexpected error syncing %s to %s", product.sku, platform.value)
            capture_exception(exc, extra={"platform": platform.value, "product_id": str(product.id)})
            return self._record_failure(product, platform, str(exc), retryable=False)

        upsert_listing(
            self.db,
            product,
            platform,
            platform_listing_id=listing_id,
            price=product.price,
            quantity=product.quantity,
            status="active",
            sync_error=None,
            last_synced_at=utcnow(),
        )
        self.db.commit()
        return ProductSyncResult(platform=platform.value, success=True, platform_listing_id=listing_id)

    def _record_failure(self, product: Product, platform: PlatformEnum, message: str, *, retryable: bool) -> ProductSyncResult:
        logger.warning("[PRODUCT_SYNC] %s -> %s failed: %s", product.sku, platform.value, message)
        listing = get_listing(self.db, product.id, platform)
        if listing is None:
            # Placeholder row so the error is visible; quantity 0 keeps it out of the oversell sum
            listing = PlatformListing(product_id=product.id, platform=platform, quantity=0)
            self.db.add(listing)
        listing.status = "error"
        listing.sync_error = message[:1000]
        self.db.commit()
        return ProductSyncResult(
            platform=platform.value,
            success=False,
            platform_listing_id=listing.platform_listing_id,
            error=message,
            retryable=retryable,
        )
