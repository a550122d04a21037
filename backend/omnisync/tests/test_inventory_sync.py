"""Tests for the inventory sync engine.

WHAT: Canonical quantity changes and their audit log, import by SKU, export,
      bulk updates, low-stock queries and the oversell guard.
WHY: The sum of listed quantities must converge to at most the canonical
     stock, and every canonical change must leave an InventoryLog entry.
"""

import asyncio
import json

import pytest

from omnisync.errors import ValidationError
from omnisync.models import InventoryLog, PlatformEnum, PlatformListing, Product, ProductStatusEnum
from omnisync.schemas import InventoryUpdate
from omnisync.services.inventory_sync import InventorySyncEngine

WOO_API = "https://woo.example.com/wp-json/wc/v3"


def _add_listing(db, product, platform, listing_id, quantity):
    listing = PlatformListing(product_id=product.id, platform=platform, platform_listing_id=listing_id, quantity=quantity)
    db.add(listing)
    db.commit()
    return listing


# ============================================================================
# Canonical quantity
# ============================================================================

def test_set_quantity_writes_log(db, make_product):
    product = make_product(quantity=10)
    engine = InventorySyncEngine(db)

    log = engine.set_quantity(product, 7, "manual recount")
    db.commit()

    assert product.quantity == 7
    assert (log.old_quantity, log.new_quantity, log.change_reason) == (10, 7, "manual recount")


def test_set_quantity_unchanged_is_noop(db, make_product):
    product = make_product(quantity=4)
    assert InventorySyncEngine(db).set_quantity(product, 4, "noop") is None
    db.commit()
    assert db.query(InventoryLog).count() == 0


def test_negative_quantity_is_rejected(db, make_product):
    product = make_product(quantity=4)
    with pytest.raises(ValidationError):
        InventorySyncEngine(db).set_quantity(product, -1, "typo")
    assert product.quantity == 4


# ============================================================================
# Oversell guard
# ============================================================================

def test_oversell_guard_clamps_and_converges(db, tenant, make_product):
    product = make_product(sku="TOTE-001", quantity=5)
    _add_listing(db, product, PlatformEnum.shopify, "s-1", 4)
    _add_listing(db, product, PlatformEnum.woocommerce, "w-1", 4)
    # Failed first sync: no platform id, must not count as a live listing
    _add_listing(db, product, PlatformEnum.etsy, None, 0)
    db.expire_all()
    engine = InventorySyncEngine(db)

    corrections = engine.enforce_oversell_guard(tenant.id)

    assert len(corrections) == 1
    assert corrections[0].listed_before == 8
    assert corrections[0].per_listing == 2
    assert sorted(corrections[0].listing_ids) == ["s-1", "w-1"]

    db.expire_all()
    live = db.query(PlatformListing).filter(PlatformListing.platform_listing_id.isnot(None)).all()
    assert sum(listing.quantity for listing in live) <= 5
    assert engine.enforce_oversell_guard(tenant.id) == []


def test_oversell_guard_leaves_consistent_products_alone(db, tenant, make_product):
    product = make_product(quantity=10)
    _add_listing(db, product, PlatformEnum.shopify, "s-1", 6)
    _add_listing(db, product, PlatformEnum.woocommerce, "w-1", 4)
    db.expire_all()

    assert InventorySyncEngine(db).enforce_oversell_guard(tenant.id, product_id=product.id) == []


def test_reconcile_pushes_clamped_quantities(db, tenant, woo_connection, adapter_factory, platform_routes, make_product):
    product = make_product(sku="MUG-9", quantity=3)
    _add_listing(db, product, PlatformEnum.woocommerce, "501", 9)
    platform_routes.json("PUT", f"{WOO_API}/products/501", {"id": 501})
    db.expire_all()

    report = asyncio.run(InventorySyncEngine(db, adapter_factory).reconcile(tenant.id))

    assert report["corrections"][0]["per_listing"] == 3
    assert report["pushed"][0]["success"] is True
    assert json.loads(platform_routes.requests[0].content) == {"stock_quantity": 3, "manage_stock": True}


# ============================================================================
# Import / export
# ============================================================================

def test_import_matches_by_sku_and_logs(db, tenant, woo_connection, adapter_factory, platform_routes, make_product):
    product = make_product(sku="TOTE-001", quantity=10)
    platform_routes.json("GET", f"{WOO_API}/products", [
        {"id": 11, "sku": "TOTE-001", "stock_quantity": 3},
        {"id": 12, "sku": "NOT-IN-CATALOG", "stock_quantity": 1},
        {"id": 13, "sku": "", "stock_quantity": 8},
    ])

    result = asyncio.run(InventorySyncEngine(db, adapter_factory).import_inventory(tenant.id, [PlatformEnum.woocommerce]))[0]

    assert result.success is True
    assert (result.updated, result.unmatched) == (1, 1)
    db.expire_all()
    assert db.get(Product, product.id).quantity == 3
    log = db.query(InventoryLog).one()
    assert log.change_reason == "synced from woocommerce"
    listing = db.query(PlatformListing).one()
    assert (listing.platform_listing_id, listing.quantity) == ("11", 3)


def test_export_pushes_canonical_quantity(db, tenant, woo_connection, adapter_factory, platform_routes, make_product):
    product = make_product(sku="MUG-9", quantity=6)
    _add_listing(db, product, PlatformEnum.woocommerce, "501", 2)
    platform_routes.json("PUT", f"{WOO_API}/products/501", {"id": 501})

    results = asyncio.run(InventorySyncEngine(db, adapter_factory).export_inventory(
        tenant.id, product.id, [PlatformEnum.woocommerce, PlatformEnum.amazon],
    ))

    woo, amazon = results
    assert woo.success is True
    assert amazon.success is False and "not connected" in amazon.error
    db.expire_all()
    assert db.query(PlatformListing).one().quantity == 6


# ============================================================================
# Bulk update / low stock / logs
# ============================================================================

def test_bulk_update_reports_missing_products(db, tenant, make_product):
    import uuid

    product = make_product(quantity=10)
    missing = uuid.uuid4()
    updates = [
        InventoryUpdate(product_id=product.id, quantity=2, reason="cycle count"),
        InventoryUpdate(product_id=missing, quantity=5),
    ]

    outcomes = asyncio.run(InventorySyncEngine(db).bulk_update(tenant.id, updates))

    assert outcomes[0] == {"productId": str(product.id), "success": True, "sku": product.sku, "quantity": 2}
    assert outcomes[1]["success"] is False
    assert str(missing) in outcomes[1]["error"]


def test_low_stock_only_active_products(db, tenant, make_product):
    make_product(sku="LOW-1", quantity=2)
    make_product(sku="LOW-DRAFT", quantity=1, status=ProductStatusEnum.draft)
    make_product(sku="PLENTY", quantity=50)
    make_product(sku="EDGE", quantity=5)

    low = InventorySyncEngine(db).check_low_stock(tenant.id, threshold=5)

    assert [p.sku for p in low] == ["LOW-1", "EDGE"]


def test_inventory_logs_are_tenant_scoped(db, tenant, other_tenant, make_product):
    foreign = make_product(sku="FOREIGN", tenant_id=other_tenant.id)
    with pytest.raises(ValidationError):
        InventorySyncEngine(db).get_inventory_logs(tenant.id, foreign.id)
