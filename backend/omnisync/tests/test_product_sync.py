"""Tests for the product sync engine.

WHAT: Create-vs-update listing decisions and partial-failure isolation.
WHY: One platform failing must never block the others in the same batch, and
     the failure has to stay visible on the listing row.
"""

import asyncio
import json

import pytest

from omnisync.errors import ValidationError
from omnisync.models import PlatformEnum, PlatformListing
from omnisync.services.product_sync import ProductSyncEngine

SHOPIFY_API = "https://acme.myshopify.com/admin/api/2024-07"
WOO_API = "https://woo.example.com/wp-json/wc/v3"


def _listing(db, product, platform):
    db.expire_all()
    return db.query(PlatformListing).filter_by(product_id=product.id, platform=platform).one_or_none()


def test_one_platform_failing_does_not_block_others(
    db, tenant, shopify_connection, woo_connection, adapter_factory, platform_routes, make_product,
):
    product = make_product(sku="TOTE-001", quantity=12)
    platform_routes.json("POST", f"{SHOPIFY_API}/products.json", {"errors": "unavailable"}, status_code=503)
    platform_routes.json("POST", f"{WOO_API}/products", {"id": 77})

    results = asyncio.run(ProductSyncEngine(db, adapter_factory).sync_product(
        tenant.id, product.id, [PlatformEnum.shopify, PlatformEnum.woocommerce],
    ))

    shopify, woo = results
    assert shopify.success is False and shopify.retryable is True
    assert woo.success is True and woo.platform_listing_id == "77"

    woo_listing = _listing(db, product, PlatformEnum.woocommerce)
    assert woo_listing.platform_listing_id == "77"
    assert woo_listing.quantity == 12
    assert woo_listing.sync_error is None

    shopify_listing = _listing(db, product, PlatformEnum.shopify)
    assert shopify_listing.status == "error"
    assert shopify_listing.platform_listing_id is None
    assert shopify_listing.quantity == 0
    assert "unavailable" in shopify_listing.sync_error


def test_existing_listing_is_updated_not_recreated(db, tenant, woo_connection, adapter_factory, platform_routes, make_product):
    product = make_product(sku="MUG-9", quantity=3)
    db.add(PlatformListing(product_id=product.id, platform=PlatformEnum.woocommerce, platform_listing_id="501", quantity=3))
    db.commit()
    platform_routes.json("PUT", f"{WOO_API}/products/501", {"id": 501})

    result = asyncio.run(ProductSyncEngine(db, adapter_factory).sync_product(tenant.id, product.id, [PlatformEnum.woocommerce]))[0]

    assert result.success is True
    assert result.platform_listing_id == "501"
    assert [r.method for r in platform_routes.requests] == ["PUT"]
    sent = json.loads(platform_routes.requests[0].content)
    assert sent["sku"] == "MUG-9"
    assert "images" not in sent


def test_shopify_create_sets_inventory_at_primary_location(db, tenant, shopify_connection, adapter_factory, platform_routes, make_product):
    product = make_product(sku="TOTE-001", quantity=8)
    created = {"product": {"id": 555, "variants": [{"id": 1, "sku": "TOTE-001", "inventory_item_id": 808}]}}
    platform_routes.json("POST", f"{SHOPIFY_API}/products.json", created)
    platform_routes.json("GET", f"{SHOPIFY_API}/products/555.json", created)
    platform_routes.json("POST", f"{SHOPIFY_API}/inventory_levels/set.json", {"inventory_level": {"available": 8}})

    result = asyncio.run(ProductSyncEngine(db, adapter_factory).sync_product(tenant.id, product.id, [PlatformEnum.shopify]))[0]

    assert result.success is True
    assert result.platform_listing_id == "555"
    inventory_call = platform_routes.requests[-1]
    assert json.loads(inventory_call.content) == {"location_id": 9001, "inventory_item_id": 808, "available": 8}


def test_not_connected_platform_reports_failure(db, tenant, adapter_factory, make_product):
    product = make_product()
    result = asyncio.run(ProductSyncEngine(db, adapter_factory).sync_product(tenant.id, product.id, [PlatformEnum.etsy]))[0]
    assert result.success is False
    assert result.retryable is False
    assert "not connected" in result.error


def test_unknown_product_raises(db, tenant, other_tenant, adapter_factory, make_product):
    foreign = make_product(sku="FOREIGN-1", tenant_id=other_tenant.id)
    with pytest.raises(ValidationError):
        asyncio.run(ProductSyncEngine(db, adapter_factory).sync_product(tenant.id, foreign.id, [PlatformEnum.shopify]))
