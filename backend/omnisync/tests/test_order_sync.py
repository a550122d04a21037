"""Tests for the order sync engine.

WHAT: Idempotent order import keyed on (tenant, platform, platform order id),
      SKU linking, malformed-order skipping and per-platform isolation.
WHY: Scheduled imports and webhooks replay the same orders; a second import
     must update in place and never duplicate orders or line items.
"""

import asyncio
from decimal import Decimal

from omnisync.adapters.base import OrderFilter
from omnisync.models import Order, OrderItem, OrderStatusEnum, PlatformEnum
from omnisync.services.order_sync import OrderSyncEngine

SHOPIFY_ORDERS = "https://acme.myshopify.com/admin/api/2024-07/orders.json"


def _shopify_order(order_id, fulfillment_status=None, total="48.00", sku="TOTE-001"):
    return {
        "id": order_id,
        "created_at": "2026-10-10T09:00:00Z",
        "total_price": total,
        "currency": "USD",
        "email": "buyer@example.com",
        "fulfillment_status": fulfillment_status,
        "customer": {"first_name": "Ada", "last_name": "Buyer"},
        "line_items": [{"id": order_id * 10, "sku": sku, "title": "Tote", "quantity": 2, "price": "24.00"}],
    }


def test_reimport_is_idempotent(db, tenant, shopify_connection, adapter_factory, platform_routes, make_product):
    product = make_product(sku="TOTE-001")
    platform_routes.json("GET", SHOPIFY_ORDERS, {"orders": [_shopify_order(1001), _shopify_order(1002)]})
    engine = OrderSyncEngine(db, adapter_factory)

    first = asyncio.run(engine.import_orders(tenant.id, [PlatformEnum.shopify]))[0]
    assert first.success is True
    assert (first.created, first.updated) == (2, 0)

    # Same orders again, one of them now fulfilled with a new total
    platform_routes.json("GET", SHOPIFY_ORDERS, {"orders": [_shopify_order(1001, "fulfilled", total="50.00"), _shopify_order(1002)]})
    second = asyncio.run(engine.import_orders(tenant.id, [PlatformEnum.shopify]))[0]
    assert (second.created, second.updated) == (0, 2)

    db.expire_all()
    assert db.query(Order).count() == 2
    assert db.query(OrderItem).count() == 2
    updated = db.query(Order).filter(Order.platform_order_id == "1001").one()
    assert updated.status == OrderStatusEnum.shipped
    assert updated.total == Decimal("50.00")
    assert updated.items[0].product_id == product.id


def test_status_filter_and_max_orders(db, tenant, shopify_connection, adapter_factory, platform_routes):
    platform_routes.json("GET", SHOPIFY_ORDERS, {"orders": [
        _shopify_order(1, "fulfilled"), _shopify_order(2), _shopify_order(3, "fulfilled"), _shopify_order(4, "fulfilled"),
    ]})
    engine = OrderSyncEngine(db, adapter_factory)

    result = asyncio.run(engine.import_orders(
        tenant.id,
        [PlatformEnum.shopify],
        OrderFilter(status=OrderStatusEnum.shipped),
        max_orders=2,
    ))[0]

    assert result.order_count == 2
    assert sorted(o.platform_order_id for o in db.query(Order).all()) == ["1", "3"]


def test_malformed_order_is_skipped(db, tenant, shopify_connection, adapter_factory, platform_routes):
    platform_routes.json("GET", SHOPIFY_ORDERS, {"orders": [{"total_price": "1.00"}, _shopify_order(7)]})

    result = asyncio.run(OrderSyncEngine(db, adapter_factory).import_orders(tenant.id, [PlatformEnum.shopify]))[0]

    assert result.success is True
    assert result.skipped == 1
    assert result.created == 1


def test_platform_failures_are_isolated(db, tenant, shopify_connection, adapter_factory, platform_routes):
    platform_routes.json("GET", SHOPIFY_ORDERS, {"orders": [_shopify_order(42)]})

    results = asyncio.run(OrderSyncEngine(db, adapter_factory).import_orders(
        tenant.id, [PlatformEnum.ebay, PlatformEnum.shopify],
    ))

    ebay, shopify = results
    assert ebay.success is False and "not connected" in ebay.error
    assert shopify.success is True and shopify.created == 1


def test_transient_platform_error_is_marked_retryable(db, tenant, shopify_connection, adapter_factory, platform_routes):
    platform_routes.json("GET", SHOPIFY_ORDERS, {"errors": "busy"}, status_code=503)

    result = asyncio.run(OrderSyncEngine(db, adapter_factory).import_orders(tenant.id, [PlatformEnum.shopify]))[0]

    assert result.success is False
    assert result.retryable is True


def test_revoked_credentials_flip_connection_to_error(db, vault, tenant, shopify_connection, adapter_factory, platform_routes):
    platform_routes.json("GET", SHOPIFY_ORDERS, {"errors": "revoked"}, status_code=401)

    result = asyncio.run(OrderSyncEngine(db, adapter_factory).import_orders(tenant.id, [PlatformEnum.shopify]))[0]

    assert result.success is False
    assert result.retryable is False
    assert vault.get(tenant.id, PlatformEnum.shopify) is None
    assert vault.list_masked(tenant.id)[0]["status"] == "ERROR"
