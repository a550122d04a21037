"""Tests for platform adapters.

WHAT: Native status mapping, order normalization, inventory extraction and
      the shared request plumbing (401 refresh, error classification).
WHY: Engines trust adapters to hand back canonical shapes only; a 401 must
     be answered with exactly one refresh and one retry.

REFERENCES:
  - omnisync/adapters/base.py
  - omnisync/adapters/*.py
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from omnisync.adapters.amazon import AmazonAdapter
from omnisync.adapters.base import OrderFilter, parse_datetime
from omnisync.adapters.ebay import EbayAdapter
from omnisync.adapters.etsy import EtsyAdapter
from omnisync.adapters.registry import ADAPTERS, adapter_class
from omnisync.adapters.shopify import ShopifyAdapter, normalize_shop_domain
from omnisync.adapters.woocommerce import WooCommerceAdapter
from omnisync.errors import AdapterError, CredentialError
from omnisync.models import OrderStatusEnum, PlatformEnum
from omnisync.services.credential_vault import PlatformCredentials, TokenBundle

SHOP_DOMAIN = "acme.myshopify.com"


def _credentials(platform, metadata=None, refresh_token=None, access_token="token"):
    return PlatformCredentials(
        tenant_id=uuid4(),
        platform=platform,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=None,
        scope=None,
        metadata=metadata or {},
    )


# ============================================================================
# Registry
# ============================================================================

def test_every_platform_has_an_adapter():
    assert set(ADAPTERS) == set(PlatformEnum)
    for platform, cls in ADAPTERS.items():
        assert cls.platform == platform
        assert adapter_class(platform) is cls


# ============================================================================
# Status mapping
# ============================================================================

@pytest.mark.parametrize(
    "adapter_cls, native, expected",
    [
        (EbayAdapter, "NOT_STARTED", OrderStatusEnum.pending),
        (EbayAdapter, "FULFILLED", OrderStatusEnum.shipped),
        (AmazonAdapter, "Unshipped", OrderStatusEnum.processing),
        (AmazonAdapter, "Canceled", OrderStatusEnum.cancelled),
        (EtsyAdapter, "paid", OrderStatusEnum.processing),
        (EtsyAdapter, "completed", OrderStatusEnum.shipped),
        (WooCommerceAdapter, "completed", OrderStatusEnum.delivered),
        (WooCommerceAdapter, "refunded", OrderStatusEnum.refunded),
        (ShopifyAdapter, None, OrderStatusEnum.pending),
        (ShopifyAdapter, "partial", OrderStatusEnum.processing),
    ],
)
def test_native_status_mapping(adapter_cls, native, expected, settings):
    adapter = adapter_cls(_credentials(adapter_cls.platform), settings)
    assert adapter.map_order_status(native) == expected


def test_unmapped_status_defaults_to_pending(settings):
    adapter = EbayAdapter(_credentials(PlatformEnum.ebay), settings)
    assert adapter.map_order_status("SOMETHING_NEW") == OrderStatusEnum.pending


# ============================================================================
# Normalization
# ============================================================================

def test_shopify_order_normalization(settings):
    adapter = ShopifyAdapter(_credentials(PlatformEnum.shopify, {"shop": SHOP_DOMAIN}), settings)
    order = adapter.normalize_order({
        "id": 450789469,
        "email": "bob@example.com",
        "created_at": "2026-10-01T10:00:00-04:00",
        "total_price": "199.65",
        "currency": "CAD",
        "fulfillment_status": "fulfilled",
        "customer": {"first_name": "Bob", "last_name": "Norman"},
        "shipping_address": {"address1": "123 Amoebobacterium St", "city": "Ottawa", "province": "ON", "zip": "K2P0V6", "country_code": "CA"},
        "line_items": [{"id": 1, "sku": "TOTE-001", "title": "Tote", "quantity": 2, "price": "99.00"}],
    })

    assert order.platform_order_id == "450789469"
    assert order.status == OrderStatusEnum.shipped
    assert order.total == Decimal("199.65")
    assert order.currency == "CAD"
    assert order.customer_name == "Bob Norman"
    assert order.shipping_address["state"] == "ON"
    assert order.order_date == datetime(2026, 10, 1, 14, 0, 0)
    assert [(i.sku, i.quantity, i.price) for i in order.items] == [("TOTE-001", 2, Decimal("99.00"))]


def test_shopify_cancelled_and_refunded_override_fulfillment(settings):
    adapter = ShopifyAdapter(_credentials(PlatformEnum.shopify, {"shop": SHOP_DOMAIN}), settings)
    cancelled = adapter.normalize_order({"id": 1, "cancelled_at": "2026-10-02T00:00:00Z", "fulfillment_status": None})
    refunded = adapter.normalize_order({"id": 2, "financial_status": "refunded", "fulfillment_status": "fulfilled"})
    assert cancelled.status == OrderStatusEnum.cancelled
    assert refunded.status == OrderStatusEnum.refunded


def test_etsy_money_uses_divisor(settings):
    adapter = EtsyAdapter(_credentials(PlatformEnum.etsy, {"shop_id": "123"}), settings)
    order = adapter.normalize_order({
        "receipt_id": 987,
        "status": "paid",
        "grandtotal": {"amount": 4599, "divisor": 100, "currency_code": "EUR"},
        "create_timestamp": 1790000000,
        "transactions": [{"transaction_id": 55, "sku": "MUG-1", "quantity": 1, "price": {"amount": 4599, "divisor": 100}}],
    })
    assert order.total == Decimal("45.99")
    assert order.currency == "EUR"
    assert order.items[0].price == Decimal("45.99")
    assert order.items[0].platform_item_id == "55"


def test_ebay_and_amazon_normalization(settings):
    ebay = EbayAdapter(_credentials(PlatformEnum.ebay), settings).normalize_order({
        "orderId": "12-34567-89012",
        "orderFulfillmentStatus": "IN_PROGRESS",
        "creationDate": "2026-09-30T08:15:00.000Z",
        "pricingSummary": {"total": {"value": "30.00", "currency": "USD"}},
        "lineItems": [{"lineItemId": "li-1", "sku": "CAP-2", "quantity": 3, "lineItemCost": {"value": "30.00"}}],
    })
    assert ebay.status == OrderStatusEnum.processing
    assert ebay.items[0].sku == "CAP-2"

    amazon = AmazonAdapter(_credentials(PlatformEnum.amazon, {"seller_id": "A1"}), settings).normalize_order({
        "AmazonOrderId": "902-3159896-1390916",
        "OrderStatus": "Shipped",
        "OrderTotal": {"Amount": "12.50", "CurrencyCode": "GBP"},
        "PurchaseDate": "2026-09-29T22:00:00Z",
    })
    assert amazon.status == OrderStatusEnum.shipped
    assert amazon.total == Decimal("12.50")
    assert amazon.items == []


def test_inventory_levels_skip_items_without_sku(settings):
    adapter = WooCommerceAdapter(_credentials(PlatformEnum.woocommerce, {"store_url": "https://woo.example.com"}), settings)
    levels = adapter.inventory_levels([
        {"id": 1, "sku": "A", "stock_quantity": 4},
        {"id": 2, "sku": "", "stock_quantity": 9},
        {"id": 3, "sku": "B", "stock_quantity": 2, "manage_stock": False},
    ])
    assert [(level.sku, level.quantity, level.platform_listing_id) for level in levels] == [("A", 4, "1")]


def test_parse_datetime_normalizes_to_naive_utc():
    assert parse_datetime("2026-10-01T12:00:00+02:00") == datetime(2026, 10, 1, 10, 0, 0)
    assert parse_datetime("2026-10-01T12:00:00Z") == datetime(2026, 10, 1, 12, 0, 0)
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None


def test_shop_domain_validation():
    assert normalize_shop_domain("https://Acme.myshopify.com/") == "acme.myshopify.com"
    with pytest.raises(ValueError):
        normalize_shop_domain("acme.example.com")


# ============================================================================
# Request plumbing
# ============================================================================

def test_401_refreshes_once_and_retries(settings, platform_routes):
    platform_routes.add(
        "GET", "https://openapi.etsy.com/v3/application/shops/123/listings/active",
        (401, {"error": "invalid_token"}),
        (200, {"count": 1, "results": [{"listing_id": 1, "skus": ["MUG-1"], "quantity": 7}]}),
    )
    platform_routes.json(
        "POST", "https://api.etsy.com/v3/public/oauth/token",
        {"access_token": "fresh-access", "refresh_token": "fresh-refresh", "expires_in": 3600},
    )
    rotated = []
    adapter = EtsyAdapter(
        _credentials(PlatformEnum.etsy, {"shop_id": "123"}, refresh_token="old-refresh", access_token="stale-access"),
        settings,
        on_refresh=rotated.append,
        transport=platform_routes.transport(),
    )

    page = asyncio.run(adapter.fetch_products())

    assert [level.sku for level in adapter.inventory_levels(page.items)] == ["MUG-1"]
    assert len(rotated) == 1 and isinstance(rotated[0], TokenBundle)
    assert rotated[0].access_token == "fresh-access"
    assert adapter.credentials.refresh_token == "fresh-refresh"
    listing_calls = [r for r in platform_routes.requests if r.url.host == "openapi.etsy.com"]
    assert [r.headers["Authorization"] for r in listing_calls] == ["Bearer stale-access", "Bearer fresh-access"]
    assert listing_calls[0].headers["x-api-key"] == "etsy-keystring"


def test_persistent_401_raises_credential_error(settings, platform_routes):
    platform_routes.json("GET", "https://openapi.etsy.com/v3/application/shops/123/receipts", {"error": "nope"}, status_code=401)
    platform_routes.json("POST", "https://api.etsy.com/v3/public/oauth/token", {"access_token": "still-bad"})
    adapter = EtsyAdapter(
        _credentials(PlatformEnum.etsy, {"shop_id": "123"}, refresh_token="r"),
        settings,
        transport=platform_routes.transport(),
    )
    with pytest.raises(CredentialError):
        asyncio.run(adapter.fetch_orders(OrderFilter()))


def test_refresh_without_access_token_is_credential_error(settings, platform_routes):
    platform_routes.json("GET", "https://openapi.etsy.com/v3/application/shops/123/receipts", {"error": "expired"}, status_code=401)
    platform_routes.json("POST", "https://api.etsy.com/v3/public/oauth/token", {"refresh_token": "only-refresh"})
    adapter = EtsyAdapter(
        _credentials(PlatformEnum.etsy, {"shop_id": "123"}, refresh_token="r"),
        settings,
        transport=platform_routes.transport(),
    )
    with pytest.raises(CredentialError, match="missing access_token"):
        asyncio.run(adapter.fetch_orders(OrderFilter()))


def test_code_exchange_without_access_token_is_adapter_error(settings, platform_routes):
    platform_routes.json("POST", "https://api.etsy.com/v3/public/oauth/token", {"token_type": "Bearer"})
    with pytest.raises(AdapterError) as excinfo:
        asyncio.run(EtsyAdapter.exchange_code(
            settings,
            code="auth-code",
            redirect_uri="https://api.example.com/oauth/etsy/callback",
            code_verifier="v" * 43,
            transport=platform_routes.transport(),
        ))
    assert excinfo.value.http_status == 200
    assert excinfo.value.message == "token response missing access_token"


def test_shopify_401_cannot_refresh(settings, platform_routes):
    platform_routes.json("GET", f"https://{SHOP_DOMAIN}/admin/api/2024-07/products.json", {"errors": "revoked"}, status_code=401)
    adapter = ShopifyAdapter(_credentials(PlatformEnum.shopify, {"shop": SHOP_DOMAIN}), settings, transport=platform_routes.transport())
    with pytest.raises(CredentialError):
        asyncio.run(adapter.fetch_products())


@pytest.mark.parametrize("status_code, retryable", [(429, True), (503, True), (400, False), (404, False)])
def test_error_statuses_become_adapter_errors(settings, platform_routes, status_code, retryable):
    platform_routes.json("GET", "https://woo.example.com/wp-json/wc/v3/products", {"message": "err"}, status_code=status_code)
    adapter = WooCommerceAdapter(
        _credentials(PlatformEnum.woocommerce, {"store_url": "https://woo.example.com"}, refresh_token="cs"),
        settings,
        transport=platform_routes.transport(),
    )
    with pytest.raises(AdapterError) as excinfo:
        asyncio.run(adapter.fetch_products())
    assert excinfo.value.http_status == status_code
    assert excinfo.value.retryable is retryable


def test_network_errors_are_retryable():
    assert AdapterError("ebay", None, "connection reset").retryable is True


def test_woocommerce_basic_auth_and_pagination(settings, platform_routes):
    platform_routes.json("GET", "https://woo.example.com/wp-json/wc/v3/orders", [{"id": n, "status": "processing"} for n in range(5)])
    adapter = WooCommerceAdapter(
        _credentials(PlatformEnum.woocommerce, {"store_url": "https://woo.example.com/"}, access_token="ck_1", refresh_token="cs_1"),
        settings,
        transport=platform_routes.transport(),
    )
    page = asyncio.run(adapter.fetch_orders(OrderFilter(limit=5)))

    assert len(page.items) == 5
    assert page.next_cursor == "2"
    request = platform_routes.requests[0]
    assert request.headers["Authorization"].startswith("Basic ")
    assert request.url.params["per_page"] == "5"
