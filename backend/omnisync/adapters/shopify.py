"""Shopify Admin REST adapter.

WHAT:
    Products (since_id pagination), orders (status=any) and inventory levels
    per location.

WHY:
    Offline Shopify tokens never expire, so there is no refresh path: a 401
    means the merchant uninstalled the app and the connection must go to
    ERROR.

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/2024-07/resources/product
    - https://shopify.dev/docs/api/admin-rest/2024-07/resources/order
    - https://shopify.dev/docs/api/admin-rest/2024-07/resources/inventorylevel#post-inventory-levels-set
    - https://shopify.dev/docs/apps/auth/oauth/getting-started
"""

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from omnisync.adapters.base import (
    InventoryLevel,
    NormalizedOrder,
    NormalizedOrderItem,
    OrderFilter,
    Page,
    PlatformAdapter,
    iso,
    parse_datetime,
    to_decimal,
)
from omnisync.errors import AdapterError, CredentialError
from omnisync.models import OrderStatusEnum, PlatformEnum, Product, ProductStatusEnum
from omnisync.services.credential_vault import TokenBundle

logger = logging.getLogger(__name__)

PAGE_SIZE = 250
SCOPES = "read_products,write_products,read_orders,read_inventory,write_inventory,read_locations"
SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")


def normalize_shop_domain(shop: str) -> str:
    """Strip scheme/trailing slash and validate `<name>.myshopify.com`."""
    shop = (shop or "").strip().lower()
    shop = re.sub(r"^https?://", "", shop).rstrip("/")
    if not SHOP_DOMAIN_RE.match(shop):
        raise ValueError(f"Invalid Shopify shop domain: {shop!r}")
    return shop


class ShopifyAdapter(PlatformAdapter):
    platform = PlatformEnum.shopify
    supports_refresh = False

    # Keyed on fulfillment_status; cancellations/refunds are read from other fields
    STATUS_MAP = {
        None: OrderStatusEnum.pending,
        "pending": OrderStatusEnum.pending,
        "fulfilled": OrderStatusEnum.shipped,
        "partial": OrderStatusEnum.processing,
    }

    @property
    def shop(self) -> str:
        return self.metadata.get("shop", "")

    @property
    def base_url(self) -> str:
        return f"https://{self.shop}/admin/api/{self.settings.SHOPIFY_API_VERSION}"

    def auth_headers(self) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": self.credentials.access_token}

    async def refresh_access_token(self) -> TokenBundle:
        raise CredentialError("Shopify offline tokens cannot be refreshed", platform=self.platform.value)

    @classmethod
    def authorization_url(cls, settings, *, state, redirect_uri, code_challenge=None, shop_domain=None) -> str:
        shop = normalize_shop_domain(shop_domain or "")
        params = {
            "client_id": settings.SHOPIFY_CLIENT_ID,
            "scope": SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    @classmethod
    async def exchange_code(cls, settings, *, code, redirect_uri, code_verifier=None, shop_domain=None, transport=None) -> TokenBundle:
        shop = normalize_shop_domain(shop_domain or "")
        data = await cls._token_request(
            f"https://{shop}/admin/oauth/access_token",
            data={
                "client_id": settings.SHOPIFY_CLIENT_ID,
                "client_secret": settings.SHOPIFY_CLIENT_SECRET,
                "code": code,
            },
            as_json=True,
            transport=transport,
        )
        return TokenBundle(access_token=data["access_token"], scope=data.get("scope"))

    async def discover_metadata(self) -> Dict[str, Any]:
        shop = await self._request("GET", "/shop.json")
        return {
            "shop": self.shop,
            "currency": (shop.get("shop") or {}).get("currency"),
            "location_id": await self._primary_location_id(),
        }

    async def _primary_location_id(self) -> Optional[int]:
        if self.metadata.get("location_id"):
            return self.metadata["location_id"]
        data = await self._request("GET", "/locations.json")
        active = [loc for loc in data.get("locations", []) if loc.get("active", True)]
        return active[0]["id"] if active else None

    # ----- capabilities -----

    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        params: Dict[str, Any] = {"limit": PAGE_SIZE}
        if cursor:
            params["since_id"] = cursor
        data = await self._request("GET", "/products.json", params=params)
        products = data.get("products", [])
        next_cursor = str(products[-1]["id"]) if len(products) == PAGE_SIZE else None
        return Page(items=products, next_cursor=next_cursor)

    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        limit = min(order_filter.limit, PAGE_SIZE)
        params: Dict[str, Any] = {"status": "any", "limit": limit}
        if order_filter.cursor:
            params["since_id"] = order_filter.cursor
        if order_filter.created_after:
            params["created_at_min"] = iso(order_filter.created_after)
        if order_filter.created_before:
            params["created_at_max"] = iso(order_filter.created_before)
        data = await self._request("GET", "/orders.json", params=params)
        orders = data.get("orders", [])
        next_cursor = str(orders[-1]["id"]) if len(orders) == limit else None
        return Page(items=orders, next_cursor=next_cursor)

    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        if not listing_id:
            raise AdapterError(self.platform.value, 400, f"No Shopify product id known for SKU {sku}")

        data = await self._request("GET", f"/products/{listing_id}.json")
        variants = (data.get("product") or {}).get("variants", [])
        variant = next((v for v in variants if v.get("sku") == sku), variants[0] if variants else None)
        if not variant:
            raise AdapterError(self.platform.value, 404, f"Product {listing_id} has no variants")

        location_id = await self._primary_location_id()
        if not location_id:
            raise AdapterError(self.platform.value, 400, "Shop has no active location")

        await self._request(
            "POST",
            "/inventory_levels/set.json",
            json={
                "location_id": location_id,
                "inventory_item_id": variant["inventory_item_id"],
                "available": quantity,
            },
        )

    def _product_body(self, product: Product) -> Dict[str, Any]:
        return {
            "title": product.title,
            "body_html": product.description or "",
            "status": "active" if product.status == ProductStatusEnum.active else "draft",
            "product_type": product.category or "",
            "tags": ", ".join(product.tags or []),
            "images": [{"src": url} for url in (product.images or [])],
        }

    async def create_listing(self, product: Product) -> str:
        body = self._product_body(product)
        body["variants"] = [{
            "sku": product.sku,
            "price": str(product.price),
            "inventory_management": "shopify",
        }]
        data = await self._request("POST", "/products.json", json={"product": body})
        listing_id = str(data["product"]["id"])
        await self.update_inventory(product.sku, product.quantity, listing_id=listing_id)
        return listing_id

    async def update_listing(self, listing_id: str, product: Product) -> str:
        body = self._product_body(product)
        body.pop("images")
        data = await self._request("PUT", f"/products/{listing_id}.json", json={"product": {"id": int(listing_id), **body}})
        for variant in (data.get("product") or {}).get("variants", []):
            if variant.get("sku") == product.sku:
                await self._request(
                    "PUT",
                    f"/variants/{variant['id']}.json",
                    json={"variant": {"id": variant["id"], "price": str(product.price)}},
                )
        await self.update_inventory(product.sku, product.quantity, listing_id=listing_id)
        return listing_id

    # ----- normalization -----

    def _order_status(self, raw: Dict[str, Any]) -> OrderStatusEnum:
        if raw.get("cancelled_at"):
            return OrderStatusEnum.cancelled
        if raw.get("financial_status") == "refunded":
            return OrderStatusEnum.refunded
        return self.map_order_status(raw.get("fulfillment_status"))

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        customer = raw.get("customer") or {}
        address = raw.get("shipping_address") or {}
        name = " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p) or None

        items = [
            NormalizedOrderItem(
                sku=line.get("sku") or str(line.get("variant_id") or ""),
                title=line.get("title"),
                quantity=int(line.get("quantity", 1)),
                price=to_decimal(line.get("price")),
                platform_item_id=str(line["id"]) if line.get("id") else None,
            )
            for line in raw.get("line_items", [])
        ]

        return NormalizedOrder(
            platform_order_id=str(raw["id"]),
            status=self._order_status(raw),
            total=to_decimal(raw.get("total_price")),
            currency=raw.get("currency", "USD"),
            customer_name=name,
            customer_email=raw.get("email") or customer.get("email"),
            shipping_address={
                "name": address.get("name"),
                "address1": address.get("address1"),
                "address2": address.get("address2"),
                "city": address.get("city"),
                "state": address.get("province"),
                "zip": address.get("zip"),
                "country": address.get("country_code") or address.get("country"),
            } if address else None,
            order_date=parse_datetime(raw.get("created_at")),
            items=items,
        )

    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        levels = []
        for product in items:
            for variant in product.get("variants", []):
                if variant.get("sku"):
                    levels.append(InventoryLevel(
                        sku=variant["sku"],
                        quantity=int(variant.get("inventory_quantity") or 0),
                        platform_listing_id=str(product["id"]),
                    ))
        return levels
