"""WooCommerce REST API v3 adapter.

WHAT: products, orders and stock via `{store}/wp-json/wc/v3`.
WHY:  Stores authenticate with a consumer key/secret pair over HTTPS Basic
      auth. The vault keeps the key as the access token and the secret as
      the refresh token, so both stay encrypted at rest; nothing expires.
REFERENCES:
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#authentication-over-https
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#products
"""

import base64
import logging
from typing import Any, Dict, List, Optional

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

PER_PAGE = 100


class WooCommerceAdapter(PlatformAdapter):
    platform = PlatformEnum.woocommerce
    supports_refresh = False

    STATUS_MAP = {
        "pending": OrderStatusEnum.pending,
        "processing": OrderStatusEnum.processing,
        "on-hold": OrderStatusEnum.pending,
        "completed": OrderStatusEnum.delivered,
        "cancelled": OrderStatusEnum.cancelled,
        "refunded": OrderStatusEnum.refunded,
        "failed": OrderStatusEnum.cancelled,
    }

    @property
    def base_url(self) -> str:
        store_url = (self.metadata.get("store_url") or "").rstrip("/")
        if not store_url:
            raise AdapterError(self.platform.value, 400, "WooCommerce connection has no store_url")
        return f"{store_url}/wp-json/wc/v3"

    def auth_headers(self) -> Dict[str, str]:
        pair = f"{self.credentials.access_token}:{self.credentials.refresh_token or ''}"
        return {"Authorization": "Basic " + base64.b64encode(pair.encode("utf-8")).decode("ascii")}

    async def refresh_access_token(self) -> TokenBundle:
        raise CredentialError("WooCommerce keys do not expire; regenerate them in the store", platform=self.platform.value)

    async def verify(self) -> Dict[str, Any]:
        """Cheap authenticated call used when keys are first submitted."""
        status = await self._request("GET", "/system_status")
        environment = status.get("environment") or {}
        return {"store_url": self.metadata.get("store_url"), "wc_version": environment.get("version")}

    # ----- capabilities -----

    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        page = int(cursor or 1)
        products = await self._request("GET", "/products", params={"per_page": PER_PAGE, "page": page})
        products = products if isinstance(products, list) else []
        return Page(items=products, next_cursor=str(page + 1) if len(products) == PER_PAGE else None)

    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        page = int(order_filter.cursor or 1)
        per_page = min(order_filter.limit, PER_PAGE)
        params: Dict[str, Any] = {"per_page": per_page, "page": page}
        if order_filter.created_after:
            params["after"] = iso(order_filter.created_after)
        if order_filter.created_before:
            params["before"] = iso(order_filter.created_before)
        orders = await self._request("GET", "/orders", params=params)
        orders = orders if isinstance(orders, list) else []
        return Page(items=orders, next_cursor=str(page + 1) if len(orders) == per_page else None)

    async def _product_id_for_sku(self, sku: str) -> str:
        matches = await self._request("GET", "/products", params={"sku": sku})
        if not matches:
            raise AdapterError(self.platform.value, 404, f"No WooCommerce product with SKU {sku}")
        return str(matches[0]["id"])

    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        product_id = listing_id or await self._product_id_for_sku(sku)
        await self._request(
            "PUT",
            f"/products/{product_id}",
            json={"stock_quantity": quantity, "manage_stock": True},
        )

    def _product_body(self, product: Product) -> Dict[str, Any]:
        return {
            "name": product.title,
            "type": "simple",
            "status": "publish" if product.status == ProductStatusEnum.active else "draft",
            "regular_price": str(product.price),
            "description": product.description or "",
            "sku": product.sku,
            "manage_stock": True,
            "stock_quantity": product.quantity,
            "images": [{"src": url} for url in (product.images or [])],
            "tags": [{"name": tag} for tag in (product.tags or [])],
        }

    async def create_listing(self, product: Product) -> str:
        data = await self._request("POST", "/products", json=self._product_body(product))
        return str(data["id"])

    async def update_listing(self, listing_id: str, product: Product) -> str:
        body = self._product_body(product)
        body.pop("images")
        await self._request("PUT", f"/products/{listing_id}", json=body)
        return listing_id

    # ----- normalization -----

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        billing = raw.get("billing") or {}
        shipping = raw.get("shipping") or {}
        name = " ".join(p for p in (billing.get("first_name"), billing.get("last_name")) if p) or None

        items = [
            NormalizedOrderItem(
                sku=line.get("sku") or str(line.get("product_id") or ""),
                title=line.get("name"),
                quantity=int(line.get("quantity", 1)),
                price=to_decimal(line.get("price")),
                platform_item_id=str(line["id"]) if line.get("id") else None,
            )
            for line in raw.get("line_items", [])
        ]

        return NormalizedOrder(
            platform_order_id=str(raw["id"]),
            status=self.map_order_status(raw.get("status")),
            total=to_decimal(raw.get("total")),
            currency=raw.get("currency", "USD"),
            customer_name=name,
            customer_email=billing.get("email"),
            shipping_address={
                "name": " ".join(p for p in (shipping.get("first_name"), shipping.get("last_name")) if p) or None,
                "address1": shipping.get("address_1"),
                "address2": shipping.get("address_2"),
                "city": shipping.get("city"),
                "state": shipping.get("state"),
                "zip": shipping.get("postcode"),
                "country": shipping.get("country"),
            } if shipping.get("address_1") else None,
            order_date=parse_datetime(raw.get("date_created_gmt") or raw.get("date_created")),
            items=items,
        )

    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        return [
            InventoryLevel(sku=p["sku"], quantity=int(p.get("stock_quantity") or 0), platform_listing_id=str(p["id"]))
            for p in items
            if p.get("sku") and p.get("manage_stock", True)
        ]
