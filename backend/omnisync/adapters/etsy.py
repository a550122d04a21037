"""Etsy Open API v3 adapter.

WHAT: shop listings, receipts (orders) and per-listing inventory offerings.
WHY:  Etsy requires PKCE on connect; every call carries the app key in
      `x-api-key` next to the bearer token. Money is {amount, divisor}.
REFERENCES:
    - https://developers.etsy.com/documentation/essentials/authentication
    - https://developers.etsy.com/documentation/reference#tag/ShopReceipt
    - https://developers.etsy.com/documentation/reference#tag/ShopListing-Inventory
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from omnisync.adapters.base import (
    InventoryLevel,
    NormalizedOrder,
    NormalizedOrderItem,
    OrderFilter,
    Page,
    PlatformAdapter,
    expiry_from,
    to_decimal,
)
from omnisync.errors import AdapterError
from omnisync.models import OrderStatusEnum, PlatformEnum, Product
from omnisync.services.credential_vault import TokenBundle

logger = logging.getLogger(__name__)

API_BASE = "https://openapi.etsy.com/v3"
CONNECT_URL = "https://www.etsy.com/oauth/connect"
TOKEN_URL = "https://api.etsy.com/v3/public/oauth/token"
SCOPES = ["listings_r", "listings_w", "transactions_r", "shops_r"]
PAGE_SIZE = 100


def _money(value: Optional[Dict[str, Any]]) -> Decimal:
    if not value:
        return Decimal("0")
    divisor = value.get("divisor") or 100
    return to_decimal(value.get("amount")) / Decimal(divisor)


class EtsyAdapter(PlatformAdapter):
    platform = PlatformEnum.etsy
    uses_pkce = True

    STATUS_MAP = {
        "open": OrderStatusEnum.pending,
        "paid": OrderStatusEnum.processing,
        "completed": OrderStatusEnum.shipped,
        "canceled": OrderStatusEnum.cancelled,
    }

    @property
    def base_url(self) -> str:
        return API_BASE

    @property
    def shop_id(self) -> str:
        shop_id = self.metadata.get("shop_id")
        if not shop_id:
            raise AdapterError(self.platform.value, 400, "Etsy connection has no shop_id")
        return str(shop_id)

    def auth_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.settings.ETSY_CLIENT_ID or "",
            "Authorization": f"Bearer {self.credentials.access_token}",
        }

    async def refresh_access_token(self) -> TokenBundle:
        data = await self._token_request(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self.settings.ETSY_CLIENT_ID,
                "refresh_token": self.credentials.refresh_token,
            },
            transport=self._transport,
        )
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
        )

    @classmethod
    def authorization_url(cls, settings, *, state, redirect_uri, code_challenge=None, shop_domain=None) -> str:
        if not code_challenge:
            raise ValueError("Etsy requires a PKCE code challenge")
        params = {
            "response_type": "code",
            "client_id": settings.ETSY_CLIENT_ID,
            "redirect_uri": redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{CONNECT_URL}?{urlencode(params)}"

    @classmethod
    async def exchange_code(cls, settings, *, code, redirect_uri, code_verifier=None, shop_domain=None, transport=None) -> TokenBundle:
        if not code_verifier:
            raise ValueError("Etsy code exchange requires the PKCE code verifier")
        data = await cls._token_request(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "client_id": settings.ETSY_CLIENT_ID,
                "redirect_uri": redirect_uri,
                "code": code,
                "code_verifier": code_verifier,
            },
            transport=transport,
        )
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            scope=" ".join(SCOPES),
        )

    async def discover_metadata(self) -> Dict[str, Any]:
        me = await self._request("GET", "/application/users/me")
        return {"shop_id": me.get("shop_id"), "user_id": me.get("user_id")}

    # ----- capabilities -----

    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        offset = int(cursor or 0)
        data = await self._request(
            "GET",
            f"/application/shops/{self.shop_id}/listings/active",
            params={"limit": PAGE_SIZE, "offset": offset},
        )
        results = data.get("results", [])
        next_offset = offset + len(results)
        has_more = bool(results) and next_offset < int(data.get("count", 0))
        return Page(items=results, next_cursor=str(next_offset) if has_more else None)

    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        offset = int(order_filter.cursor or 0)
        params: Dict[str, Any] = {"limit": min(order_filter.limit, PAGE_SIZE), "offset": offset}
        if order_filter.created_after:
            params["min_created"] = int(order_filter.created_after.replace(tzinfo=timezone.utc).timestamp())
        if order_filter.created_before:
            params["max_created"] = int(order_filter.created_before.replace(tzinfo=timezone.utc).timestamp())
        data = await self._request("GET", f"/application/shops/{self.shop_id}/receipts", params=params)
        results = data.get("results", [])
        next_offset = offset + len(results)
        has_more = bool(results) and next_offset < int(data.get("count", 0))
        return Page(items=results, next_cursor=str(next_offset) if has_more else None)

    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        if not listing_id:
            raise AdapterError(self.platform.value, 400, f"No Etsy listing id known for SKU {sku}")

        inventory = await self._request("GET", f"/application/listings/{listing_id}/inventory")
        products = []
        for entry in inventory.get("products", []):
            offerings = []
            for offering in entry.get("offerings", []):
                offerings.append({
                    "price": float(_money(offering.get("price"))),
                    "quantity": quantity if entry.get("sku") in (sku, None, "") else offering.get("quantity", 0),
                    "is_enabled": offering.get("is_enabled", True),
                })
            products.append({
                "sku": entry.get("sku"),
                "property_values": entry.get("property_values", []),
                "offerings": offerings,
            })
        await self._request("PUT", f"/application/listings/{listing_id}/inventory", json={"products": products})

    async def create_listing(self, product: Product) -> str:
        data = await self._request(
            "POST",
            f"/application/shops/{self.shop_id}/listings",
            json={
                "quantity": product.quantity,
                "title": product.title,
                "description": product.description or product.title,
                "price": float(product.price),
                "who_made": "i_did",
                "when_made": "made_to_order",
                "taxonomy_id": int(self.metadata.get("taxonomy_id", 1)),
                "tags": list(product.tags or [])[:13],
            },
        )
        return str(data["listing_id"])

    async def update_listing(self, listing_id: str, product: Product) -> str:
        await self._request(
            "PATCH",
            f"/application/shops/{self.shop_id}/listings/{listing_id}",
            json={"title": product.title, "description": product.description or product.title},
        )
        await self.update_inventory(product.sku, product.quantity, listing_id=listing_id)
        return listing_id

    # ----- normalization -----

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        grand_total = raw.get("grandtotal") or {}
        created = raw.get("create_timestamp") or raw.get("created_timestamp")

        items = [
            NormalizedOrderItem(
                sku=t.get("sku") or str(t.get("listing_id", "")),
                title=t.get("title"),
                quantity=int(t.get("quantity", 1)),
                price=_money(t.get("price")),
                platform_item_id=str(t["transaction_id"]) if t.get("transaction_id") else None,
            )
            for t in raw.get("transactions", [])
        ]

        return NormalizedOrder(
            platform_order_id=str(raw["receipt_id"]),
            status=self.map_order_status(raw.get("status")),
            total=_money(grand_total),
            currency=grand_total.get("currency_code", "USD"),
            customer_name=raw.get("name"),
            customer_email=raw.get("buyer_email"),
            shipping_address={
                "name": raw.get("name"),
                "address1": raw.get("first_line"),
                "address2": raw.get("second_line"),
                "city": raw.get("city"),
                "state": raw.get("state"),
                "zip": raw.get("zip"),
                "country": raw.get("country_iso"),
            } if raw.get("first_line") else None,
            order_date=datetime.fromtimestamp(int(created), tz=timezone.utc).replace(tzinfo=None) if created else None,
            items=items,
        )

    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        levels = []
        for listing in items:
            listing_id = str(listing.get("listing_id")) if listing.get("listing_id") else None
            for sku in listing.get("skus") or []:
                if sku:
                    levels.append(InventoryLevel(sku=sku, quantity=int(listing.get("quantity", 0)), platform_listing_id=listing_id))
        return levels
