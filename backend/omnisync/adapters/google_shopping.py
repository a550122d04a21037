"""Google Merchant Center (Content API for Shopping v2.1) adapter.

WHAT: merchant products, orders and availability.
WHY:  Merchant Center exposes availability rather than stock counts, so
      inventory import maps "in stock" to a large sentinel and export
      flips availability on the product.
REFERENCES:
    - https://developers.google.com/shopping-content/reference/rest/v2.1/products
    - https://developers.google.com/shopping-content/reference/rest/v2.1/orders
    - https://developers.google.com/identity/protocols/oauth2/web-server#offline
"""

import logging
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
    iso,
    parse_datetime,
    to_decimal,
)
from omnisync.errors import AdapterError
from omnisync.models import OrderStatusEnum, PlatformEnum, Product
from omnisync.services.credential_vault import TokenBundle

logger = logging.getLogger(__name__)

API_ROOT = "https://shoppingcontent.googleapis.com/content/v2.1"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPE = "https://www.googleapis.com/auth/content"
PAGE_SIZE = 250
IN_STOCK_SENTINEL = 999


class GoogleShoppingAdapter(PlatformAdapter):
    platform = PlatformEnum.google_shopping

    STATUS_MAP = {
        "active": OrderStatusEnum.processing,
        "shipped": OrderStatusEnum.shipped,
        "delivered": OrderStatusEnum.delivered,
        "canceled": OrderStatusEnum.cancelled,
        "returned": OrderStatusEnum.refunded,
    }

    @property
    def merchant_id(self) -> str:
        merchant_id = self.metadata.get("merchant_id")
        if not merchant_id:
            raise AdapterError(self.platform.value, 400, "Google Shopping connection has no merchant_id")
        return str(merchant_id)

    @property
    def base_url(self) -> str:
        return f"{API_ROOT}/{self.merchant_id}"

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.access_token}"}

    async def refresh_access_token(self) -> TokenBundle:
        data = await self._token_request(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self.settings.GOOGLE_CLIENT_ID,
                "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                "refresh_token": self.credentials.refresh_token,
            },
            transport=self._transport,
        )
        # Google does not rotate refresh tokens; the vault keeps the old one
        return TokenBundle(access_token=data["access_token"], expires_at=expiry_from(data.get("expires_in")))

    @classmethod
    def authorization_url(cls, settings, *, state, redirect_uri, code_challenge=None, shop_domain=None) -> str:
        params = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    @classmethod
    async def exchange_code(cls, settings, *, code, redirect_uri, code_verifier=None, shop_domain=None, transport=None) -> TokenBundle:
        data = await cls._token_request(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
            },
            transport=transport,
        )
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            scope=data.get("scope", SCOPE),
        )

    async def discover_metadata(self) -> Dict[str, Any]:
        # Absolute URL: the merchant id is not known yet
        data = await self._request("GET", f"{API_ROOT}/accounts/authinfo")
        identifiers = data.get("accountIdentifiers") or [{}]
        first = identifiers[0]
        return {"merchant_id": first.get("merchantId") or first.get("aggregatorId")}

    # ----- capabilities -----

    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        params: Dict[str, Any] = {"maxResults": PAGE_SIZE}
        if cursor:
            params["pageToken"] = cursor
        data = await self._request("GET", "/products", params=params)
        return Page(items=data.get("resources", []), next_cursor=data.get("nextPageToken"))

    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        params: Dict[str, Any] = {"maxResults": min(order_filter.limit, PAGE_SIZE)}
        if order_filter.cursor:
            params["pageToken"] = order_filter.cursor
        if order_filter.created_after:
            params["placedDateStart"] = iso(order_filter.created_after)
        if order_filter.created_before:
            params["placedDateEnd"] = iso(order_filter.created_before)
        data = await self._request("GET", "/orders", params=params)
        return Page(items=data.get("resources", []), next_cursor=data.get("nextPageToken"))

    def _product_id(self, sku: str, listing_id: Optional[str]) -> str:
        return listing_id or f"online:en:US:{sku}"

    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        await self._request(
            "PATCH",
            f"/products/{self._product_id(sku, listing_id)}",
            params={"updateMask": "availability"},
            json={"availability": "in stock" if quantity > 0 else "out of stock"},
        )

    def _product_body(self, product: Product) -> Dict[str, Any]:
        images = list(product.images or [])
        body: Dict[str, Any] = {
            "offerId": product.sku,
            "title": product.title,
            "description": product.description or product.title,
            "contentLanguage": "en",
            "targetCountry": "US",
            "channel": "online",
            "condition": "new",
            "availability": "in stock" if product.quantity > 0 else "out of stock",
            "price": {"value": str(product.price), "currency": "USD"},
        }
        if images:
            body["imageLink"] = images[0]
            body["additionalImageLinks"] = images[1:10]
        if self.metadata.get("store_url"):
            body["link"] = f"{self.metadata['store_url'].rstrip('/')}/products/{product.sku}"
        return body

    async def create_listing(self, product: Product) -> str:
        data = await self._request("POST", "/products", json=self._product_body(product))
        return str(data.get("id") or self._product_id(product.sku, None))

    async def update_listing(self, listing_id: str, product: Product) -> str:
        body = self._product_body(product)
        await self._request(
            "PATCH",
            f"/products/{listing_id}",
            params={"updateMask": "title,description,price,availability"},
            json={k: body[k] for k in ("title", "description", "price", "availability")},
        )
        return listing_id

    # ----- normalization -----

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        net = raw.get("netPriceAmount") or {}
        address = (raw.get("deliveryDetails") or {}).get("address") or {}
        street = address.get("streetAddress") or []

        items = []
        for line in raw.get("lineItems", []):
            product = line.get("product") or {}
            items.append(NormalizedOrderItem(
                sku=product.get("offerId", ""),
                title=product.get("title"),
                quantity=int(line.get("quantityOrdered", 1)),
                price=to_decimal((product.get("price") or {}).get("value")),
                platform_item_id=line.get("id"),
            ))

        return NormalizedOrder(
            platform_order_id=str(raw["id"]),
            status=self.map_order_status(raw.get("status")),
            total=to_decimal(net.get("value")),
            currency=net.get("currency", "USD"),
            customer_name=(raw.get("customer") or {}).get("fullName"),
            customer_email=(raw.get("customer") or {}).get("email"),
            shipping_address={
                "name": address.get("recipientName"),
                "address1": street[0] if street else None,
                "address2": street[1] if len(street) > 1 else None,
                "city": address.get("locality"),
                "state": address.get("region"),
                "zip": address.get("postalCode"),
                "country": address.get("country"),
            } if address else None,
            order_date=parse_datetime(raw.get("placedDate")),
            items=items,
        )

    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        return [
            InventoryLevel(
                sku=p["offerId"],
                quantity=IN_STOCK_SENTINEL if p.get("availability") == "in stock" else 0,
                platform_listing_id=p.get("id"),
            )
            for p in items
            if p.get("offerId")
        ]
