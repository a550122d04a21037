"""eBay Sell APIs adapter (Inventory + Fulfillment).

WHAT:
    Inventory items keyed by SKU, offers for pricing, fulfillment orders with
    limit/offset pagination.
WHY:
    eBay refreshes user tokens with a Basic-auth client credential header and
    requires the original scopes on every refresh.
REFERENCES:
    - https://developer.ebay.com/api-docs/sell/inventory/resources/methods
    - https://developer.ebay.com/api-docs/sell/fulfillment/resources/order/methods/getOrders
    - https://developer.ebay.com/api-docs/static/oauth-refresh-token-request.html
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
from omnisync.models import OrderStatusEnum, PlatformEnum, Product
from omnisync.services.credential_vault import TokenBundle

logger = logging.getLogger(__name__)

SCOPES = [
    "https://api.ebay.com/oauth/api_scope",
    "https://api.ebay.com/oauth/api_scope/sell.inventory",
    "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
]


def _hosts(settings) -> Dict[str, str]:
    if getattr(settings, "EBAY_ENVIRONMENT", "production") == "sandbox":
        return {
            "api": "https://api.sandbox.ebay.com",
            "auth": "https://auth.sandbox.ebay.com/oauth2/authorize",
        }
    return {
        "api": "https://api.ebay.com",
        "auth": "https://auth.ebay.com/oauth2/authorize",
    }


class EbayAdapter(PlatformAdapter):
    platform = PlatformEnum.ebay

    STATUS_MAP = {
        "NOT_STARTED": OrderStatusEnum.pending,
        "IN_PROGRESS": OrderStatusEnum.processing,
        "FULFILLED": OrderStatusEnum.shipped,
    }

    @property
    def base_url(self) -> str:
        return _hosts(self.settings)["api"]

    def auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Content-Language": "en-US",
        }

    async def refresh_access_token(self) -> TokenBundle:
        data = await self._token_request(
            f"{self.base_url}/identity/v1/oauth2/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.refresh_token,
                "scope": " ".join(SCOPES),
            },
            auth=(self.settings.EBAY_CLIENT_ID or "", self.settings.EBAY_CLIENT_SECRET or ""),
            transport=self._transport,
        )
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
        )

    @classmethod
    def authorization_url(cls, settings, *, state, redirect_uri, code_challenge=None, shop_domain=None) -> str:
        # eBay identifies the redirect by its RuName, not the URL itself
        params = {
            "client_id": settings.EBAY_CLIENT_ID,
            "redirect_uri": settings.EBAY_RU_NAME or redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{_hosts(settings)['auth']}?{urlencode(params)}"

    @classmethod
    async def exchange_code(cls, settings, *, code, redirect_uri, code_verifier=None, shop_domain=None, transport=None) -> TokenBundle:
        data = await cls._token_request(
            f"{_hosts(settings)['api']}/identity/v1/oauth2/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.EBAY_RU_NAME or redirect_uri,
            },
            auth=(settings.EBAY_CLIENT_ID or "", settings.EBAY_CLIENT_SECRET or ""),
            transport=transport,
        )
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
            scope=" ".join(SCOPES),
        )

    async def discover_metadata(self) -> Dict[str, Any]:
        data = await self._request("GET", "/commerce/identity/v1/user/")
        return {"username": data.get("username"), "user_id": data.get("userId")}

    # ----- capabilities -----

    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        offset = int(cursor or 0)
        limit = 100
        data = await self._request(
            "GET", "/sell/inventory/v1/inventory_item", params={"limit": limit, "offset": offset}
        )
        items = data.get("inventoryItems", [])
        total = int(data.get("total", 0))
        next_offset = offset + len(items)
        return Page(items=items, next_cursor=str(next_offset) if items and next_offset < total else None)

    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        offset = int(order_filter.cursor or 0)
        params: Dict[str, Any] = {"limit": min(order_filter.limit, 200), "offset": offset}
        if order_filter.created_after or order_filter.created_before:
            params["filter"] = f"creationdate:[{iso(order_filter.created_after) or ''}..{iso(order_filter.created_before) or ''}]"
        data = await self._request("GET", "/sell/fulfillment/v1/order", params=params)
        orders = data.get("orders", [])
        total = int(data.get("total", 0))
        next_offset = offset + len(orders)
        return Page(items=orders, next_cursor=str(next_offset) if orders and next_offset < total else None)

    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        # PUT replaces the whole inventory item, so read-modify-write
        item = await self._request("GET", f"/sell/inventory/v1/inventory_item/{sku}")
        item.setdefault("availability", {}).setdefault("shipToLocationAvailability", {})["quantity"] = quantity
        item.pop("sku", None)
        await self._request("PUT", f"/sell/inventory/v1/inventory_item/{sku}", json=item)

    def _inventory_item(self, product: Product) -> Dict[str, Any]:
        return {
            "availability": {"shipToLocationAvailability": {"quantity": product.quantity}},
            "condition": "NEW",
            "product": {
                "title": product.title,
                "description": product.description or product.title,
                "imageUrls": list(product.images or []),
                "aspects": {},
            },
        }

    async def create_listing(self, product: Product) -> str:
        await self._request("PUT", f"/sell/inventory/v1/inventory_item/{product.sku}", json=self._inventory_item(product))
        offer = await self._request(
            "POST",
            "/sell/inventory/v1/offer",
            json={
                "sku": product.sku,
                "marketplaceId": self.metadata.get("marketplace_id", "EBAY_US"),
                "format": "FIXED_PRICE",
                "availableQuantity": product.quantity,
                "pricingSummary": {"price": {"value": str(product.price), "currency": "USD"}},
                "listingDescription": product.description or product.title,
            },
        )
        offer_id = offer.get("offerId")
        published = await self._request("POST", f"/sell/inventory/v1/offer/{offer_id}/publish")
        return str(published.get("listingId") or offer_id)

    async def update_listing(self, listing_id: str, product: Product) -> str:
        await self._request("PUT", f"/sell/inventory/v1/inventory_item/{product.sku}", json=self._inventory_item(product))
        offers = await self._request("GET", "/sell/inventory/v1/offer", params={"sku": product.sku})
        for offer in offers.get("offers", []):
            offer["availableQuantity"] = product.quantity
            offer["pricingSummary"] = {"price": {"value": str(product.price), "currency": "USD"}}
            offer_id = offer.pop("offerId", None)
            if offer_id:
                await self._request("PUT", f"/sell/inventory/v1/offer/{offer_id}", json=offer)
        return listing_id

    # ----- normalization -----

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        instructions = raw.get("fulfillmentStartInstructions") or [{}]
        ship_to = (instructions[0].get("shippingStep") or {}).get("shipTo") or {}
        address = ship_to.get("contactAddress") or {}
        total = (raw.get("pricingSummary") or {}).get("total") or {}

        items = [
            NormalizedOrderItem(
                sku=line.get("sku") or line.get("legacyItemId") or "",
                title=line.get("title"),
                quantity=int(line.get("quantity", 1)),
                price=to_decimal((line.get("lineItemCost") or {}).get("value")),
                platform_item_id=line.get("lineItemId"),
            )
            for line in raw.get("lineItems", [])
        ]

        return NormalizedOrder(
            platform_order_id=str(raw["orderId"]),
            status=self.map_order_status(raw.get("orderFulfillmentStatus")),
            total=to_decimal(total.get("value")),
            currency=total.get("currency", "USD"),
            customer_name=(raw.get("buyer") or {}).get("fullName") or ship_to.get("fullName"),
            customer_email=ship_to.get("email"),
            shipping_address={
                "address1": address.get("addressLine1"),
                "address2": address.get("addressLine2"),
                "city": address.get("city"),
                "state": address.get("stateOrProvince"),
                "zip": address.get("postalCode"),
                "country": address.get("countryCode"),
            } if address else None,
            order_date=parse_datetime(raw.get("creationDate")),
            items=items,
        )

    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        levels = []
        for item in items:
            sku = item.get("sku")
            if not sku:
                continue
            quantity = (((item.get("availability") or {}).get("shipToLocationAvailability") or {}).get("quantity")) or 0
            levels.append(InventoryLevel(sku=sku, quantity=int(quantity), platform_listing_id=sku))
        return levels
