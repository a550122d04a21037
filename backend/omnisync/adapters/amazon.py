"""Amazon Selling Partner API adapter.

WHAT:
    Orders v0, FBA inventory summaries and Listings Items 2021-08-01,
    authenticated with a Login-with-Amazon access token in
    `x-amz-access-token`.
WHY:
    LWA access tokens live one hour; refresh uses client id/secret in the
    form body (not Basic auth).
REFERENCES:
    - https://developer-docs.amazon.com/sp-api/docs/orders-api-v0-reference
    - https://developer-docs.amazon.com/sp-api/docs/listings-items-api-v2021-08-01-reference
    - https://developer-docs.amazon.com/sp-api/docs/connecting-to-the-selling-partner-api
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from omnisync.adapters.base import (
    InventoryLevel,
    NormalizedOrder,
    OrderFilter,
    Page,
    PlatformAdapter,
    expiry_from,
    iso,
    parse_datetime,
    to_decimal,
)
from omnisync.errors import AdapterError
from omnisync.models import OrderStatusEnum, PlatformEnum, Product, utcnow
from omnisync.services.credential_vault import TokenBundle

logger = logging.getLogger(__name__)

LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"
CONSENT_URL = "https://sellercentral.amazon.com/apps/authorize/consent"

REGION_HOSTS = {
    "us-east-1": "https://sellingpartnerapi-na.amazon.com",
    "us-west-2": "https://sellingpartnerapi-na.amazon.com",
    "eu-west-1": "https://sellingpartnerapi-eu.amazon.com",
    "us-west-2-fe": "https://sellingpartnerapi-fe.amazon.com",
}

MARKETPLACE_IDS = {
    "US": "ATVPDKIKX0DER",
    "UK": "A1F83G8C2ARO7P",
    "CA": "A2EUQ1WTGCTBG2",
}


class AmazonAdapter(PlatformAdapter):
    platform = PlatformEnum.amazon

    STATUS_MAP = {
        "Pending": OrderStatusEnum.pending,
        "Unshipped": OrderStatusEnum.processing,
        "PartiallyShipped": OrderStatusEnum.processing,
        "Shipped": OrderStatusEnum.shipped,
        "Canceled": OrderStatusEnum.cancelled,
    }

    @property
    def base_url(self) -> str:
        region = self.metadata.get("region") or self.settings.AMAZON_REGION
        return REGION_HOSTS.get(region, REGION_HOSTS["us-east-1"])

    @property
    def marketplace_id(self) -> str:
        return self.metadata.get("marketplace_id") or MARKETPLACE_IDS["US"]

    @property
    def seller_id(self) -> str:
        return self.metadata.get("seller_id") or ""

    def auth_headers(self) -> Dict[str, str]:
        return {"x-amz-access-token": self.credentials.access_token}

    async def refresh_access_token(self) -> TokenBundle:
        data = await self._token_request(
            LWA_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.credentials.refresh_token,
                "client_id": self.settings.AMAZON_CLIENT_ID,
                "client_secret": self.settings.AMAZON_CLIENT_SECRET,
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
        params = {
            "application_id": settings.AMAZON_APPLICATION_ID or settings.AMAZON_CLIENT_ID,
            "state": state,
            "redirect_uri": redirect_uri,
        }
        return f"{CONSENT_URL}?{urlencode(params)}"

    @classmethod
    async def exchange_code(cls, settings, *, code, redirect_uri, code_verifier=None, shop_domain=None, transport=None) -> TokenBundle:
        data = await cls._token_request(
            LWA_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": settings.AMAZON_CLIENT_ID,
                "client_secret": settings.AMAZON_CLIENT_SECRET,
            },
            transport=transport,
        )
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expiry_from(data.get("expires_in")),
        )

    # ----- capabilities -----

    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        params: Dict[str, Any] = {
            "details": "true",
            "granularityType": "Marketplace",
            "granularityId": self.marketplace_id,
            "marketplaceIds": self.marketplace_id,
        }
        if cursor:
            params["nextToken"] = cursor
        data = await self._request("GET", "/fba/inventory/v1/summaries", params=params)
        payload = data.get("payload") or {}
        return Page(
            items=payload.get("inventorySummaries", []),
            next_cursor=(data.get("pagination") or {}).get("nextToken"),
        )

    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        params: Dict[str, Any] = {
            "MarketplaceIds": self.marketplace_id,
            "MaxResultsPerPage": min(order_filter.limit, 100),
        }
        if order_filter.cursor:
            params["NextToken"] = order_filter.cursor
        else:
            # CreatedAfter is mandatory when no NextToken is sent
            params["CreatedAfter"] = iso(order_filter.created_after or utcnow() - timedelta(days=1))
            if order_filter.created_before:
                params["CreatedBefore"] = iso(order_filter.created_before)
        data = await self._request("GET", "/orders/v0/orders", params=params)
        payload = data.get("payload") or {}
        return Page(items=payload.get("Orders", []), next_cursor=payload.get("NextToken"))

    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        await self._request(
            "PATCH",
            f"/listings/2021-08-01/items/{self.seller_id}/{sku}",
            params={"marketplaceIds": self.marketplace_id},
            json={
                "productType": "PRODUCT",
                "patches": [
                    {
                        "op": "replace",
                        "path": "/attributes/fulfillment_availability",
                        "value": [{"fulfillment_channel_code": "DEFAULT", "quantity": quantity}],
                    }
                ],
            },
        )

    def _listing_body(self, product: Product) -> Dict[str, Any]:
        marketplace = self.marketplace_id
        return {
            "productType": self.metadata.get("product_type", "PRODUCT"),
            "requirements": "LISTING_OFFER_ONLY",
            "attributes": {
                "item_name": [{"value": product.title, "marketplace_id": marketplace}],
                "purchasable_offer": [{
                    "marketplace_id": marketplace,
                    "currency": "USD",
                    "our_price": [{"schedule": [{"value_with_tax": float(product.price)}]}],
                }],
                "fulfillment_availability": [{"fulfillment_channel_code": "DEFAULT", "quantity": product.quantity}],
            },
        }

    async def create_listing(self, product: Product) -> str:
        data = await self._request(
            "PUT",
            f"/listings/2021-08-01/items/{self.seller_id}/{product.sku}",
            params={"marketplaceIds": self.marketplace_id},
            json=self._listing_body(product),
        )
        if data.get("status") == "INVALID":
            issues = "; ".join(i.get("message", "") for i in data.get("issues", []))
            raise AdapterError(self.platform.value, 400, issues or "Listing rejected")
        return product.sku

    async def update_listing(self, listing_id: str, product: Product) -> str:
        await self.create_listing(product)
        return listing_id

    # ----- normalization -----

    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        buyer = raw.get("BuyerInfo") or {}
        address = raw.get("ShippingAddress") or {}
        total = raw.get("OrderTotal") or {}
        # Line items need a separate getOrderItems call; headers only here
        return NormalizedOrder(
            platform_order_id=str(raw["AmazonOrderId"]),
            status=self.map_order_status(raw.get("OrderStatus")),
            total=to_decimal(total.get("Amount")),
            currency=total.get("CurrencyCode", "USD"),
            customer_name=buyer.get("BuyerName") or address.get("Name"),
            customer_email=buyer.get("BuyerEmail"),
            shipping_address={
                "name": address.get("Name"),
                "address1": address.get("AddressLine1"),
                "address2": address.get("AddressLine2"),
                "city": address.get("City"),
                "state": address.get("StateOrRegion"),
                "zip": address.get("PostalCode"),
                "country": address.get("CountryCode"),
            } if address else None,
            order_date=parse_datetime(raw.get("PurchaseDate")),
        )

    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        levels = []
        for item in items:
            sku = item.get("sellerSku")
            if not sku:
                continue
            details = item.get("inventoryDetails") or {}
            quantity = details.get("fulfillableQuantity", item.get("totalQuantity", 0))
            levels.append(InventoryLevel(sku=sku, quantity=int(quantity or 0), platform_listing_id=item.get("asin")))
        return levels
