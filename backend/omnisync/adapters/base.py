"""Platform adapter contract.

WHAT:
    The capability interface every marketplace integration implements:
    fetch products/orders (paged), push inventory, create/update listings,
    normalize native orders and statuses, and own its auth headers and token
    refresh.

WHY:
    Sync engines only ever talk to this interface. Raw provider payloads
    never leave an adapter except through `normalize_order` and
    `inventory_levels`, and every non-success response surfaces as a typed
    AdapterError.

ARCHITECTURE:
    engine ──► adapter._request ──► httpx.AsyncClient ──► platform API
                    │
                    ├─ expired token?  refresh_access_token() ─► on_refresh (vault)
                    ├─ 401?            refresh once, retry once
                    └─ non-2xx         AdapterError(platform, status, body)

REFERENCES:
    - omnisync/adapters/registry.py (variant dispatch by platform)
    - omnisync/services/*_sync.py (consumers)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple

import httpx

from omnisync.errors import AdapterError, CredentialError
from omnisync.models import OrderStatusEnum, PlatformEnum, Product, utcnow
from omnisync.services.credential_vault import PlatformCredentials, TokenBundle
from omnisync.telemetry.sentry import capture_message

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0


# =============================================================================
# DATA SHAPES
# =============================================================================

@dataclass
class Page:
    """One page of raw platform items plus the cursor for the next page."""
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


@dataclass
class OrderFilter:
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    status: Optional[OrderStatusEnum] = None
    limit: int = 100
    cursor: Optional[str] = None


@dataclass
class NormalizedOrderItem:
    sku: str
    title: Optional[str]
    quantity: int
    price: Decimal
    platform_item_id: Optional[str] = None


@dataclass
class NormalizedOrder:
    platform_order_id: str
    status: OrderStatusEnum
    total: Decimal
    currency: str = "USD"
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    order_date: Optional[datetime] = None
    items: List[NormalizedOrderItem] = field(default_factory=list)


@dataclass
class InventoryLevel:
    sku: str
    quantity: int
    platform_listing_id: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(default)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (with Z or offsets) into naive UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def expiry_from(expires_in: Any) -> Optional[datetime]:
    if not expires_in:
        return None
    try:
        return utcnow() + timedelta(seconds=int(expires_in))
    except (TypeError, ValueError):
        return None


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ") if value else None


# =============================================================================
# ADAPTER CONTRACT
# =============================================================================

class PlatformAdapter(ABC):
    """Base class for one platform integration.

    Subclasses declare `platform`, `STATUS_MAP`, the base URL and auth
    headers, and implement the capability methods. Instances are short-lived:
    the adapter factory builds one per engine run from freshly decrypted
    credentials.
    """

    platform: ClassVar[PlatformEnum]
    STATUS_MAP: ClassVar[Dict[str, OrderStatusEnum]] = {}
    supports_refresh: ClassVar[bool] = True
    uses_pkce: ClassVar[bool] = False

    def __init__(
        self,
        credentials: PlatformCredentials,
        settings: Any,
        on_refresh: Optional[Callable[[TokenBundle], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.settings = settings
        self._on_refresh = on_refresh
        self._transport = transport

    def __repr__(self) -> str:
        return f"{type(self).__name__}(tenant_id={self.credentials.tenant_id})"

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.credentials.metadata

    @property
    def _tag(self) -> str:
        return f"[ADAPTER:{self.platform.value.upper()}]"

    # -------------------------------------------------------------------------
    # Protocol plumbing
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def base_url(self) -> str:
        ...

    @abstractmethod
    def auth_headers(self) -> Dict[str, str]:
        ...

    @abstractmethod
    async def refresh_access_token(self) -> TokenBundle:
        """Call the platform's token endpoint and return fresh tokens."""

    async def _refresh(self) -> None:
        if not self.supports_refresh or not self.credentials.refresh_token:
            raise CredentialError("Access token expired and no refresh is possible", platform=self.platform.value)

        logger.info("%s Refreshing access token for tenant %s", self._tag, self.credentials.tenant_id)
        try:
            bundle = await self.refresh_access_token()
        except AdapterError as exc:
            raise CredentialError(f"Token refresh failed: {exc.message}", platform=self.platform.value) from exc

        self.credentials.access_token = bundle.access_token
        if bundle.refresh_token:
            self.credentials.refresh_token = bundle.refresh_token
        self.credentials.expires_at = bundle.expires_at
        if self._on_refresh:
            self._on_refresh(bundle)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        _retry_auth: bool = True,
    ) -> Any:
        """Perform one authenticated call and decode the JSON body.

        Raises:
            AdapterError: non-success status or transport failure
            CredentialError: 401 that a refresh could not fix
        """
        if self.credentials.is_expired and self.supports_refresh and self.credentials.refresh_token:
            await self._refresh()

        request_headers = {"Accept": "application/json", **self.auth_headers(), **(headers or {})}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                response = await client.request(method, path, params=params, json=json, headers=request_headers)
        except httpx.RequestError as exc:
            logger.warning("%s %s %s failed: %s", self._tag, method, path, exc)
            raise AdapterError(self.platform.value, None, str(exc)) from exc

        if response.status_code == 401:
            if _retry_auth and self.supports_refresh and self.credentials.refresh_token:
                await self._refresh()
                return await self._request(method, path, params=params, json=json, headers=headers, _retry_auth=False)
            raise CredentialError(f"{self.platform.value} rejected credentials (401)", platform=self.platform.value)

        if response.status_code >= 400:
            logger.warning("%s %s %s -> %s", self._tag, method, path, response.status_code)
            raise AdapterError(self.platform.value, response.status_code, response.text[:500])

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise AdapterError(self.platform.value, response.status_code, "Response body is not JSON") from exc

    @classmethod
    async def _token_request(
        cls,
        url: str,
        *,
        data: Dict[str, Any],
        auth: Optional[Tuple[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        as_json: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Dict[str, Any]:
        """POST to an OAuth token endpoint; errors become AdapterError.

        A success response without an `access_token` is an error too.
        """
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=transport) as client:
                if as_json:
                    response = await client.post(url, json=data, auth=auth, headers=headers)
                else:
                    response = await client.post(url, data=data, auth=auth, headers=headers)
        except httpx.RequestError as exc:
            raise AdapterError(cls.platform.value, None, str(exc)) from exc

        if response.status_code >= 400:
            raise AdapterError(cls.platform.value, response.status_code, response.text[:500])
        try:
            body = response.json()
        except ValueError as exc:
            raise AdapterError(cls.platform.value, response.status_code, "Token response is not JSON") from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AdapterError(cls.platform.value, response.status_code, "token response missing access_token")
        return body

    # -------------------------------------------------------------------------
    # OAuth connect (classmethods: no credentials exist yet)
    # -------------------------------------------------------------------------

    @classmethod
    def authorization_url(
        cls,
        settings: Any,
        *,
        state: str,
        redirect_uri: str,
        code_challenge: Optional[str] = None,
        shop_domain: Optional[str] = None,
    ) -> str:
        raise NotImplementedError(f"{cls.platform.value} does not use an OAuth redirect")

    @classmethod
    async def exchange_code(
        cls,
        settings: Any,
        *,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        shop_domain: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> TokenBundle:
        raise NotImplementedError(f"{cls.platform.value} does not use an OAuth code exchange")

    async def discover_metadata(self) -> Dict[str, Any]:
        """Platform identifiers stored after connect (shop id, merchant id...)."""
        return {}

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    @abstractmethod
    async def fetch_products(self, cursor: Optional[str] = None) -> Page:
        ...

    @abstractmethod
    async def fetch_orders(self, order_filter: OrderFilter) -> Page:
        ...

    @abstractmethod
    async def update_inventory(self, sku: str, quantity: int, listing_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def create_listing(self, product: Product) -> str:
        ...

    @abstractmethod
    async def update_listing(self, listing_id: str, product: Product) -> str:
        ...

    @abstractmethod
    def normalize_order(self, raw: Dict[str, Any]) -> NormalizedOrder:
        ...

    @abstractmethod
    def inventory_levels(self, items: List[Dict[str, Any]]) -> List[InventoryLevel]:
        ...

    def map_order_status(self, native: Optional[str]) -> OrderStatusEnum:
        """Translate a native order status through STATUS_MAP.

        Unmapped values fall back to PENDING and are reported so the gap is
        visible instead of silent.
        """
        if native is None and None in self.STATUS_MAP:
            return self.STATUS_MAP[None]
        status = self.STATUS_MAP.get(native) if native is not None else None
        if status is not None:
            return status

        logger.warning("%s Unmapped order status %r, defaulting to PENDING", self._tag, native)
        capture_message(
            f"Unmapped {self.platform.value} order status",
            level="warning",
            extra={"platform": self.platform.value, "native_status": native},
        )
        return OrderStatusEnum.pending
