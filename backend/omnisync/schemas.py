"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import PlatformEnum, ProductStatusEnum, OrderStatusEnum


# Products ---------------------------------------------------------

class ProductCreate(BaseModel):
    """Payload for creating a canonical product."""

    title: str = Field(min_length=3, max_length=255, description="Product title")
    description: Optional[str] = None
    sku: str = Field(min_length=1, max_length=100, description="Stock keeping unit, unique per tenant")
    price: Decimal = Field(ge=0, description="Selling price")
    compare_at_price: Optional[Decimal] = Field(default=None, ge=0, alias="compareAtPrice")
    cost_price: Optional[Decimal] = Field(default=None, ge=0, alias="costPrice")
    quantity: int = Field(ge=0, description="On-hand stock")
    images: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: ProductStatusEnum = ProductStatusEnum.draft

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "title": "Linen Tote Bag",
                "sku": "TOTE-001",
                "price": "24.00",
                "quantity": 40,
                "status": "ACTIVE",
            }
        },
    }

    @field_validator("sku")
    @classmethod
    def strip_sku(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("SKU cannot be blank")
        return value


class ProductUpdate(BaseModel):
    """Partial update; omitted fields are left untouched."""

    title: Optional[str] = Field(default=None, min_length=3, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=0)
    images: Optional[List[str]] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[ProductStatusEnum] = None


class ProductOut(BaseModel):
    id: UUID
    sku: str
    title: str
    description: Optional[str] = None
    price: Decimal
    quantity: int
    images: Optional[List[str]] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    status: ProductStatusEnum
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ProductListResponse(BaseModel):
    items: List[ProductOut]
    total: int
    page: int
    limit: int


class ProductSyncRequest(BaseModel):
    platforms: List[PlatformEnum] = Field(min_length=1)


# Orders ---------------------------------------------------------

class ShippingAddress(BaseModel):
    name: Optional[str] = None
    address1: str = Field(min_length=1)
    address2: Optional[str] = None
    city: str = Field(min_length=1)
    state: Optional[str] = None
    zip: str = Field(min_length=1)
    country: str = Field(min_length=2)


class OrderItemIn(BaseModel):
    sku: str = Field(min_length=1)
    title: Optional[str] = None
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    platform_item_id: Optional[str] = Field(default=None, alias="platformItemId")

    model_config = {"populate_by_name": True}


class OrderImportRequest(BaseModel):
    """Pull orders from the given platforms, optionally bounded by date/status."""

    platforms: List[PlatformEnum] = Field(min_length=1)
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    status: Optional[OrderStatusEnum] = None
    limit: int = Field(default=100, ge=1, le=500)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def check_window(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must be before endDate")
        return self


class OrderItemOut(BaseModel):
    sku: str
    title: Optional[str] = None
    quantity: int
    price: Decimal
    platform_item_id: Optional[str] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: UUID
    platform: PlatformEnum
    platform_order_id: str
    status: OrderStatusEnum
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    total: Decimal
    currency: str
    order_date: Optional[datetime] = None
    items: List[OrderItemOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# Inventory ---------------------------------------------------------

class InventorySyncRequest(BaseModel):
    action: Literal["import", "export"]
    platforms: List[PlatformEnum] = Field(min_length=1)
    product_id: Optional[UUID] = Field(default=None, alias="productId")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def export_needs_product(self):
        if self.action == "export" and not self.product_id:
            raise ValueError("productId is required for export")
        return self


class InventoryUpdate(BaseModel):
    product_id: UUID = Field(alias="productId")
    quantity: int = Field(ge=0)
    reason: Optional[str] = None
    platforms: List[PlatformEnum] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class BulkInventoryUpdateRequest(BaseModel):
    updates: List[InventoryUpdate] = Field(min_length=1)


class InventoryLogOut(BaseModel):
    id: UUID
    product_id: UUID
    old_quantity: int
    new_quantity: int
    change_reason: str
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# Sync ---------------------------------------------------------

class SyncTriggerRequest(BaseModel):
    sync_type: Literal["orders", "inventory", "products"] = Field(alias="syncType")

    model_config = {"populate_by_name": True}


class SyncTriggerResponse(BaseModel):
    success: bool
    message: str


class SyncJobOut(BaseModel):
    id: UUID
    job_type: str
    platform: Optional[str] = None
    status: str
    details: Optional[Any] = None
    created_at: Optional[datetime] = None


class SyncStats(BaseModel):
    total: int
    completed: int
    failed: int
    pending: int
    last_sync: Optional[datetime] = Field(default=None, serialization_alias="lastSync")


class SyncStatusResponse(BaseModel):
    recent_jobs: List[SyncJobOut] = Field(serialization_alias="recentJobs")
    stats: SyncStats


# Platforms ---------------------------------------------------------

class PlatformConnectRequest(BaseModel):
    platform: PlatformEnum
    # Shopify needs the shop domain up front; WooCommerce sends its keys directly
    shop_domain: Optional[str] = Field(default=None, alias="shopDomain")
    store_url: Optional[str] = Field(default=None, alias="storeUrl")
    consumer_key: Optional[str] = Field(default=None, alias="consumerKey")
    consumer_secret: Optional[str] = Field(default=None, alias="consumerSecret")
    merchant_id: Optional[str] = Field(default=None, alias="merchantId")

    model_config = {"populate_by_name": True}


class PlatformConnectResponse(BaseModel):
    platform: PlatformEnum
    auth_url: Optional[str] = Field(default=None, serialization_alias="authUrl")
    connected: bool = False


class PlatformDisconnectRequest(BaseModel):
    platform: PlatformEnum


class ConnectionOut(BaseModel):
    platform: PlatformEnum
    status: str
    access_token: str = Field(serialization_alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, serialization_alias="refreshToken")
    expires_at: Optional[datetime] = Field(default=None, serialization_alias="expiresAt")
    scope: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = Field(default=None, serialization_alias="lastError")
    updated_at: Optional[datetime] = Field(default=None, serialization_alias="updatedAt")


# Common ---------------------------------------------------------

class OrderListResponse(BaseModel):
    items: List[OrderOut]
    total: int
    page: int
    limit: int


class ErrorResponse(BaseModel):
    detail: str


class HealthResponse(BaseModel):
    status: str
