"""SQLAlchemy ORM models and enums.

This module defines the canonical store: tenants, their platform connections,
products and per-platform listings, imported orders, the inventory audit log,
sync job records, the durable job queue, and received webhook events.

All timestamps are naive UTC.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, UniqueConstraint, Index, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention for every column)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    ebay = "ebay"
    amazon = "amazon"
    etsy = "etsy"
    shopify = "shopify"
    woocommerce = "woocommerce"
    google_shopping = "google_shopping"


class ConnectionStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    disconnected = "DISCONNECTED"
    error = "ERROR"


class ProductStatusEnum(str, enum.Enum):
    draft = "DRAFT"
    active = "ACTIVE"
    archived = "ARCHIVED"


class OrderStatusEnum(str, enum.Enum):
    """Canonical order lifecycle every platform status is normalized into."""
    pending = "PENDING"
    processing = "PROCESSING"
    shipped = "SHIPPED"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"
    refunded = "REFUNDED"


class SyncJobTypeEnum(str, enum.Enum):
    product_sync = "PRODUCT_SYNC"
    order_sync = "ORDER_SYNC"
    inventory_sync = "INVENTORY_SYNC"


class SyncJobStatusEnum(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class QueueJobTypeEnum(str, enum.Enum):
    product_sync = "product-sync"
    order_sync = "order-sync"
    inventory_sync = "inventory-sync"
    webhook_processing = "webhook-processing"


class QueueJobStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class WebhookEventStatusEnum(str, enum.Enum):
    processing = "processing"
    processed = "processed"
    failed = "failed"


# Tenancy ---------------------------------------------------------

class Tenant(Base):
    """Tenant is one business account whose data is isolated from all others.

    Every connection, product, order and sync record belongs to exactly one
    tenant. Authentication lives outside this service; the session token only
    carries the tenant id.
    """
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    connections = relationship("PlatformConnection", back_populates="tenant")
    products = relationship("Product", back_populates="tenant")
    orders = relationship("Order", back_populates="tenant")

    def __str__(self):
        return self.name


class PlatformConnection(Base):
    """Encrypted credential bundle and lifecycle state for one platform.

    WHAT:
        One row per (tenant, platform). Access and refresh tokens are stored
        as AES-GCM ciphertext only (see omnisync/security.py).
    WHY:
        Disconnecting flips `status` instead of deleting, so the connection
        history (and the metadata used to resolve webhook tenants) survives.
    REFERENCES:
        - omnisync/services/credential_vault.py (the only writer)
    """
    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", name="uq_connection_tenant_platform"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)

    access_token_enc = Column(Text, nullable=False)
    refresh_token_enc = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    scope = Column(String, nullable=True)

    status = Column(
        Enum(ConnectionStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ConnectionStatusEnum.active,
    )
    # Platform identifiers: shop domain, merchant id, store url, shop id
    connection_metadata = Column("metadata", JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="connections")

    def __str__(self):
        return f"{self.platform.value} ({self.status.value})"


# Catalog ---------------------------------------------------------

class Product(Base):
    """Canonical product and inventory truth for one SKU.

    SKU is unique per tenant and is the matching key for inventory import.
    """
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_product_tenant_sku"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    sku = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    compare_at_price = Column(Numeric(12, 2), nullable=True)
    cost_price = Column(Numeric(12, 2), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    images = Column(JSON, nullable=True)
    category = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    status = Column(
        Enum(ProductStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ProductStatusEnum.draft,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="products")
    listings = relationship("PlatformListing", back_populates="product", cascade="all, delete-orphan")
    inventory_logs = relationship("InventoryLog", back_populates="product")

    def __str__(self):
        return f"{self.sku} - {self.title}"


class PlatformListing(Base):
    """Projection of one product onto one platform.

    WHAT: platform listing id plus the price/quantity last pushed there
    WHY: the oversell guard sums these snapshots against Product.quantity
    """
    __tablename__ = "platform_listings"
    __table_args__ = (
        UniqueConstraint("product_id", "platform", name="uq_listing_product_platform"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)
    platform_listing_id = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")  # active, error
    sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="listings")

    def __str__(self):
        return f"{self.platform.value}:{self.platform_listing_id}"


# Orders ---------------------------------------------------------

class Order(Base):
    """Order imported from a platform.

    WHAT: normalized order header; line items live in OrderItem
    WHY: (tenant, platform, platform_order_id) is the idempotency key for
         re-imports and duplicate webhook deliveries
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "platform_order_id", name="uq_order_tenant_platform_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)
    platform_order_id = Column(String, nullable=False)
    status = Column(Enum(OrderStatusEnum, values_callable=_enum_values), nullable=False)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="USD")
    order_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.platform.value} order {self.platform_order_id}"


class OrderItem(Base):
    """Line item of an order. Immutable once the order is created."""
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=True)
    sku = Column(String, nullable=False)
    title = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    platform_item_id = Column(String, nullable=True)

    order = relationship("Order", back_populates="items")


# Inventory audit ---------------------------------------------------------

class InventoryLog(Base):
    """Append-only record of every quantity change on a product."""
    __tablename__ = "inventory_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    old_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    change_reason = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)

    product = relationship("Product", back_populates="inventory_logs")


@event.listens_for(InventoryLog, "before_update")
def _reject_inventory_log_update(mapper, connection, target):
    raise ValueError("InventoryLog rows are append-only")


@event.listens_for(InventoryLog, "before_delete")
def _reject_inventory_log_delete(mapper, connection, target):
    raise ValueError("InventoryLog rows are append-only")


# Sync bookkeeping ---------------------------------------------------------

class SyncJob(Base):
    """Outcome of one processed sync job, read by the sync status view.

    Pruned after 30 days by the sync coordinator.
    """
    __tablename__ = "sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    job_type = Column(Enum(SyncJobTypeEnum, values_callable=_enum_values), nullable=False)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=True)
    status = Column(Enum(SyncJobStatusEnum, values_callable=_enum_values), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class QueueJob(Base):
    """Durable job queue entry.

    WHAT:
        A unit of background work (product/order/inventory sync, webhook
        processing) with its retry bookkeeping.
    WHY:
        Survives worker restarts; failed jobs stay here as dead letters for
        inspection instead of disappearing with the Redis key.
    REFERENCES:
        - omnisync/services/job_queue.py
        - omnisync/workers/arq_worker.py
    """
    __tablename__ = "queue_jobs"
    __table_args__ = (
        Index("ix_queue_jobs_claim", "status", "priority", "run_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_type = Column(Enum(QueueJobTypeEnum, values_callable=_enum_values), nullable=False)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=True)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=2)  # lower runs first
    status = Column(
        Enum(QueueJobStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=QueueJobStatusEnum.pending,
    )
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    run_at = Column(DateTime, nullable=False, default=utcnow)
    dedup_key = Column(String, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    def __str__(self):
        return f"{self.job_type.value} [{self.status.value}] attempt {self.attempts}/{self.max_attempts}"


class WebhookEvent(Base):
    """Webhook delivery accepted by the ingestor and handled by the queue."""
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)
    event = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    status = Column(
        Enum(WebhookEventStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=WebhookEventStatusEnum.processing,
    )
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
