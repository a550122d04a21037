"""Initial sync schema (tenants, connections, catalog, orders, queue, webhooks)

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 09:00:00.000000

WHAT:
    Creates every table of the canonical store:
    - tenants, platform_connections (encrypted credentials)
    - products, platform_listings, inventory_logs
    - orders, order_items
    - sync_jobs (status read model), queue_jobs (durable queue), webhook_events

WHY:
    Unique constraints carry the idempotency keys the sync engines rely on:
    (tenant, sku), (product, platform), (tenant, platform, platform_order_id).

REFERENCES:
    - omnisync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017_000001'
down_revision = None
branch_labels = None
depends_on = None


platform_enum = postgresql.ENUM(
    'ebay', 'amazon', 'etsy', 'shopify', 'woocommerce', 'google_shopping',
    name='platformenum', create_type=False,
)
connection_status_enum = postgresql.ENUM('ACTIVE', 'DISCONNECTED', 'ERROR', name='connectionstatusenum', create_type=False)
product_status_enum = postgresql.ENUM('DRAFT', 'ACTIVE', 'ARCHIVED', name='productstatusenum', create_type=False)
order_status_enum = postgresql.ENUM(
    'PENDING', 'PROCESSING', 'SHIPPED', 'DELIVERED', 'CANCELLED', 'REFUNDED',
    name='orderstatusenum', create_type=False,
)
sync_job_type_enum = postgresql.ENUM('PRODUCT_SYNC', 'ORDER_SYNC', 'INVENTORY_SYNC', name='syncjobtypeenum', create_type=False)
sync_job_status_enum = postgresql.ENUM('pending', 'completed', 'failed', name='syncjobstatusenum', create_type=False)
queue_job_type_enum = postgresql.ENUM(
    'product-sync', 'order-sync', 'inventory-sync', 'webhook-processing',
    name='queuejobtypeenum', create_type=False,
)
queue_job_status_enum = postgresql.ENUM('pending', 'running', 'completed', 'failed', name='queuejobstatusenum', create_type=False)
webhook_event_status_enum = postgresql.ENUM('processing', 'processed', 'failed', name='webhookeventstatusenum', create_type=False)

ALL_ENUMS = [
    platform_enum,
    connection_status_enum,
    product_status_enum,
    order_status_enum,
    sync_job_type_enum,
    sync_job_status_enum,
    queue_job_type_enum,
    queue_job_status_enum,
    webhook_event_status_enum,
]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enum types (shared between tables, so created once up front)
    # =========================================================================
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    # =========================================================================
    # STEP 2: Tenancy and credentials
    # =========================================================================
    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'platform_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('access_token_enc', sa.Text(), nullable=False),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('scope', sa.String(), nullable=True),
        sa.Column('status', connection_status_enum, nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'platform', name='uq_connection_tenant_platform'),
    )

    # =========================================================================
    # STEP 3: Catalog
    # =========================================================================
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('compare_at_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('cost_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('images', sa.JSON(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('status', product_status_enum, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'sku', name='uq_product_tenant_sku'),
    )

    op.create_table(
        'platform_listings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('platform_listing_id', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('product_id', 'platform', name='uq_listing_product_platform'),
    )

    op.create_table(
        'inventory_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('old_quantity', sa.Integer(), nullable=False),
        sa.Column('new_quantity', sa.Integer(), nullable=False),
        sa.Column('change_reason', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_inventory_logs_created_at', 'inventory_logs', ['created_at'])

    # =========================================================================
    # STEP 4: Orders
    # =========================================================================
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('platform_order_id', sa.String(), nullable=False),
        sa.Column('status', order_status_enum, nullable=False),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('order_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'platform', 'platform_order_id', name='uq_order_tenant_platform_order'),
    )

    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('sku', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('platform_item_id', sa.String(), nullable=True),
    )

    # =========================================================================
    # STEP 5: Sync bookkeeping, queue and webhooks
    # =========================================================================
    op.create_table(
        'sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('job_type', sync_job_type_enum, nullable=False),
        sa.Column('platform', platform_enum, nullable=True),
        sa.Column('status', sync_job_status_enum, nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sync_jobs_created_at', 'sync_jobs', ['created_at'])

    op.create_table(
        'queue_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_type', queue_job_type_enum, nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('status', queue_job_status_enum, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('dedup_key', sa.String(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_queue_jobs_claim', 'queue_jobs', ['status', 'priority', 'run_at'])
    op.create_index('ix_queue_jobs_dedup_key', 'queue_jobs', ['dedup_key'])

    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('event', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', webhook_event_status_enum, nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_index('ix_queue_jobs_dedup_key', table_name='queue_jobs')
    op.drop_index('ix_queue_jobs_claim', table_name='queue_jobs')
    op.drop_table('queue_jobs')
    op.drop_index('ix_sync_jobs_created_at', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_index('ix_inventory_logs_created_at', table_name='inventory_logs')
    op.drop_table('inventory_logs')
    op.drop_table('platform_listings')
    op.drop_table('products')
    op.drop_table('platform_connections')
    op.drop_table('tenants')

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
