"""Tests for the sync coordinator.

WHAT: Manual trigger messages and dedup, scheduled enqueue duties, SyncJob
      retention and the status read model.
"""

import asyncio
from datetime import timedelta

import pytest

from omnisync.errors import NotConnectedError, ValidationError
from omnisync.models import (
    PlatformEnum,
    ProductStatusEnum,
    QueueJobTypeEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
    utcnow,
)
from omnisync.services.sync_coordinator import (
    inventory_dedup_key,
    order_dedup_key,
    product_dedup_key,
)


def _add_sync_job(db, tenant, status, age_days=0):
    row = SyncJob(
        tenant_id=tenant.id,
        job_type=SyncJobTypeEnum.order_sync,
        platform=PlatformEnum.shopify,
        status=status,
        details={"results": []},
        created_at=utcnow() - timedelta(days=age_days),
    )
    db.add(row)
    db.commit()
    return row


# ============================================================================
# Manual trigger
# ============================================================================

def test_trigger_requires_an_active_connection(coordinator, tenant):
    with pytest.raises(NotConnectedError):
        asyncio.run(coordinator.trigger_user_sync(tenant.id, "orders"))


def test_trigger_rejects_unknown_type(coordinator, tenant, shopify_connection):
    with pytest.raises(ValidationError):
        asyncio.run(coordinator.trigger_user_sync(tenant.id, "everything"))


def test_order_trigger_is_deduplicated(coordinator, queue, tenant, shopify_connection):
    first = asyncio.run(coordinator.trigger_user_sync(tenant.id, "orders"))
    second = asyncio.run(coordinator.trigger_user_sync(tenant.id, "orders"))

    assert first == {"success": True, "message": "Order sync queued"}
    assert second["message"] == "Order sync already in progress"
    job = queue.claim_next()
    assert job.job_type == QueueJobTypeEnum.order_sync
    assert job.payload == {"tenant_id": str(tenant.id), "since_hours": 7 * 24}


def test_inventory_trigger(coordinator, tenant, shopify_connection):
    result = asyncio.run(coordinator.trigger_user_sync(tenant.id, "inventory"))
    assert result["message"] == "Inventory sync queued"


def test_product_trigger_counts_active_products(coordinator, tenant, shopify_connection, make_product):
    make_product(sku="A-1")
    make_product(sku="A-2")
    make_product(sku="D-1", status=ProductStatusEnum.draft)

    result = asyncio.run(coordinator.trigger_user_sync(tenant.id, "products"))
    assert result["message"] == "Product sync queued for 2 product(s)"


# ============================================================================
# Scheduled duties
# ============================================================================

def test_scheduled_duties_skip_unconnected_tenants(coordinator, queue, tenant, other_tenant, shopify_connection):
    assert asyncio.run(coordinator.enqueue_order_syncs()) == 1
    assert asyncio.run(coordinator.enqueue_inventory_syncs()) == 1
    # Second tick while the first jobs are still pending adds nothing
    assert asyncio.run(coordinator.enqueue_order_syncs()) == 0

    job = queue.claim_next([QueueJobTypeEnum.order_sync])
    assert job.tenant_id == tenant.id
    assert job.payload["since_hours"] == 24


def test_scheduled_product_sync_only_active(coordinator, tenant, shopify_connection, make_product):
    make_product(sku="LIVE-1")
    make_product(sku="OLD-1", status=ProductStatusEnum.archived)

    assert asyncio.run(coordinator.enqueue_product_syncs()) == 1


def test_cleanup_deletes_old_sync_jobs(db, coordinator, tenant):
    _add_sync_job(db, tenant, SyncJobStatusEnum.completed, age_days=45)
    recent = _add_sync_job(db, tenant, SyncJobStatusEnum.completed, age_days=2)

    assert asyncio.run(coordinator.cleanup_old_sync_jobs()) == 1
    db.expire_all()
    assert [row.id for row in db.query(SyncJob).all()] == [recent.id]


def test_dedup_keys():
    assert order_dedup_key("t1") == "order-sync:t1"
    assert inventory_dedup_key("t1") == "inventory-sync:t1:import"
    assert inventory_dedup_key("t1", "export", "p1") == "inventory-sync:t1:export:p1"
    assert product_dedup_key("t1", "p1") == "product-sync:t1:p1"


# ============================================================================
# Status
# ============================================================================

def test_sync_status_stats(db, coordinator, tenant, other_tenant, shopify_connection):
    _add_sync_job(db, tenant, SyncJobStatusEnum.completed, age_days=1)
    latest = _add_sync_job(db, tenant, SyncJobStatusEnum.completed)
    _add_sync_job(db, tenant, SyncJobStatusEnum.failed)
    _add_sync_job(db, other_tenant, SyncJobStatusEnum.failed)
    asyncio.run(coordinator.trigger_user_sync(tenant.id, "orders"))

    status = coordinator.get_sync_status(tenant.id)

    assert status["stats"]["completed"] == 2
    assert status["stats"]["failed"] == 1
    assert status["stats"]["pending"] == 1
    assert status["stats"]["total"] == 4
    assert status["stats"]["last_sync"] == latest.created_at
    assert len(status["recent_jobs"]) == 3


def test_sync_status_for_new_tenant(coordinator, tenant):
    status = coordinator.get_sync_status(tenant.id)
    assert status["recent_jobs"] == []
    assert status["stats"] == {"total": 0, "completed": 0, "failed": 0, "pending": 0, "last_sync": None}

