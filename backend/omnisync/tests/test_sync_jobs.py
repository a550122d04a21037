"""Tests for the queue job handlers.

WHAT: Handlers run through JobQueue.process_next against the test store and
      a mocked platform API.
WHY: Platform failures must come back as retries until the ceiling, other
     failures must finish the job, and every attempt leaves a SyncJob record.
"""

import asyncio
from dataclasses import replace

import pytest

from omnisync.adapters.registry import AdapterFactory
from omnisync.models import (
    Order,
    PlatformEnum,
    QueueJobStatusEnum,
    QueueJobTypeEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
    WebhookEvent,
    WebhookEventStatusEnum,
)
from omnisync.services.credential_vault import CredentialVault
from omnisync.services.job_queue import JOB_POLICIES, JobQueue
from omnisync.services.sync_jobs import SyncJobHandlers, record_sync_job

SHOPIFY_API = "https://acme.myshopify.com/admin/api/2024-07"
WOO_API = "https://woo.example.com/wp-json/wc/v3"


@pytest.fixture
def handlers(session_factory, cipher, settings, platform_routes):
    bundle = SyncJobHandlers(
        session_factory,
        cipher,
        settings,
        adapter_factory_builder=lambda db: AdapterFactory(CredentialVault(db, cipher), settings, transport=platform_routes.transport()),
    )
    return bundle.handlers()


def _run_one(queue, handlers, job_type, payload):
    result = asyncio.run(queue.enqueue(job_type, payload))
    asyncio.run(queue.process_next(handlers))
    return queue.get(result.job_id)


def test_shopify_order_webhook_upserts_order(db, queue, handlers, tenant, shopify_connection):
    order = {
        "id": 7001,
        "total_price": "12.50",
        "currency": "USD",
        "fulfillment_status": None,
        "line_items": [{"id": 1, "sku": "TOTE-001", "title": "Tote", "quantity": 1, "price": "12.50"}],
    }

    job = _run_one(queue, handlers, QueueJobTypeEnum.webhook_processing, {
        "tenant_id": str(tenant.id),
        "platform": "shopify",
        "event": "orders/create",
        "payload": order,
    })

    assert job.status == QueueJobStatusEnum.completed
    assert job.result == {"action": "order_upsert", "created": True}
    db.expire_all()
    assert db.query(Order).one().platform_order_id == "7001"
    event = db.get(WebhookEvent, job.id)
    assert event.status == WebhookEventStatusEnum.processed
    assert event.processed_at is not None


def test_webhook_for_unmapped_listing_is_recorded(db, queue, handlers, tenant, shopify_connection):
    job = _run_one(queue, handlers, QueueJobTypeEnum.webhook_processing, {
        "tenant_id": str(tenant.id),
        "platform": "shopify",
        "event": "products/update",
        "payload": {"id": 999},
    })

    assert job.status == QueueJobStatusEnum.completed
    assert job.result["action"] == "ignored"


def test_webhook_failure_marks_event_failed_and_retries(db, queue, handlers, tenant, woo_connection, platform_routes):
    platform_routes.json("GET", f"{WOO_API}/orders", {"message": "busy"}, status_code=503)

    job = _run_one(queue, handlers, QueueJobTypeEnum.webhook_processing, {
        "tenant_id": str(tenant.id),
        "platform": "woocommerce",
        "event": "order.updated",
        "payload": {},
    })

    assert job.status == QueueJobStatusEnum.pending
    assert job.attempts == 1
    assert "platform failure on woocommerce" in job.last_error
    db.expire_all()
    assert db.get(WebhookEvent, job.id).status == WebhookEventStatusEnum.failed


def test_order_sync_transient_failure_is_retried_and_recorded(db, queue, handlers, tenant, shopify_connection, platform_routes):
    platform_routes.json("GET", f"{SHOPIFY_API}/orders.json", {"errors": "busy"}, status_code=503)

    job = _run_one(queue, handlers, QueueJobTypeEnum.order_sync, {"tenant_id": str(tenant.id), "since_hours": 24})

    assert job.status == QueueJobStatusEnum.pending
    db.expire_all()
    record = db.query(SyncJob).one()
    assert record.job_type == SyncJobTypeEnum.order_sync
    assert record.status == SyncJobStatusEnum.failed
    assert record.details["results"][0]["retryable"] is True


def test_product_sync_records_completed_job(db, queue, handlers, tenant, woo_connection, platform_routes, make_product):
    product = make_product(sku="MUG-9")
    platform_routes.json("POST", f"{WOO_API}/products", {"id": 88})

    job = _run_one(queue, handlers, QueueJobTypeEnum.product_sync, {
        "tenant_id": str(tenant.id),
        "product_id": str(product.id),
        "platforms": ["woocommerce"],
    })

    assert job.status == QueueJobStatusEnum.completed
    db.expire_all()
    record = db.query(SyncJob).one()
    assert record.status == SyncJobStatusEnum.completed
    assert record.platform == PlatformEnum.woocommerce
    assert record.details["product_id"] == str(product.id)


def test_tenant_without_connections_is_dead_lettered(queue, handlers, tenant):
    job = _run_one(queue, handlers, QueueJobTypeEnum.inventory_sync, {"tenant_id": str(tenant.id), "action": "import"})

    assert job.status == QueueJobStatusEnum.failed
    assert job.attempts == 1
    assert job.last_error.startswith("NotConnectedError")


def test_export_without_product_is_rejected(queue, handlers, tenant, woo_connection):
    job = _run_one(queue, handlers, QueueJobTypeEnum.inventory_sync, {"tenant_id": str(tenant.id), "action": "export"})

    assert job.status == QueueJobStatusEnum.failed
    assert "product_id" in job.last_error


def test_record_sync_job_requires_every_platform_to_succeed(db, tenant):
    row = record_sync_job(db, tenant.id, SyncJobTypeEnum.order_sync, [
        {"platform": "shopify", "success": True},
        {"platform": "ebay", "success": False},
    ])
    assert row.status == SyncJobStatusEnum.failed
    assert row.platform == PlatformEnum.shopify

    empty = record_sync_job(db, tenant.id, SyncJobTypeEnum.order_sync, [])
    assert empty.status == SyncJobStatusEnum.failed
    assert empty.platform is None


def test_platform_rejection_is_retried_then_dead_lettered(db, session_factory, handlers, tenant, woo_connection, platform_routes, make_product):
    policies = {job_type: replace(policy, backoff_base_seconds=0) for job_type, policy in JOB_POLICIES.items()}
    queue = JobQueue(session_factory, policies=policies)
    product = make_product(sku="MUG-9")
    platform_routes.json("POST", f"{WOO_API}/products", {"code": "woocommerce_rest_invalid_sku"}, status_code=400)
    enqueued = asyncio.run(queue.enqueue(QueueJobTypeEnum.product_sync, {
        "tenant_id": str(tenant.id),
        "product_id": str(product.id),
        "platforms": ["woocommerce"],
    }))

    processed = asyncio.run(queue.drain(handlers))

    job = queue.get(enqueued.job_id)
    assert processed == 3
    assert (job.status, job.attempts) == (QueueJobStatusEnum.failed, 3)
    assert "platform failure on woocommerce" in job.last_error
    assert [dead.id for dead in queue.list_dead_letters(QueueJobTypeEnum.product_sync)] == [enqueued.job_id]
    db.expire_all()
    assert db.query(SyncJob).filter(SyncJob.status == SyncJobStatusEnum.failed).count() == 3
