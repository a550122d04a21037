"""Sync coordinator (scheduled duties + manual trigger + status read model).

WHAT:
    Enqueues sync work for every tenant with an active connection, prunes
    old SyncJob rows, and serves the manual "sync now" trigger and the
    status view.

WHY:
    - Differentiated cadences: orders matter most (fulfillment), inventory
      next (stockouts), listing freshness last.
    - The coordinator owns what each duty does; when it runs is arq cron's
      job (workers/arq_worker.py), so the API process holds no timers.
    - The coordinator is constructed explicitly with the session factory and
      queue it needs; there is no module-level instance.

SYNC SCHEDULE (all times UTC, registered as arq cron jobs):
    - :00, :15, :30, :45 : order-sync per tenant (last 24h of orders)
    - :00, :30           : inventory import per tenant
    - :00                : product-sync per ACTIVE product
    - 02:00 daily        : delete SyncJob rows older than 30 days

REFERENCES:
    - omnisync/workers/arq_worker.py (scheduled_* cron functions)
    - omnisync/services/job_queue.py (dedup keys prevent double enqueue)
    - omnisync/routers/sync.py (trigger + status endpoints)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List
from uuid import UUID

from sqlalchemy import distinct

from omnisync.errors import NotConnectedError, ValidationError
from omnisync.models import (
    ConnectionStatusEnum,
    PlatformConnection,
    Product,
    ProductStatusEnum,
    QueueJob,
    QueueJobStatusEnum,
    QueueJobTypeEnum,
    SyncJob,
    SyncJobStatusEnum,
    utcnow,
)
from omnisync.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

SYNC_JOB_RETENTION_DAYS = 30
SCHEDULED_ORDER_WINDOW_HOURS = 24
MANUAL_ORDER_WINDOW_HOURS = 7 * 24
RECENT_JOBS_LIMIT = 10

SYNC_TYPES = ("orders", "inventory", "products")


def order_dedup_key(tenant_id) -> str:
    return f"order-sync:{tenant_id}"


def inventory_dedup_key(tenant_id, action: str = "import", product_id=None) -> str:
    return f"inventory-sync:{tenant_id}:{action}" + (f":{product_id}" if product_id else "")


def product_dedup_key(tenant_id, product_id) -> str:
    return f"product-sync:{tenant_id}:{product_id}"


class SyncCoordinator:
    """Scheduled duty bodies plus the manual/status entry points."""

    def __init__(self, session_factory, queue: JobQueue, *, retention_days: int = SYNC_JOB_RETENTION_DAYS):
        self.session_factory = session_factory
        self.queue = queue
        self.retention_days = retention_days

    # =========================================================================
    # SCHEDULED DUTIES
    # =========================================================================

    def _connected_tenants(self) -> List[UUID]:
        db = self.session_factory()
        try:
            rows = (
                db.query(distinct(PlatformConnection.tenant_id))
                .filter(PlatformConnection.status == ConnectionStatusEnum.active)
                .all()
            )
            return [row[0] for row in rows]
        finally:
            db.close()

    async def _enqueue_orders(self, tenant_id: UUID, window_hours: int) -> bool:
        result = await self.queue.enqueue(
            QueueJobTypeEnum.order_sync,
            {"tenant_id": str(tenant_id), "since_hours": window_hours},
            tenant_id=tenant_id,
            dedup_key=order_dedup_key(tenant_id),
        )
        return result.created

    async def _enqueue_inventory(self, tenant_id: UUID) -> bool:
        result = await self.queue.enqueue(
            QueueJobTypeEnum.inventory_sync,
            {"tenant_id": str(tenant_id), "action": "import"},
            tenant_id=tenant_id,
            dedup_key=inventory_dedup_key(tenant_id),
        )
        return result.created

    async def _enqueue_products(self, tenant_id: UUID) -> int:
        db = self.session_factory()
        try:
            product_ids = [
                row[0]
                for row in db.query(Product.id)
                .filter(Product.tenant_id == tenant_id, Product.status == ProductStatusEnum.active)
                .all()
            ]
        finally:
            db.close()

        created = 0
        for product_id in product_ids:
            result = await self.queue.enqueue(
                QueueJobTypeEnum.product_sync,
                {"tenant_id": str(tenant_id), "product_id": str(product_id)},
                tenant_id=tenant_id,
                dedup_key=product_dedup_key(tenant_id, product_id),
            )
            created += int(result.created)
        return created

    async def enqueue_order_syncs(self) -> int:
        created = 0
        for tenant_id in self._connected_tenants():
            created += int(await self._enqueue_orders(tenant_id, SCHEDULED_ORDER_WINDOW_HOURS))
        return created

    async def enqueue_inventory_syncs(self) -> int:
        created = 0
        for tenant_id in self._connected_tenants():
            created += int(await self._enqueue_inventory(tenant_id))
        return created

    async def enqueue_product_syncs(self) -> int:
        created = 0
        for tenant_id in self._connected_tenants():
            created += await self._enqueue_products(tenant_id)
        return created

    async def cleanup_old_sync_jobs(self) -> int:
        cutoff = utcnow() - timedelta(days=self.retention_days)
        db = self.session_factory()
        try:
            deleted = db.query(SyncJob).filter(SyncJob.created_at < cutoff).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()
        self.queue.prune()
        logger.info("[COORDINATOR] Deleted %d sync job record(s) older than %d days", deleted, self.retention_days)
        return deleted

    # =========================================================================
    # MANUAL TRIGGER + STATUS
    # =========================================================================

    async def trigger_user_sync(self, tenant_id: UUID, sync_type: str) -> Dict[str, Any]:
        """Enqueue a sync on behalf of a user and acknowledge immediately.

        Raises:
            ValidationError: unknown sync type
            NotConnectedError: tenant has no active connections
        """
        if sync_type not in SYNC_TYPES:
            raise ValidationError(f"Unknown sync type {sync_type!r}")

        db = self.session_factory()
        try:
            connected = (
                db.query(PlatformConnection)
                .filter(
                    PlatformConnection.tenant_id == tenant_id,
                    PlatformConnection.status == ConnectionStatusEnum.active,
                )
                .count()
            )
        finally:
            db.close()
        if not connected:
            raise NotConnectedError("No active platform connections")

        if sync_type == "orders":
            created = await self._enqueue_orders(tenant_id, MANUAL_ORDER_WINDOW_HOURS)
            message = "Order sync queued" if created else "Order sync already in progress"
        elif sync_type == "inventory":
            created = await self._enqueue_inventory(tenant_id)
            message = "Inventory sync queued" if created else "Inventory sync already in progress"
        else:
            count = await self._enqueue_products(tenant_id)
            message = f"Product sync queued for {count} product(s)"

        logger.info("[COORDINATOR] Manual %s sync for tenant %s: %s", sync_type, tenant_id, message)
        return {"success": True, "message": message}

    def get_sync_status(self, tenant_id: UUID) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            recent = (
                db.query(SyncJob)
                .filter(SyncJob.tenant_id == tenant_id)
                .order_by(SyncJob.created_at.desc())
                .limit(RECENT_JOBS_LIMIT)
                .all()
            )
            base = db.query(SyncJob).filter(SyncJob.tenant_id == tenant_id)
            completed = base.filter(SyncJob.status == SyncJobStatusEnum.completed).count()
            failed = base.filter(SyncJob.status == SyncJobStatusEnum.failed).count()
            pending = (
                db.query(QueueJob)
                .filter(
                    QueueJob.tenant_id == tenant_id,
                    QueueJob.status.in_([QueueJobStatusEnum.pending, QueueJobStatusEnum.running]),
                    QueueJob.job_type != QueueJobTypeEnum.webhook_processing,
                )
                .count()
            )
            last_success = (
                base.filter(SyncJob.status == SyncJobStatusEnum.completed)
                .order_by(SyncJob.created_at.desc())
                .first()
            )
            return {
                "recent_jobs": [
                    {
                        "id": job.id,
                        "job_type": job.job_type.value,
                        "platform": job.platform.value if job.platform else None,
                        "status": job.status.value,
                        "details": job.details,
                        "created_at": job.created_at,
                    }
                    for job in recent
                ],
                "stats": {
                    "total": completed + failed + pending,
                    "completed": completed,
                    "failed": failed,
                    "pending": pending,
                    "last_sync": last_success.created_at if last_success else None,
                },
            }
        finally:
            db.close()
