"""Queue job handlers.

WHAT:
    One async handler per queue job type. Each opens its own session, builds
    adapters from the vault, runs the matching engine, and records a SyncJob
    row describing the attempt.

WHY:
    - Engines isolate per-platform failures; the handler turns "some platform
      failed with a transient error" into JobRetryableError so the queue
      applies backoff. Permanent failures (not connected, 4xx, credentials)
      finish the job with a failed SyncJob instead of burning retries.
    - Handlers are the only place queue payloads are interpreted.

REFERENCES:
    - omnisync/services/job_queue.py
    - omnisync/workers/arq_worker.py (wires these into the worker)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.adapters.base import OrderFilter, parse_datetime
from omnisync.adapters.registry import AdapterFactory
from omnisync.errors import JobRetryableError, NotConnectedError, ValidationError
from omnisync.models import (
    OrderStatusEnum,
    PlatformEnum,
    PlatformListing,
    Product,
    QueueJobTypeEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
    WebhookEvent,
    WebhookEventStatusEnum,
    utcnow,
)
from omnisync.security import TokenCipher
from omnisync.services.credential_vault import CredentialVault
from omnisync.services.inventory_sync import InventorySyncEngine
from omnisync.services.job_queue import ClaimedJob, Handler
from omnisync.services.order_sync import OrderSyncEngine
from omnisync.services.product_sync import ProductSyncEngine

logger = logging.getLogger(__name__)

# Platforms whose order webhooks carry the full order resource
FULL_ORDER_WEBHOOKS = {PlatformEnum.shopify, PlatformEnum.woocommerce}


def record_sync_job(
    db: Session,
    tenant_id: UUID,
    job_type: SyncJobTypeEnum,
    results: List[Dict[str, Any]],
    extra: Optional[Dict[str, Any]] = None,
) -> SyncJob:
    """Persist the outcome of one attempt; completed only when every platform succeeded."""
    succeeded = bool(results) and all(r.get("success") for r in results)
    first_platform = results[0]["platform"] if results else None
    row = SyncJob(
        tenant_id=tenant_id,
        job_type=job_type,
        platform=PlatformEnum(first_platform) if first_platform else None,
        status=SyncJobStatusEnum.completed if succeeded else SyncJobStatusEnum.failed,
        details={"results": results, **(extra or {})},
    )
    db.add(row)
    db.commit()
    return row


def _raise_if_retryable(results: Sequence[Any], label: str) -> None:
    """Ask the queue for another attempt when any platform call failed with a platform error."""
    failed = [r for r in results if not r.success and r.retryable]
    if failed:
        platforms = ", ".join(r.platform for r in failed)
        raise JobRetryableError(f"{label}: platform failure on {platforms}")


class SyncJobHandlers:
    """Bundle of queue handlers sharing a cipher, settings and session factory."""

    def __init__(
        self,
        session_factory,
        cipher: TokenCipher,
        settings,
        adapter_factory_builder: Optional[Callable[[Session], AdapterFactory]] = None,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.settings = settings
        self._build_adapters = adapter_factory_builder or (
            lambda db: AdapterFactory(CredentialVault(db, cipher), settings)
        )

    def handlers(self) -> Dict[QueueJobTypeEnum, Handler]:
        return {
            QueueJobTypeEnum.product_sync: self.product_sync,
            QueueJobTypeEnum.order_sync: self.order_sync,
            QueueJobTypeEnum.inventory_sync: self.inventory_sync,
            QueueJobTypeEnum.webhook_processing: self.webhook_processing,
        }

    def _platforms(self, db: Session, tenant_id: UUID, requested: Optional[List[str]]) -> List[PlatformEnum]:
        if requested:
            return [PlatformEnum(p) for p in requested]
        platforms = CredentialVault(db, self.cipher).active_platforms(tenant_id)
        if not platforms:
            raise NotConnectedError(f"Tenant {tenant_id} has no active connections")
        return platforms

    # -------------------------------------------------------------------------
    # product-sync
    # -------------------------------------------------------------------------

    async def product_sync(self, job: ClaimedJob) -> Dict[str, Any]:
        payload = job.payload
        tenant_id = UUID(payload["tenant_id"])
        db = self.session_factory()
        try:
            platforms = self._platforms(db, tenant_id, payload.get("platforms"))
            engine = ProductSyncEngine(db, self._build_adapters(db))
            results = await engine.sync_product(tenant_id, UUID(payload["product_id"]), platforms)
            dicts = [r.to_dict() for r in results]
            record_sync_job(db, tenant_id, SyncJobTypeEnum.product_sync, dicts, {"product_id": payload["product_id"], "attempt": job.attempts})
            _raise_if_retryable(results, "product sync")
            return {"results": dicts}
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # order-sync
    # -------------------------------------------------------------------------

    async def order_sync(self, job: ClaimedJob) -> Dict[str, Any]:
        payload = job.payload
        tenant_id = UUID(payload["tenant_id"])
        db = self.session_factory()
        try:
            platforms = self._platforms(db, tenant_id, payload.get("platforms"))
            since_hours = payload.get("since_hours")
            order_filter = OrderFilter(
                created_after=parse_datetime(payload.get("start_date")) or (utcnow() - timedelta(hours=since_hours) if since_hours else None),
                created_before=parse_datetime(payload.get("end_date")),
                status=OrderStatusEnum(payload["status"]) if payload.get("status") else None,
                limit=int(payload.get("limit", 100)),
            )
            engine = OrderSyncEngine(db, self._build_adapters(db))
            results = await engine.import_orders(tenant_id, platforms, order_filter, max_orders=payload.get("max_orders"))
            dicts = [r.to_dict() for r in results]
            record_sync_job(db, tenant_id, SyncJobTypeEnum.order_sync, dicts, {"attempt": job.attempts})
            _raise_if_retryable(results, "order sync")
            return {"results": dicts, "orders": sum(r.order_count for r in results)}
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # inventory-sync
    # -------------------------------------------------------------------------

    async def inventory_sync(self, job: ClaimedJob) -> Dict[str, Any]:
        payload = job.payload
        tenant_id = UUID(payload["tenant_id"])
        action = payload.get("action", "import")
        db = self.session_factory()
        try:
            platforms = self._platforms(db, tenant_id, payload.get("platforms"))
            engine = InventorySyncEngine(db, self._build_adapters(db))
            if action == "import":
                results = await engine.import_inventory(tenant_id, platforms)
                corrections = engine.enforce_oversell_guard(tenant_id)
            elif action == "export":
                if not payload.get("product_id"):
                    raise ValidationError("inventory export requires product_id")
                results = await engine.export_inventory(tenant_id, UUID(payload["product_id"]), platforms)
                corrections = []
            else:
                raise ValidationError(f"Unknown inventory action {action!r}")

            dicts = [r.to_dict() for r in results]
            record_sync_job(
                db, tenant_id, SyncJobTypeEnum.inventory_sync, dicts,
                {"action": action, "oversell_corrections": len(corrections), "attempt": job.attempts},
            )
            _raise_if_retryable(results, f"inventory {action}")
            return {"results": dicts, "oversell_corrections": len(corrections)}
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # webhook-processing
    # -------------------------------------------------------------------------

    async def webhook_processing(self, job: ClaimedJob) -> Dict[str, Any]:
        """Record the webhook and dispatch it by event family.

        The WebhookEvent row shares the queue job's id, so retries update the
        same record instead of adding new ones.
        """
        payload = job.payload
        tenant_id = UUID(payload["tenant_id"])
        platform = PlatformEnum(payload["platform"])
        event = payload.get("event") or "unknown"
        body = payload.get("payload") or {}

        db = self.session_factory()
        try:
            record = db.get(WebhookEvent, job.id)
            if record is None:
                record = WebhookEvent(id=job.id, tenant_id=tenant_id, platform=platform, event=event, payload=body)
                db.add(record)
            record.status = WebhookEventStatusEnum.processing
            db.commit()

            try:
                outcome = await self._dispatch_webhook(db, tenant_id, platform, event, body)
            except Exception as exc:
                db.rollback()
                record = db.get(WebhookEvent, job.id)
                record.status = WebhookEventStatusEnum.failed
                record.error = str(exc)[:2000]
                db.commit()
                raise

            record.status = WebhookEventStatusEnum.processed
            record.error = None
            record.processed_at = utcnow()
            db.commit()
            return outcome
        finally:
            db.close()

    async def _dispatch_webhook(
        self,
        db: Session,
        tenant_id: UUID,
        platform: PlatformEnum,
        event: str,
        body: Dict[str, Any],
    ) -> Dict[str, Any]:
        family = event.lower()
        adapters = self._build_adapters(db)

        if "order" in family or "receipt" in family:
            engine = OrderSyncEngine(db, adapters)
            adapter = adapters.get(tenant_id, platform)
            if adapter is None:
                raise NotConnectedError(f"{platform.value} is not connected")
            if platform in FULL_ORDER_WEBHOOKS and body.get("id"):
                created = engine.upsert_order(tenant_id, platform, adapter.normalize_order(body))
                logger.info("[WEBHOOK] %s %s order %s (%s)", platform.value, event, body.get("id"), "created" if created else "updated")
                return {"action": "order_upsert", "created": created}
            results = await engine.import_orders(tenant_id, [platform], OrderFilter(created_after=utcnow() - timedelta(hours=24)))
            record_sync_job(db, tenant_id, SyncJobTypeEnum.order_sync, [r.to_dict() for r in results], {"trigger": f"webhook:{event}"})
            _raise_if_retryable(results, "webhook order import")
            return {"action": "order_import", "results": [r.to_dict() for r in results]}

        if "inventory" in family or "stock" in family:
            engine = InventorySyncEngine(db, adapters)
            results = await engine.import_inventory(tenant_id, [platform])
            record_sync_job(db, tenant_id, SyncJobTypeEnum.inventory_sync, [r.to_dict() for r in results], {"trigger": f"webhook:{event}"})
            _raise_if_retryable(results, "webhook inventory import")
            return {"action": "inventory_import", "results": [r.to_dict() for r in results]}

        if "product" in family or "listing" in family or "item" in family:
            remote_id = body.get("id") or body.get("listing_id") or body.get("offerId") or body.get("sku")
            listing = None
            if remote_id is not None:
                listing = (
                    db.query(PlatformListing)
                    .join(Product, Product.id == PlatformListing.product_id)
                    .filter(
                        Product.tenant_id == tenant_id,
                        PlatformListing.platform == platform,
                        PlatformListing.platform_listing_id == str(remote_id),
                    )
                    .first()
                )
            if listing is None:
                logger.info("[WEBHOOK] %s %s for unmapped listing %s ignored", platform.value, event, remote_id)
                return {"action": "ignored", "reason": "unmapped listing"}
            results = await ProductSyncEngine(db, adapters).sync_product(tenant_id, listing.product_id, [platform])
            record_sync_job(db, tenant_id, SyncJobTypeEnum.product_sync, [r.to_dict() for r in results], {"trigger": f"webhook:{event}"})
            _raise_if_retryable(results, "webhook product sync")
            return {"action": "product_sync", "results": [r.to_dict() for r in results]}

        logger.info("[WEBHOOK] Unhandled %s event %r recorded for tenant %s", platform.value, event, tenant_id)
        return {"action": "recorded"}
