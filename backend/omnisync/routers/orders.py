"""Order import and listing endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session, selectinload

from .. import schemas
from ..adapters.base import OrderFilter, parse_datetime
from ..database import get_db
from ..deps import get_adapter_factory, get_current_tenant_id
from ..models import Order, OrderStatusEnum, PlatformEnum, SyncJobTypeEnum
from ..services.order_sync import OrderSyncEngine
from ..services.sync_jobs import record_sync_job

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orders",
    tags=["Orders"],
    responses={401: {"model": schemas.ErrorResponse, "description": "Unauthorized"}},
)


@router.post("/import", summary="Import orders from platforms now")
async def import_orders(
    body: schemas.OrderImportRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    adapters=Depends(get_adapter_factory),
):
    """Synchronous import; `limit` caps the orders taken from each platform."""
    order_filter = OrderFilter(
        created_after=parse_datetime(body.start_date),
        created_before=parse_datetime(body.end_date),
        status=body.status,
        limit=body.limit,
    )
    results = await OrderSyncEngine(db, adapters).import_orders(
        tenant_id, body.platforms, order_filter, max_orders=body.limit
    )
    dicts = [r.to_dict() for r in results]
    record_sync_job(db, tenant_id, SyncJobTypeEnum.order_sync, dicts, {"trigger": "api"})

    successful = sum(1 for r in results if r.success)
    return {
        "results": dicts,
        "summary": {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "ordersImported": sum(r.order_count for r in results),
        },
    }


@router.get("", response_model=schemas.OrderListResponse, summary="List orders")
def list_orders(
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    platform: Optional[PlatformEnum] = Query(None),
    status_filter: Optional[OrderStatusEnum] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    query = db.query(Order).filter(Order.tenant_id == tenant_id)
    if platform:
        query = query.filter(Order.platform == platform)
    if status_filter:
        query = query.filter(Order.status == status_filter)

    total = query.count()
    items = (
        query.options(selectinload(Order.items))
        .order_by(Order.order_date.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return schemas.OrderListResponse(items=items, total=total, page=page, limit=limit)
