"""Inventory endpoints: platform sync, bulk updates, low stock, audit log, reconcile."""

import logging
from dataclasses import asdict
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_adapter_factory, get_current_tenant_id
from ..errors import ValidationError
from ..services.inventory_sync import DEFAULT_LOW_STOCK_THRESHOLD, InventorySyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/inventory",
    tags=["Inventory"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
    },
)


def _summary(results) -> dict:
    successful = sum(1 for r in results if r["success"])
    return {"total": len(results), "successful": successful, "failed": len(results) - successful}


@router.post("/sync", summary="Import or export stock levels")
async def sync_inventory(
    body: schemas.InventorySyncRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    adapters=Depends(get_adapter_factory),
):
    """import: platform stock overwrites canonical quantities by SKU, then the
    oversell guard runs. export: push one product's quantity to platforms."""
    engine = InventorySyncEngine(db, adapters)
    corrections = []
    if body.action == "import":
        results = await engine.import_inventory(tenant_id, body.platforms)
        corrections = engine.enforce_oversell_guard(tenant_id)
    else:
        try:
            results = await engine.export_inventory(tenant_id, body.product_id, body.platforms)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    dicts = [r.to_dict() for r in results]
    return {
        "results": dicts,
        "summary": _summary(dicts),
        "oversellCorrections": [asdict(c) for c in corrections],
    }


@router.post("/bulk-update", summary="Set quantities for several products")
async def bulk_update_inventory(
    body: schemas.BulkInventoryUpdateRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    adapters=Depends(get_adapter_factory),
):
    outcomes = await InventorySyncEngine(db, adapters).bulk_update(tenant_id, body.updates)
    return {"results": outcomes, "summary": _summary(outcomes)}


@router.get("/low-stock", response_model=List[schemas.ProductOut], summary="ACTIVE products at or below a threshold")
def low_stock(
    threshold: int = Query(DEFAULT_LOW_STOCK_THRESHOLD, ge=0),
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    return InventorySyncEngine(db).check_low_stock(tenant_id, threshold)


@router.get("/logs/{product_id}", response_model=List[schemas.InventoryLogOut], summary="Stock change history")
def inventory_logs(
    product_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        return InventorySyncEngine(db).get_inventory_logs(tenant_id, product_id, limit)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/reconcile", summary="Run the oversell guard and push clamped quantities")
async def reconcile_inventory(
    push: bool = Query(True),
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    adapters=Depends(get_adapter_factory),
):
    return await InventorySyncEngine(db, adapters).reconcile(tenant_id, push=push)
