"""Canonical product endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_adapter_factory, get_current_tenant_id
from ..errors import ValidationError
from ..models import Product, ProductStatusEnum
from ..services.inventory_sync import InventorySyncEngine
from ..services.product_sync import ProductSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/products",
    tags=["Products"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
    },
)


def _get_product(db: Session, tenant_id: UUID, product_id: UUID) -> Product:
    product = (
        db.query(Product)
        .filter(Product.id == product_id, Product.tenant_id == tenant_id)
        .first()
    )
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product


@router.post(
    "",
    response_model=schemas.ProductOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a product",
    responses={409: {"model": schemas.ErrorResponse, "description": "SKU already exists"}},
)
def create_product(
    body: schemas.ProductCreate,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    """SKU is unique per tenant; a duplicate is rejected and the existing row is left untouched."""
    existing = (
        db.query(Product.id)
        .filter(Product.tenant_id == tenant_id, Product.sku == body.sku)
        .first()
    )
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product with this SKU already exists")

    product = Product(tenant_id=tenant_id, **body.model_dump())
    db.add(product)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product with this SKU already exists")
    db.refresh(product)
    logger.info("[PRODUCTS] Created %s for tenant %s", product.sku, tenant_id)
    return product


@router.get("", response_model=schemas.ProductListResponse, summary="List products")
def list_products(
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, description="Matches title or SKU"),
    status_filter: Optional[ProductStatusEnum] = Query(None, alias="status"),
):
    query = db.query(Product).filter(Product.tenant_id == tenant_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Product.title.ilike(pattern), Product.sku.ilike(pattern)))
    if status_filter:
        query = query.filter(Product.status == status_filter)

    total = query.count()
    items = (
        query.order_by(Product.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return schemas.ProductListResponse(items=items, total=total, page=page, limit=limit)


@router.get("/{product_id}", response_model=schemas.ProductOut, summary="Get a product")
def get_product(
    product_id: UUID,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    return _get_product(db, tenant_id, product_id)


@router.patch("/{product_id}", response_model=schemas.ProductOut, summary="Update a product")
def update_product(
    product_id: UUID,
    body: schemas.ProductUpdate,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
):
    product = _get_product(db, tenant_id, product_id)
    changes = body.model_dump(exclude_unset=True)

    # Quantity goes through the engine so the change lands in the audit log
    quantity = changes.pop("quantity", None)
    if quantity is not None:
        InventorySyncEngine(db).set_quantity(product, quantity, "manual update")
    for field, value in changes.items():
        setattr(product, field, value)

    db.commit()
    db.refresh(product)
    return product


@router.post("/{product_id}/sync", summary="Sync a product to platforms now")
async def sync_product(
    product_id: UUID,
    body: schemas.ProductSyncRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    db: Session = Depends(get_db),
    adapters=Depends(get_adapter_factory),
):
    """Runs synchronously; each platform reports independently."""
    try:
        results = await ProductSyncEngine(db, adapters).sync_product(tenant_id, product_id, body.platforms)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    successful = sum(1 for r in results if r.success)
    return {
        "results": [r.to_dict() for r in results],
        "summary": {"total": len(results), "successful": successful, "failed": len(results) - successful},
    }
