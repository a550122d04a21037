"""Platform connection endpoints."""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..deps import Settings, get_current_tenant_id, get_settings, get_vault
from ..errors import AdapterError, ConfigurationError, CredentialError, ValidationError
from ..models import PlatformEnum
from ..services.connection_service import ConnectionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/platforms",
    tags=["Platforms"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
    },
)


def get_connection_service(vault=Depends(get_vault), settings: Settings = Depends(get_settings)) -> ConnectionService:
    return ConnectionService(vault, settings)


@router.post(
    "/connect",
    response_model=schemas.PlatformConnectResponse,
    summary="Start connecting a platform",
    description="""
    OAuth platforms return the consent URL (state is signed and short-lived;
    Etsy additionally carries a PKCE verifier inside it).
    WooCommerce connects immediately with REST API keys.
    """,
)
async def connect_platform(
    body: schemas.PlatformConnectRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    service: ConnectionService = Depends(get_connection_service),
):
    try:
        if body.platform == PlatformEnum.woocommerce:
            await service.connect_woocommerce(tenant_id, body.store_url or "", body.consumer_key or "", body.consumer_secret or "")
            return schemas.PlatformConnectResponse(platform=body.platform, connected=True)

        auth_url = service.begin_oauth(
            tenant_id,
            body.platform,
            shop_domain=body.shop_domain,
            merchant_id=body.merchant_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except CredentialError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Store rejected the API keys")
    except AdapterError as e:
        logger.warning("[CONNECT] Key verification failed: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not reach the store")

    return schemas.PlatformConnectResponse(platform=body.platform, auth_url=auth_url)


@router.post("/disconnect", summary="Disconnect a platform")
def disconnect_platform(
    body: schemas.PlatformDisconnectRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    service: ConnectionService = Depends(get_connection_service),
):
    if not service.disconnect(tenant_id, body.platform):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return {"success": True}


@router.get(
    "/connections",
    response_model=List[schemas.ConnectionOut],
    summary="List connections (tokens masked)",
)
def list_connections(
    tenant_id: UUID = Depends(get_current_tenant_id),
    vault=Depends(get_vault),
):
    return [schemas.ConnectionOut(**view) for view in vault.list_masked(tenant_id)]
