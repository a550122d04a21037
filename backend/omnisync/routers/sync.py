"""Sync trigger and status endpoints.

WHAT:
    POST /sync/trigger enqueues work and acknowledges immediately.
    GET /sync/status returns recent SyncJob rows and counters.
WHY:
    Outcomes are only observable through the status query; the trigger never
    waits on a platform.
REFERENCES:
    - omnisync/services/sync_coordinator.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..deps import get_coordinator, get_current_tenant_id
from ..errors import NotConnectedError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/sync",
    tags=["Sync"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        503: {"model": schemas.ErrorResponse, "description": "Coordinator unavailable"},
    },
)


@router.post(
    "/trigger",
    response_model=schemas.SyncTriggerResponse,
    summary="Queue a manual sync",
)
async def trigger_sync(
    body: schemas.SyncTriggerRequest,
    tenant_id: UUID = Depends(get_current_tenant_id),
    coordinator=Depends(get_coordinator),
):
    """Orders re-import the last 7 days; inventory imports; products re-sync every ACTIVE product."""
    try:
        result = await coordinator.trigger_user_sync(tenant_id, body.sync_type)
    except NotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return schemas.SyncTriggerResponse(**result)


@router.get(
    "/status",
    response_model=schemas.SyncStatusResponse,
    summary="Recent sync jobs and counters",
)
def sync_status(
    tenant_id: UUID = Depends(get_current_tenant_id),
    coordinator=Depends(get_coordinator),
):
    data = coordinator.get_sync_status(tenant_id)
    return schemas.SyncStatusResponse(
        recent_jobs=[schemas.SyncJobOut(**job) for job in data["recent_jobs"]],
        stats=schemas.SyncStats(**data["stats"]),
    )
