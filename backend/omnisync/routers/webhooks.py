"""Platform webhook endpoints.

WHAT:
    POST /webhooks/{platform}  verify, resolve tenant, enqueue, 200
    GET  /webhooks/{platform}  eBay challenge handshake
WHY:
    Handlers stay thin: every delivery is verified against the raw body and
    handed to the queue. A bad signature is answered 401 before anything is
    written.
REFERENCES:
    - omnisync/services/webhook_service.py
    - https://developer.ebay.com/marketplace-account-deletion
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..deps import Settings, get_job_queue, get_settings, get_vault
from ..errors import SignatureError, ValidationError
from ..models import PlatformEnum
from ..services.webhook_service import WebhookIngestor, ebay_challenge_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _platform(value: str) -> PlatformEnum:
    try:
        return PlatformEnum(value.lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported platform")


def get_ingestor(
    vault=Depends(get_vault),
    queue=Depends(get_job_queue),
    settings: Settings = Depends(get_settings),
) -> WebhookIngestor:
    return WebhookIngestor(vault, queue, settings)


def _ebay_challenge(challenge_code: str, settings: Settings) -> dict:
    if not settings.EBAY_VERIFICATION_TOKEN or not settings.EBAY_WEBHOOK_ENDPOINT:
        logger.error("[WEBHOOK] eBay challenge received but verification token/endpoint not configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="eBay webhooks not configured")
    return {
        "challengeResponse": ebay_challenge_response(
            challenge_code, settings.EBAY_VERIFICATION_TOKEN, settings.EBAY_WEBHOOK_ENDPOINT
        )
    }


@router.post("/{platform}", summary="Receive a platform webhook")
async def receive_webhook(
    platform: str,
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
    settings: Settings = Depends(get_settings),
):
    target = _platform(platform)
    body = await request.body()

    if target == PlatformEnum.ebay:
        # Endpoint validation may arrive as a POST carrying challenge_code
        try:
            envelope = json.loads(body or b"{}")
        except ValueError:
            envelope = None
        if isinstance(envelope, dict) and envelope.get("challenge_code"):
            return _ebay_challenge(str(envelope["challenge_code"]), settings)

    try:
        receipt = await ingestor.ingest(target, request.headers, body, dict(request.query_params))
    except SignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"success": True, "queued": receipt.queued}


@router.get("/{platform}", summary="Webhook endpoint verification")
async def verify_webhook_endpoint(
    platform: str,
    challenge_code: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
):
    target = _platform(platform)
    if target == PlatformEnum.ebay and challenge_code:
        return _ebay_challenge(challenge_code, settings)
    return {"status": "ok"}
