"""OAuth callback endpoint shared by every OAuth platform.

WHAT:
    GET /oauth/{platform}/callback finishes the connect flow started by
    POST /platforms/connect and redirects back to the frontend.
WHY:
    The callback is hit by the browser, not by our frontend code, so errors
    are reported through the redirect query string rather than a JSON body.
REFERENCES:
    - omnisync/services/connection_service.py::complete_oauth
    - Amazon returns `spapi_oauth_code` and `selling_partner_id` instead of `code`
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from ..deps import Settings, get_settings
from ..errors import AdapterError, ConfigurationError, CredentialError, ValidationError
from ..models import PlatformEnum
from ..services.connection_service import ConnectionService
from .platforms import get_connection_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["OAuth"])


def _redirect(settings: Settings, platform: str, outcome: str, message: Optional[str] = None) -> RedirectResponse:
    params = {"platform": platform, "status": outcome}
    if message:
        params["message"] = message
    return RedirectResponse(url=f"{settings.FRONTEND_URL.rstrip('/')}/settings/platforms?{urlencode(params)}")


@router.get("/{platform}/callback", summary="OAuth redirect target")
async def oauth_callback(
    platform: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    spapi_oauth_code: Optional[str] = Query(None),
    selling_partner_id: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    service: ConnectionService = Depends(get_connection_service),
):
    try:
        target = PlatformEnum(platform.lower())
    except ValueError:
        return _redirect(settings, platform, "error", "unsupported_platform")

    if error:
        logger.error("[OAUTH] %s returned error: %s", target.value, error)
        return _redirect(settings, target.value, "error", error)

    auth_code = code or spapi_oauth_code
    if not auth_code or not state:
        logger.error("[OAUTH] %s callback missing code or state", target.value)
        return _redirect(settings, target.value, "error", "missing_code")

    try:
        await service.complete_oauth(
            target,
            code=auth_code,
            state=state,
            shop=shop,
            selling_partner_id=selling_partner_id,
        )
    except ValidationError as e:
        logger.error("[OAUTH] %s callback rejected: %s", target.value, e)
        return _redirect(settings, target.value, "error", "invalid_state")
    except ConfigurationError as e:
        logger.error("[OAUTH] %s", e)
        return _redirect(settings, target.value, "error", "not_configured")
    except (AdapterError, CredentialError) as e:
        logger.error("[OAUTH] %s token exchange failed: %s", target.value, e)
        return _redirect(settings, target.value, "error", "token_exchange_failed")

    return _redirect(settings, target.value, "connected")
