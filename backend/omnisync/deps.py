"""Dependency providers and settings management."""

import logging
from functools import lru_cache
from typing import Optional
from uuid import UUID

from jose import JWTError
from fastapi import Cookie, Depends, Header, HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import SessionLocal, get_db
from .models import Tenant
from .security import TokenCipher, decode_token

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    # Public URL of this API, used to build OAuth redirect URIs
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    # OAuth callbacks redirect here with ?platform=...&status=connected|error
    FRONTEND_URL: str = "http://localhost:3000"

    # Secrets
    JWT_SECRET: str = ""
    TOKEN_ENCRYPTION_KEY: str = ""
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Redis / worker
    REDIS_URL: str = "redis://localhost:6379/0"
    WORKER_CONCURRENCY: int = 10
    JOB_TIMEOUT_SECONDS: int = 600
    SCHEDULER_ENABLED: bool = True

    # eBay
    EBAY_CLIENT_ID: Optional[str] = None
    EBAY_CLIENT_SECRET: Optional[str] = None
    EBAY_RU_NAME: Optional[str] = None
    EBAY_ENVIRONMENT: str = "production"  # production | sandbox
    EBAY_VERIFICATION_TOKEN: Optional[str] = None
    EBAY_WEBHOOK_ENDPOINT: Optional[str] = None
    EBAY_WEBHOOK_SECRET: Optional[str] = None

    # Amazon SP-API
    AMAZON_CLIENT_ID: Optional[str] = None
    AMAZON_CLIENT_SECRET: Optional[str] = None
    AMAZON_APPLICATION_ID: Optional[str] = None
    AMAZON_REGION: str = "us-east-1"
    AMAZON_WEBHOOK_SECRET: Optional[str] = None

    # Etsy
    ETSY_CLIENT_ID: Optional[str] = None
    ETSY_CLIENT_SECRET: Optional[str] = None

    # Shopify
    SHOPIFY_CLIENT_ID: Optional[str] = None
    SHOPIFY_CLIENT_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-07"
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None

    # Google Merchant Center
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None

    # WooCommerce (per-store keys live in the vault; one shared webhook secret)
    WOOCOMMERCE_WEBHOOK_SECRET: Optional[str] = None

    # Google Pub/Sub push subscriptions append ?token=... to the endpoint
    GOOGLE_WEBHOOK_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@lru_cache()
def get_token_cipher() -> TokenCipher:
    """Build the process-wide cipher once from TOKEN_ENCRYPTION_KEY."""
    return TokenCipher.from_base64(get_settings().TOKEN_ENCRYPTION_KEY)


def get_session_factory():
    """Session factory for services that open their own sessions (queue, coordinator)."""
    return SessionLocal


def get_current_tenant_id(
    authorization: Optional[str] = Header(default=None),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> UUID:
    """Resolve the tenant from a bearer header or the `access_token` cookie.

    Session issuance happens elsewhere; this only validates the signed token
    and checks that the tenant exists. The token subject is the tenant id.
    """
    raw = authorization or access_token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token = raw[len("Bearer "):] if raw.startswith("Bearer ") else raw

    try:
        payload = decode_token(token, settings.JWT_SECRET)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("tenant_id") or payload.get("sub")
    try:
        tenant_id = UUID(str(subject))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    if not db.get(Tenant, tenant_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Tenant not found")
    return tenant_id


def get_vault(
    db: Session = Depends(get_db),
    cipher: TokenCipher = Depends(get_token_cipher),
):
    from .services.credential_vault import CredentialVault

    return CredentialVault(db, cipher)


def get_adapter_factory(
    vault=Depends(get_vault),
    settings: Settings = Depends(get_settings),
):
    from .adapters.registry import AdapterFactory

    return AdapterFactory(vault, settings)


def get_job_queue(session_factory=Depends(get_session_factory)):
    """Job queue that wakes the arq worker whenever a job becomes due."""
    from .services.job_queue import JobQueue
    from .workers.arq_enqueue import notify_job_available

    return JobQueue(session_factory, notifier=notify_job_available)


def get_coordinator(request: Request):
    """The coordinator built in main.create_app (one per process)."""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync coordinator not available")
    return coordinator
