"""Platform connection flows (OAuth connect/callback, key-based connect).

WHAT:
    - begin_oauth: signed state (+ PKCE verifier where required) and the
      platform consent URL
    - complete_oauth: verify state, exchange the code through the adapter's
      own token endpoint, discover platform identifiers, store via the vault
    - connect_woocommerce: verify REST keys against the store, then store
    - disconnect

WHY:
    State is a short-lived signed token carrying the tenant, a CSRF nonce and
    the PKCE verifier, so the callback needs no server-side session storage.
    Discovered identifiers (shop domain, shop id, merchant id, seller id) are
    what the webhook ingestor later uses to resolve tenants.

REFERENCES:
    - omnisync/security.py (create_oauth_state, PKCE helpers)
    - omnisync/adapters/*.py (authorization_url, exchange_code, discover_metadata)
    - omnisync/routers/platforms.py, omnisync/routers/oauth.py
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

from omnisync.adapters.registry import adapter_class
from omnisync.adapters.shopify import normalize_shop_domain
from omnisync.adapters.woocommerce import WooCommerceAdapter
from omnisync.errors import ConfigurationError, ValidationError
from omnisync.models import PlatformEnum
from omnisync.security import (
    code_challenge_s256,
    create_oauth_state,
    generate_code_verifier,
    verify_oauth_state,
)
from omnisync.services.credential_vault import CredentialVault, PlatformCredentials, TokenBundle

logger = logging.getLogger(__name__)

CLIENT_ID_SETTINGS = {
    PlatformEnum.ebay: "EBAY_CLIENT_ID",
    PlatformEnum.amazon: "AMAZON_CLIENT_ID",
    PlatformEnum.etsy: "ETSY_CLIENT_ID",
    PlatformEnum.shopify: "SHOPIFY_CLIENT_ID",
    PlatformEnum.google_shopping: "GOOGLE_CLIENT_ID",
}


def redirect_uri_for(settings, platform: PlatformEnum) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/oauth/{platform.value}/callback"


class ConnectionService:

    def __init__(self, vault: CredentialVault, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.vault = vault
        self.settings = settings
        self.transport = transport

    def _require_app_credentials(self, platform: PlatformEnum) -> None:
        setting = CLIENT_ID_SETTINGS.get(platform)
        if setting is None:
            raise ValidationError(f"{platform.value} does not connect through OAuth")
        if not getattr(self.settings, setting, None):
            raise ConfigurationError(f"{platform.value} integration is not configured ({setting} missing)")

    # =========================================================================
    # OAUTH
    # =========================================================================

    def begin_oauth(
        self,
        tenant_id: UUID,
        platform: PlatformEnum,
        *,
        shop_domain: Optional[str] = None,
        merchant_id: Optional[str] = None,
    ) -> str:
        """Return the consent URL for `platform`.

        Raises:
            ValidationError: bad shop domain or a key-based platform
            ConfigurationError: app credentials missing
        """
        self._require_app_credentials(platform)
        cls = adapter_class(platform)

        extra: Dict[str, Any] = {}
        if platform == PlatformEnum.shopify:
            try:
                extra["shop"] = normalize_shop_domain(shop_domain or "")
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        if merchant_id:
            extra["merchant_id"] = merchant_id

        verifier = generate_code_verifier() if cls.uses_pkce else None
        state = create_oauth_state(
            tenant_id=str(tenant_id),
            platform=platform.value,
            secret=self.settings.JWT_SECRET,
            ttl_seconds=self.settings.OAUTH_STATE_TTL_SECONDS,
            code_verifier=verifier,
            extra=extra or None,
        )
        url = cls.authorization_url(
            self.settings,
            state=state,
            redirect_uri=redirect_uri_for(self.settings, platform),
            code_challenge=code_challenge_s256(verifier) if verifier else None,
            shop_domain=extra.get("shop"),
        )
        logger.info("[CONNECT] Issued %s consent URL for tenant %s", platform.value, tenant_id)
        return url

    async def complete_oauth(
        self,
        platform: PlatformEnum,
        *,
        code: str,
        state: str,
        shop: Optional[str] = None,
        selling_partner_id: Optional[str] = None,
    ) -> UUID:
        """Finish the OAuth round trip and persist the connection.

        Raises:
            ValidationError: invalid/expired state or shop mismatch
            AdapterError / CredentialError: token exchange or discovery failed
        """
        self._require_app_credentials(platform)
        try:
            claims = verify_oauth_state(state, platform=platform.value, secret=self.settings.JWT_SECRET)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        tenant_id = UUID(claims["tenant_id"])
        extra = claims.get("extra") or {}
        metadata: Dict[str, Any] = dict(extra)

        if platform == PlatformEnum.shopify:
            try:
                returned_shop = normalize_shop_domain(shop or extra.get("shop", ""))
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if returned_shop != extra.get("shop"):
                logger.error("[CONNECT] Shop mismatch: expected %s, got %s", extra.get("shop"), returned_shop)
                raise ValidationError("Shop domain does not match the authorization request")
        if platform == PlatformEnum.amazon:
            if selling_partner_id:
                metadata["seller_id"] = selling_partner_id
            metadata.setdefault("region", self.settings.AMAZON_REGION)

        cls = adapter_class(platform)
        tokens = await cls.exchange_code(
            self.settings,
            code=code,
            redirect_uri=redirect_uri_for(self.settings, platform),
            code_verifier=claims.get("code_verifier"),
            shop_domain=extra.get("shop"),
            transport=self.transport,
        )

        adapter = cls(self._credentials(tenant_id, platform, tokens, metadata), self.settings, transport=self.transport)
        discovered = await adapter.discover_metadata()
        for key, value in discovered.items():
            if value is not None and key not in metadata:
                metadata[key] = value

        self.vault.store(tenant_id, platform, tokens, metadata)
        logger.info("[CONNECT] %s connected for tenant %s (metadata keys: %s)", platform.value, tenant_id, sorted(metadata))
        return tenant_id

    @staticmethod
    def _credentials(tenant_id: UUID, platform: PlatformEnum, tokens: TokenBundle, metadata: Dict[str, Any]) -> PlatformCredentials:
        return PlatformCredentials(
            tenant_id=tenant_id,
            platform=platform,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            scope=tokens.scope,
            metadata=metadata,
        )

    # =========================================================================
    # KEY-BASED (WooCommerce)
    # =========================================================================

    async def connect_woocommerce(self, tenant_id: UUID, store_url: str, consumer_key: str, consumer_secret: str) -> Dict[str, Any]:
        """Verify REST API keys against the store, then store them.

        The consumer key/secret pair is kept in the access/refresh token slots.
        """
        if not store_url or not consumer_key or not consumer_secret:
            raise ValidationError("storeUrl, consumerKey and consumerSecret are required")
        store_url = store_url.strip().rstrip("/")
        if not store_url.startswith(("https://", "http://")):
            raise ValidationError("storeUrl must be an http(s) URL")

        tokens = TokenBundle(access_token=consumer_key, refresh_token=consumer_secret)
        adapter = WooCommerceAdapter(
            self._credentials(tenant_id, PlatformEnum.woocommerce, tokens, {"store_url": store_url}),
            self.settings,
            transport=self.transport,
        )
        metadata = await adapter.verify()
        self.vault.store(tenant_id, PlatformEnum.woocommerce, tokens, {**metadata, "store_url": store_url})
        logger.info("[CONNECT] woocommerce connected for tenant %s (%s)", tenant_id, store_url)
        return metadata

    def disconnect(self, tenant_id: UUID, platform: PlatformEnum) -> bool:
        return self.vault.disconnect(tenant_id, platform)
