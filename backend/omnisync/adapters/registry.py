"""Adapter registry and factory.

WHAT:
    Maps each PlatformEnum to its adapter class and builds adapter instances
    from vault credentials.
WHY:
    Engines ask for "the eBay adapter for tenant X" and get either a ready
    adapter or None (not connected). Token rotation performed inside an
    adapter flows back to the vault through the `on_refresh` callback.
REFERENCES:
    - omnisync/adapters/base.py
    - omnisync/services/credential_vault.py
"""

import logging
from typing import Dict, Optional, Type
from uuid import UUID

import httpx

from omnisync.adapters.amazon import AmazonAdapter
from omnisync.adapters.base import PlatformAdapter
from omnisync.adapters.ebay import EbayAdapter
from omnisync.adapters.etsy import EtsyAdapter
from omnisync.adapters.google_shopping import GoogleShoppingAdapter
from omnisync.adapters.shopify import ShopifyAdapter
from omnisync.adapters.woocommerce import WooCommerceAdapter
from omnisync.models import PlatformEnum
from omnisync.services.credential_vault import CredentialVault, TokenBundle

logger = logging.getLogger(__name__)

ADAPTERS: Dict[PlatformEnum, Type[PlatformAdapter]] = {
    PlatformEnum.ebay: EbayAdapter,
    PlatformEnum.amazon: AmazonAdapter,
    PlatformEnum.etsy: EtsyAdapter,
    PlatformEnum.shopify: ShopifyAdapter,
    PlatformEnum.woocommerce: WooCommerceAdapter,
    PlatformEnum.google_shopping: GoogleShoppingAdapter,
}


def adapter_class(platform: PlatformEnum) -> Type[PlatformAdapter]:
    try:
        return ADAPTERS[platform]
    except KeyError:
        raise ValueError(f"No adapter registered for platform {platform!r}")


class AdapterFactory:
    """Builds per-tenant adapters from decrypted vault credentials."""

    def __init__(self, vault: CredentialVault, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.vault = vault
        self.settings = settings
        self.transport = transport

    def get(self, tenant_id: UUID, platform: PlatformEnum) -> Optional[PlatformAdapter]:
        """Adapter for an ACTIVE connection, or None when not connected.

        Raises:
            DecryptionFailure: stored credentials cannot be read.
        """
        credentials = self.vault.get(tenant_id, platform)
        if credentials is None:
            return None

        def persist_rotation(bundle: TokenBundle) -> None:
            self.vault.rotate_tokens(tenant_id, platform, bundle)

        return adapter_class(platform)(
            credentials,
            self.settings,
            on_refresh=persist_rotation,
            transport=self.transport,
        )

    def mark_error(self, tenant_id: UUID, platform: PlatformEnum, reason: str) -> None:
        self.vault.mark_error(tenant_id, platform, reason)
