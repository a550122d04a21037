"""Credential vault for per-tenant platform connections.

WHAT:
    Encrypts, stores, and retrieves OAuth credentials, and owns the
    connection lifecycle (ACTIVE -> DISCONNECTED / ERROR).

WHY:
    - Plaintext tokens exist only in the PlatformCredentials returned by
      `get`, which the adapter factory hands to a single adapter instance.
    - Listing views never decrypt anything (least privilege).
    - Disconnect flips status instead of deleting, so metadata used for
      webhook tenant resolution and the audit trail survive.

REFERENCES:
    - omnisync/security.py (TokenCipher)
    - omnisync/adapters/registry.py (consumer of `get` and `rotate_tokens`)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.errors import DecryptionFailure
from omnisync.models import ConnectionStatusEnum, PlatformConnection, PlatformEnum, utcnow
from omnisync.security import TokenCipher

logger = logging.getLogger(__name__)

MASK = "***"


@dataclass
class TokenBundle:
    """Tokens returned by an OAuth exchange or refresh."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


@dataclass
class PlatformCredentials:
    """Decrypted credentials for one adapter instance. Never log or persist."""
    tenant_id: UUID
    platform: PlatformEnum
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scope: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"PlatformCredentials(platform={self.platform.value}, tenant_id={self.tenant_id})"

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= utcnow()


class CredentialVault:
    """Tenant-scoped credential store backed by `platform_connections`."""

    def __init__(self, db: Session, cipher: TokenCipher):
        self.db = db
        self.cipher = cipher

    def _find(self, tenant_id: UUID, platform: PlatformEnum) -> Optional[PlatformConnection]:
        return (
            self.db.query(PlatformConnection)
            .filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
            )
            .first()
        )

    def store(
        self,
        tenant_id: UUID,
        platform: PlatformEnum,
        tokens: TokenBundle,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PlatformConnection:
        """Upsert a connection, encrypting each token independently.

        Reconnecting an existing (tenant, platform) row replaces its tokens,
        clears any prior error, and flips it back to ACTIVE.
        """
        label = f"{platform.value}:{tenant_id}"
        access_enc = self.cipher.encrypt(tokens.access_token, context=f"{label}:access")
        refresh_enc = (
            self.cipher.encrypt(tokens.refresh_token, context=f"{label}:refresh")
            if tokens.refresh_token else None
        )

        connection = self._find(tenant_id, platform)
        if connection:
            connection.access_token_enc = access_enc
            connection.refresh_token_enc = refresh_enc
            connection.expires_at = tokens.expires_at
            connection.scope = tokens.scope
            connection.status = ConnectionStatusEnum.active
            connection.last_error = None
            if metadata is not None:
                connection.connection_metadata = {**(connection.connection_metadata or {}), **metadata}
            logger.info("[VAULT] Updated connection for %s", label)
        else:
            connection = PlatformConnection(
                tenant_id=tenant_id,
                platform=platform,
                access_token_enc=access_enc,
                refresh_token_enc=refresh_enc,
                expires_at=tokens.expires_at,
                scope=tokens.scope,
                status=ConnectionStatusEnum.active,
                connection_metadata=metadata or {},
            )
            self.db.add(connection)
            logger.info("[VAULT] Created connection for %s", label)

        self.db.commit()
        return connection

    def get(self, tenant_id: UUID, platform: PlatformEnum) -> Optional[PlatformCredentials]:
        """Decrypt credentials for an ACTIVE connection; None means not connected.

        Raises:
            DecryptionFailure: stored ciphertext is corrupt or the key rotated.
        """
        connection = self._find(tenant_id, platform)
        if not connection or connection.status != ConnectionStatusEnum.active:
            return None

        label = f"{platform.value}:{tenant_id}"
        try:
            access = self.cipher.decrypt(connection.access_token_enc, context=f"{label}:access")
            refresh = (
                self.cipher.decrypt(connection.refresh_token_enc, context=f"{label}:refresh")
                if connection.refresh_token_enc else None
            )
        except DecryptionFailure as exc:
            exc.platform = platform.value
            raise

        return PlatformCredentials(
            tenant_id=tenant_id,
            platform=platform,
            access_token=access,
            refresh_token=refresh,
            expires_at=connection.expires_at,
            scope=connection.scope,
            metadata=dict(connection.connection_metadata or {}),
        )

    def list_masked(self, tenant_id: UUID) -> List[Dict[str, Any]]:
        """Connection views with redacted tokens. Never decrypts."""
        connections = (
            self.db.query(PlatformConnection)
            .filter(PlatformConnection.tenant_id == tenant_id)
            .order_by(PlatformConnection.created_at)
            .all()
        )
        return [
            {
                "platform": c.platform,
                "status": c.status.value,
                "access_token": MASK,
                "refresh_token": MASK if c.refresh_token_enc else None,
                "expires_at": c.expires_at,
                "scope": c.scope,
                "metadata": c.connection_metadata or {},
                "last_error": c.last_error,
                "updated_at": c.updated_at,
            }
            for c in connections
        ]

    def active_platforms(self, tenant_id: UUID) -> List[PlatformEnum]:
        rows = (
            self.db.query(PlatformConnection.platform)
            .filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.status == ConnectionStatusEnum.active,
            )
            .all()
        )
        return [row[0] for row in rows]

    def rotate_tokens(self, tenant_id: UUID, platform: PlatformEnum, tokens: TokenBundle) -> None:
        """Persist refreshed tokens; keeps the old refresh token when none is returned."""
        connection = self._find(tenant_id, platform)
        if not connection:
            logger.warning("[VAULT] rotate_tokens on missing connection %s:%s", platform.value, tenant_id)
            return

        label = f"{platform.value}:{tenant_id}"
        connection.access_token_enc = self.cipher.encrypt(tokens.access_token, context=f"{label}:access")
        if tokens.refresh_token:
            connection.refresh_token_enc = self.cipher.encrypt(tokens.refresh_token, context=f"{label}:refresh")
        connection.expires_at = tokens.expires_at
        if tokens.scope:
            connection.scope = tokens.scope
        connection.last_error = None
        self.db.commit()
        logger.info("[VAULT] Rotated tokens for %s", label)

    def disconnect(self, tenant_id: UUID, platform: PlatformEnum) -> bool:
        connection = self._find(tenant_id, platform)
        if not connection:
            return False
        connection.status = ConnectionStatusEnum.disconnected
        self.db.commit()
        logger.info("[VAULT] Disconnected %s:%s", platform.value, tenant_id)
        return True

    def mark_error(self, tenant_id: UUID, platform: PlatformEnum, reason: str) -> None:
        connection = self._find(tenant_id, platform)
        if not connection:
            return
        connection.status = ConnectionStatusEnum.error
        connection.last_error = reason[:1000]
        self.db.commit()
        logger.warning("[VAULT] Connection %s:%s marked ERROR: %s", platform.value, tenant_id, reason)

    def find_tenant_by_metadata(self, platform: PlatformEnum, key: str, value: Any) -> Optional[UUID]:
        """Resolve the owning tenant from a platform identifier stored in metadata.

        Used by the webhook ingestor (shop domain, merchant id, store url...).
        Disconnected connections are ignored.
        """
        if value is None or value == "":
            return None
        connections = (
            self.db.query(PlatformConnection)
            .filter(
                PlatformConnection.platform == platform,
                PlatformConnection.status != ConnectionStatusEnum.disconnected,
            )
            .all()
        )
        wanted = str(value).strip().lower().rstrip("/")
        for connection in connections:
            stored = (connection.connection_metadata or {}).get(key)
            if stored is not None and str(stored).strip().lower().rstrip("/") == wanted:
                return connection.tenant_id
        return None
