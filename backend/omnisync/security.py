"""Security utilities: credential encryption, JWTs, OAuth state and PKCE.

WHAT:
    - TokenCipher: AES-256-GCM encryption for platform tokens at rest.
    - JWT helpers for the tenant session token and the signed OAuth state.
    - PKCE verifier/challenge helpers (Etsy).

WHY:
    - Tokens must never land in the database as plaintext.
    - OAuth CSRF state and the PKCE verifier travel inside a short-lived signed
      JWT instead of query parameters or server-side session storage.
    - The cipher is an explicit object built once from settings and injected,
      so tests can construct their own with a throwaway key.

REFERENCES:
    - https://cryptography.io/en/latest/hazmat/primitives/aead/
    - https://datatracker.ietf.org/doc/html/rfc7636 (PKCE)
    - omnisync/services/credential_vault.py (only consumer of TokenCipher)
"""

import base64
import binascii
import hashlib
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jose import jwt, JWTError

from .errors import DecryptionFailure


ALGORITHM = "HS256"
NONCE_BYTES = 12
TAG_BYTES = 16
OAUTH_STATE_PURPOSE = "oauth_state"

logger = logging.getLogger(__name__)


# =============================================================================
# TOKEN ENCRYPTION
# =============================================================================

class TokenCipher:
    """Authenticated symmetric encryption for stored credentials.

    Stored format: base64(nonce[12] || ciphertext || tag[16]).
    A fresh random nonce is drawn for every call to `encrypt`.

    Rotating the key invalidates every previously stored ciphertext; there is
    no re-encryption path.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("TokenCipher requires a 32-byte key (AES-256).")
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded_key: str) -> "TokenCipher":
        """Build a cipher from the base64 TOKEN_ENCRYPTION_KEY setting."""
        if not encoded_key:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate one with backend/generate_keys.py "
                "and export it or add it to backend/.env."
            )
        try:
            key = base64.b64decode(encoded_key.encode("utf-8"), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY must be base64-encoded.") from exc
        try:
            return cls(key)
        except ValueError as exc:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY must decode to exactly 32 bytes.") from exc

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("utf-8")

    def encrypt(self, plaintext: str, *, context: str = "") -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return base64.b64encode(nonce + sealed).decode("utf-8")

    def decrypt(self, ciphertext: str, *, context: str = "") -> str:
        """Reverse `encrypt`.

        Raises:
            DecryptionFailure: on malformed input or authentication tag
                mismatch. Never returns partial plaintext.
        """
        if not ciphertext:
            raise DecryptionFailure("Cannot decrypt empty secret.")
        try:
            raw = base64.b64decode(ciphertext.encode("utf-8"), validate=True)
        except (binascii.Error, ValueError) as exc:
            logger.error("[TOKEN_DECRYPT] Malformed ciphertext for %s", context)
            raise DecryptionFailure("Stored token is not valid base64.") from exc

        if len(raw) < NONCE_BYTES + TAG_BYTES:
            logger.error("[TOKEN_DECRYPT] Truncated ciphertext for %s", context)
            raise DecryptionFailure("Stored token is truncated.")

        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            logger.error("[TOKEN_DECRYPT] Authentication failed for %s", context)
            raise DecryptionFailure("Unable to decrypt stored token.") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailure("Decrypted token is not valid UTF-8.") from exc


# =============================================================================
# JWT (tenant session + OAuth state)
# =============================================================================

def create_access_token(subject: str, secret: str, expires_minutes: int = 10080) -> str:
    """Create a signed JWT whose subject is the tenant id."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


def create_oauth_state(
    *,
    tenant_id: str,
    platform: str,
    secret: str,
    ttl_seconds: int = 600,
    code_verifier: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Sign the OAuth round-trip state.

    The CSRF nonce and (for PKCE platforms) the code verifier ride inside the
    token, so the callback can validate without server-side storage.
    """
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "purpose": OAUTH_STATE_PURPOSE,
        "tenant_id": tenant_id,
        "platform": platform,
        "csrf": secrets.token_urlsafe(16),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    if code_verifier:
        claims["code_verifier"] = code_verifier
    if extra:
        claims["extra"] = extra
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def verify_oauth_state(state: str, *, platform: str, secret: str) -> Dict[str, Any]:
    """Validate a state token for the given platform.

    Raises:
        ValueError: if the token is expired, tampered, or minted for another
            platform or purpose.
    """
    try:
        claims = jwt.decode(state, secret, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired OAuth state") from exc

    if claims.get("purpose") != OAUTH_STATE_PURPOSE:
        raise ValueError("State token has wrong purpose")
    if claims.get("platform") != platform:
        raise ValueError("State token was issued for a different platform")
    if not claims.get("tenant_id") or not claims.get("csrf"):
        raise ValueError("State token is missing required claims")
    return claims


# =============================================================================
# PKCE
# =============================================================================

def generate_code_verifier() -> str:
    """43-128 char URL-safe verifier (RFC 7636 section 4.1)."""
    return secrets.token_urlsafe(64)[:128]


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
