"""Webhook ingestion.

WHAT:
    Verifies an inbound platform webhook, extracts its event name, resolves
    the owning tenant from connection metadata, and enqueues a
    webhook-processing job. Processing happens later in the worker.

WHY:
    - Platforms expect a fast 2xx; anything slow belongs in the queue.
    - Verification runs over the raw body before JSON parsing. A missing
      secret or signature header is treated as an invalid signature, so a
      misconfigured deployment fails closed.
    - A delivery for a shop we cannot map to a tenant is acknowledged (the
      platform would otherwise retry forever) and logged.

VERIFICATION (per platform):
    shopify          X-Shopify-Hmac-SHA256     base64 HMAC-SHA256 of body
    ebay             X-EBAY-SIGNATURE          hex HMAC-SHA256 of body
    amazon           X-Amz-SNS-Signature       base64 HMAC-SHA256 of body
    woocommerce      X-WC-Webhook-Signature    base64 HMAC-SHA256 of body
    etsy             structural (event_type present)
    google_shopping  Pub/Sub envelope (message present), optional push token

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - https://developer.ebay.com/marketplace-account-deletion (challenge handshake)
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#webhooks
    - omnisync/services/sync_jobs.py::webhook_processing
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from omnisync.errors import SignatureError, ValidationError
from omnisync.models import PlatformEnum, QueueJobTypeEnum
from omnisync.services.credential_vault import CredentialVault
from omnisync.services.job_queue import JobQueue
from omnisync.telemetry.sentry import capture_message

logger = logging.getLogger(__name__)


# =============================================================================
# SIGNATURES
# =============================================================================

def hmac_sha256(secret: str, body: bytes, encoding: str = "base64") -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if encoding == "hex":
        return digest.hex()
    return base64.b64encode(digest).decode("utf-8")


def verify_hmac(secret: Optional[str], body: bytes, signature: Optional[str], *, encoding: str = "base64", label: str = "") -> None:
    """Constant-time HMAC check.

    Raises:
        SignatureError: secret not configured, header missing, or mismatch.
    """
    if not secret:
        logger.error("[WEBHOOK] %s webhook secret not configured", label)
        raise SignatureError(f"{label} webhook secret not configured")
    if not signature:
        raise SignatureError("Missing signature header")
    expected = hmac_sha256(secret, body, encoding)
    if not hmac.compare_digest(expected, signature.strip()):
        raise SignatureError("Invalid webhook signature")


def ebay_challenge_response(challenge_code: str, verification_token: str, endpoint: str) -> str:
    """SHA-256 hex of challengeCode + verificationToken + endpoint."""
    return hashlib.sha256(f"{challenge_code}{verification_token}{endpoint}".encode("utf-8")).hexdigest()


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _decode_pubsub_data(message: Dict[str, Any]) -> Dict[str, Any]:
    raw = message.get("data")
    if not raw:
        return {}
    try:
        decoded = json.loads(base64.b64decode(raw))
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


@dataclass
class WebhookReceipt:
    platform: PlatformEnum
    event: str
    tenant_id: Optional[UUID]
    job_id: Optional[UUID] = None

    @property
    def queued(self) -> bool:
        return self.job_id is not None


# =============================================================================
# INGESTOR
# =============================================================================

class WebhookIngestor:
    """Verify, resolve and enqueue. Never touches canonical data."""

    def __init__(self, vault: CredentialVault, queue: JobQueue, settings):
        self.vault = vault
        self.queue = queue
        self.settings = settings

    # ----- verification -----

    def verify(self, platform: PlatformEnum, headers: Mapping[str, str], body: bytes, params: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """Verify the delivery and return the parsed JSON payload.

        Raises:
            SignatureError: verification failed
            ValidationError: body is not a JSON object
        """
        headers = {k.lower(): v for k, v in headers.items()}
        params = params or {}
        s = self.settings

        if platform == PlatformEnum.shopify:
            verify_hmac(s.SHOPIFY_WEBHOOK_SECRET or s.SHOPIFY_CLIENT_SECRET, body, headers.get("x-shopify-hmac-sha256"), label="shopify")
        elif platform == PlatformEnum.ebay:
            verify_hmac(s.EBAY_WEBHOOK_SECRET, body, headers.get("x-ebay-signature"), encoding="hex", label="ebay")
        elif platform == PlatformEnum.amazon:
            verify_hmac(s.AMAZON_WEBHOOK_SECRET, body, headers.get("x-amz-sns-signature"), label="amazon")
        elif platform == PlatformEnum.woocommerce:
            verify_hmac(s.WOOCOMMERCE_WEBHOOK_SECRET, body, headers.get("x-wc-webhook-signature"), label="woocommerce")
        elif platform == PlatformEnum.google_shopping and s.GOOGLE_WEBHOOK_TOKEN:
            if not hmac.compare_digest(str(params.get("token") or ""), s.GOOGLE_WEBHOOK_TOKEN):
                raise SignatureError("Invalid push token")

        payload = self._parse(body)

        if platform == PlatformEnum.etsy and not payload.get("event_type"):
            raise SignatureError("Etsy payload is missing event_type")
        if platform == PlatformEnum.google_shopping and not isinstance(payload.get("message"), dict):
            raise SignatureError("Pub/Sub envelope is missing message")
        return payload

    @staticmethod
    def _parse(body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(body or b"{}")
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return payload

    # ----- event + tenant -----

    @staticmethod
    def event_name(platform: PlatformEnum, headers: Mapping[str, str], payload: Dict[str, Any]) -> str:
        headers = {k.lower(): v for k, v in headers.items()}
        if platform == PlatformEnum.shopify:
            event = headers.get("x-shopify-topic")
        elif platform == PlatformEnum.ebay:
            event = _dig(payload, "metadata", "topic")
        elif platform == PlatformEnum.amazon:
            event = payload.get("NotificationType") or _dig(payload, "Message", "NotificationType")
        elif platform == PlatformEnum.etsy:
            event = payload.get("event_type")
        elif platform == PlatformEnum.woocommerce:
            event = headers.get("x-wc-webhook-topic") or headers.get("x-wc-webhook-event")
        else:
            message = payload.get("message") or {}
            event = _dig(message, "attributes", "eventType") or _decode_pubsub_data(message).get("eventType")
        return str(event) if event else "unknown"

    def resolve_tenant(self, platform: PlatformEnum, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[UUID]:
        headers = {k.lower(): v for k, v in headers.items()}
        if platform == PlatformEnum.shopify:
            return self.vault.find_tenant_by_metadata(platform, "shop", headers.get("x-shopify-shop-domain"))
        if platform == PlatformEnum.ebay:
            username = _dig(payload, "notification", "data", "username")
            return self.vault.find_tenant_by_metadata(platform, "username", username)
        if platform == PlatformEnum.amazon:
            seller_id = (
                payload.get("SellerId")
                or _dig(payload, "Payload", "SellerId")
                or _dig(payload, "Payload", "OrderChangeNotification", "SellerId")
                or _dig(payload, "Payload", "AnyOfferChangedNotification", "SellerId")
            )
            return self.vault.find_tenant_by_metadata(platform, "seller_id", seller_id)
        if platform == PlatformEnum.etsy:
            return self.vault.find_tenant_by_metadata(platform, "shop_id", payload.get("shop_id") or _dig(payload, "data", "shop_id"))
        if platform == PlatformEnum.woocommerce:
            return self.vault.find_tenant_by_metadata(platform, "store_url", headers.get("x-wc-webhook-source"))

        message = payload.get("message") or {}
        merchant_id = _dig(message, "attributes", "merchantId") or _decode_pubsub_data(message).get("merchantId")
        return self.vault.find_tenant_by_metadata(platform, "merchant_id", merchant_id)

    # ----- entry point -----

    async def ingest(
        self,
        platform: PlatformEnum,
        headers: Mapping[str, str],
        body: bytes,
        params: Optional[Mapping[str, str]] = None,
    ) -> WebhookReceipt:
        """Verify and enqueue one delivery.

        Raises:
            SignatureError: before anything is enqueued or written
            ValidationError: malformed body
        """
        try:
            payload = self.verify(platform, headers, body, params)
        except SignatureError as exc:
            logger.warning("[WEBHOOK] Rejected %s delivery: %s", platform.value, exc)
            raise

        event = self.event_name(platform, headers, payload)
        tenant_id = self.resolve_tenant(platform, headers, payload)
        receipt = WebhookReceipt(platform=platform, event=event, tenant_id=tenant_id)

        if tenant_id is None:
            logger.warning("[WEBHOOK] %s %s: no connection matches this delivery, acknowledged without processing", platform.value, event)
            capture_message(
                "Webhook for unknown tenant",
                level="warning",
                extra={"platform": platform.value, "event": event},
            )
            return receipt

        result = await self.queue.enqueue(
            QueueJobTypeEnum.webhook_processing,
            {"tenant_id": str(tenant_id), "platform": platform.value, "event": event, "payload": payload},
            tenant_id=tenant_id,
        )
        receipt.job_id = result.job_id
        logger.info("[WEBHOOK] Queued %s %s for tenant %s (job %s)", platform.value, event, tenant_id, result.job_id)
        return receipt
