"""Tests for webhook ingestion.

WHAT: Signature verification per platform, event and tenant resolution, and
      the /webhooks endpoints including the eBay challenge handshake.
WHY: A delivery that fails verification must be answered 401 with nothing
     enqueued; a verified delivery must reach the queue and nothing else.
"""

import asyncio
import base64
import hashlib
import json

import pytest

from omnisync.errors import SignatureError, ValidationError
from omnisync.models import PlatformEnum, QueueJobTypeEnum
from omnisync.services.credential_vault import TokenBundle
from omnisync.services.webhook_service import WebhookIngestor, ebay_challenge_response, hmac_sha256

SHOPIFY_SECRET = "shopify-webhook-secret"


@pytest.fixture
def ingestor(vault, queue, settings):
    return WebhookIngestor(vault, queue, settings)


def _shopify_headers(body: bytes, secret: str = SHOPIFY_SECRET, shop: str = "acme.myshopify.com"):
    return {
        "X-Shopify-Hmac-SHA256": hmac_sha256(secret, body),
        "X-Shopify-Topic": "orders/create",
        "X-Shopify-Shop-Domain": shop,
        "Content-Type": "application/json",
    }


# ============================================================================
# Signatures
# ============================================================================

def test_hmac_encodings():
    hex_sig = hmac_sha256("k", b"body", encoding="hex")
    assert base64.b64decode(hmac_sha256("k", b"body")).hex() == hex_sig


def test_ebay_challenge_response_is_sha256_of_concatenation():
    assert ebay_challenge_response("abc", "token", "https://x/webhooks/ebay") == hashlib.sha256(
        b"abctokenhttps://x/webhooks/ebay"
    ).hexdigest()


def test_shopify_signature_verified(ingestor):
    body = b'{"id": 1}'
    assert ingestor.verify(PlatformEnum.shopify, _shopify_headers(body), body) == {"id": 1}


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"X-Shopify-Hmac-SHA256": "bm90LXRoZS1zaWduYXR1cmU="},
        {"X-Shopify-Hmac-SHA256": hmac_sha256("wrong-secret", b'{"id": 1}')},
    ],
)
def test_shopify_bad_signature_rejected(ingestor, headers):
    with pytest.raises(SignatureError):
        ingestor.verify(PlatformEnum.shopify, headers, b'{"id": 1}')


def test_missing_secret_fails_closed(vault, queue, settings):
    unconfigured = settings.model_copy(update={"AMAZON_WEBHOOK_SECRET": None})
    body = b'{"NotificationType": "ORDER_CHANGE"}'
    with pytest.raises(SignatureError):
        WebhookIngestor(vault, queue, unconfigured).verify(
            PlatformEnum.amazon, {"X-Amz-SNS-Signature": hmac_sha256("anything", body)}, body,
        )


def test_ebay_signature_is_hex(ingestor):
    body = b'{"metadata": {"topic": "ITEM_SOLD"}}'
    headers = {"X-EBAY-SIGNATURE": hmac_sha256("ebay-webhook-secret", body, encoding="hex")}
    assert ingestor.verify(PlatformEnum.ebay, headers, body)["metadata"]["topic"] == "ITEM_SOLD"


def test_etsy_payload_must_carry_event_type(ingestor):
    assert ingestor.verify(PlatformEnum.etsy, {}, b'{"event_type": "ORDER_PAID", "shop_id": 5}')["shop_id"] == 5
    with pytest.raises(SignatureError):
        ingestor.verify(PlatformEnum.etsy, {}, b'{"shop_id": 5}')


def test_google_pubsub_envelope_required(ingestor):
    with pytest.raises(SignatureError):
        ingestor.verify(PlatformEnum.google_shopping, {}, b'{"subscription": "x"}')


def test_non_object_body_is_invalid(ingestor):
    body = b"[1, 2]"
    with pytest.raises(ValidationError):
        ingestor.verify(PlatformEnum.shopify, _shopify_headers(body), body)


# ============================================================================
# Event name / tenant resolution
# ============================================================================

def test_event_names():
    assert WebhookIngestor.event_name(PlatformEnum.shopify, {"X-Shopify-Topic": "orders/paid"}, {}) == "orders/paid"
    assert WebhookIngestor.event_name(PlatformEnum.etsy, {}, {"event_type": "ORDER_PAID"}) == "ORDER_PAID"
    assert WebhookIngestor.event_name(PlatformEnum.woocommerce, {"X-WC-Webhook-Topic": "order.created"}, {}) == "order.created"
    assert WebhookIngestor.event_name(PlatformEnum.ebay, {}, {}) == "unknown"

    data = base64.b64encode(json.dumps({"eventType": "PRODUCT_STATUS_CHANGE"}).encode()).decode()
    assert WebhookIngestor.event_name(PlatformEnum.google_shopping, {}, {"message": {"data": data}}) == "PRODUCT_STATUS_CHANGE"


def test_resolve_tenant_from_connection_metadata(ingestor, vault, tenant, shopify_connection):
    vault.store(tenant.id, PlatformEnum.ebay, TokenBundle(access_token="a", refresh_token="r"), {"username": "acme_seller"})

    assert ingestor.resolve_tenant(PlatformEnum.shopify, {"X-Shopify-Shop-Domain": "ACME.myshopify.com"}, {}) == tenant.id
    ebay_payload = {"notification": {"data": {"username": "acme_seller"}}}
    assert ingestor.resolve_tenant(PlatformEnum.ebay, {}, ebay_payload) == tenant.id
    assert ingestor.resolve_tenant(PlatformEnum.amazon, {}, {"SellerId": "A1"}) is None


def test_ingest_enqueues_verified_delivery(ingestor, queue, tenant, shopify_connection):
    body = b'{"id": 4242, "total_price": "10.00"}'

    receipt = asyncio.run(ingestor.ingest(PlatformEnum.shopify, _shopify_headers(body), body))

    assert receipt.queued is True
    assert receipt.tenant_id == tenant.id
    job = queue.claim_next()
    assert job.job_type == QueueJobTypeEnum.webhook_processing
    assert job.payload == {
        "tenant_id": str(tenant.id),
        "platform": "shopify",
        "event": "orders/create",
        "payload": {"id": 4242, "total_price": "10.00"},
    }


def test_ingest_unknown_shop_is_acknowledged_not_queued(ingestor, queue, shopify_connection):
    body = b'{"id": 1}'
    receipt = asyncio.run(ingestor.ingest(PlatformEnum.shopify, _shopify_headers(body, shop="stranger.myshopify.com"), body))
    assert receipt.queued is False
    assert queue.counts()["pending"] == 0


# ============================================================================
# Router
# ============================================================================

def test_post_with_bad_signature_is_401(client, queue, shopify_connection):
    body = b'{"id": 1}'
    response = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body, secret="forged"))

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid signature"
    assert queue.counts()["pending"] == 0


def test_post_verified_delivery_is_queued(client, queue, shopify_connection):
    body = b'{"id": 99}'
    response = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body))

    assert response.status_code == 200
    assert response.json() == {"success": True, "queued": True}
    assert queue.counts()["pending"] == 1


def test_post_for_unknown_shop_is_200_not_queued(client, queue):
    body = b'{"id": 99}'
    response = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body))

    assert response.status_code == 200
    assert response.json()["queued"] is False


def test_unsupported_platform_is_400(client):
    assert client.post("/webhooks/myspace", content=b"{}").status_code == 400


def test_malformed_json_is_400(client):
    body = b"not json"
    response = client.post("/webhooks/shopify", content=body, headers=_shopify_headers(body))
    assert response.status_code == 400


def test_ebay_challenge_get(client, settings):
    response = client.get("/webhooks/ebay", params={"challenge_code": "code-123"})

    assert response.status_code == 200
    assert response.json() == {
        "challengeResponse": ebay_challenge_response(
            "code-123", settings.EBAY_VERIFICATION_TOKEN, settings.EBAY_WEBHOOK_ENDPOINT
        )
    }


def test_ebay_challenge_post_skips_signature(client, settings):
    response = client.post("/webhooks/ebay", json={"challenge_code": "code-456"})

    assert response.status_code == 200
    assert response.json()["challengeResponse"] == ebay_challenge_response(
        "code-456", settings.EBAY_VERIFICATION_TOKEN, settings.EBAY_WEBHOOK_ENDPOINT
    )


def test_get_for_other_platforms_is_ok(client):
    assert client.get("/webhooks/shopify").json() == {"status": "ok"}
