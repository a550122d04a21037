"""Pytest configuration for omnisync tests

WHAT: Shared fixtures: a throwaway SQLite store per test, cipher, vault,
      settings, a queue without Redis wake-ups, and a FastAPI TestClient.
WHY: Every queue, coordinator and handler call opens its own session from a
     session factory, so tests use a file-backed SQLite database (tmp_path)
     that all sessions can see.
REFERENCES:
    - omnisync/main.py: create_app
    - omnisync/deps.py: dependency providers overridden here
"""

import os
from typing import Any, Dict, Generator, Tuple

import httpx
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Set test environment before any omnisync import reads it
TEST_ENCRYPTION_KEY = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ["SCHEDULER_ENABLED"] = "false"

SHOP_DOMAIN = "acme.myshopify.com"
WOO_STORE_URL = "https://woo.example.com"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file."""
    from omnisync.models import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'omnisync_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings / Crypto Fixtures
# ============================================================================

@pytest.fixture
def settings():
    from omnisync.deps import Settings

    return Settings(
        JWT_SECRET="test-jwt-secret",
        TOKEN_ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        PUBLIC_BASE_URL="https://api.example.com",
        FRONTEND_URL="https://app.example.com",
        SCHEDULER_ENABLED=False,
        SHOPIFY_CLIENT_ID="shopify-client",
        SHOPIFY_CLIENT_SECRET="shopify-secret",
        SHOPIFY_WEBHOOK_SECRET="shopify-webhook-secret",
        ETSY_CLIENT_ID="etsy-keystring",
        EBAY_VERIFICATION_TOKEN="ebay-verification-token-0123456789",
        EBAY_WEBHOOK_ENDPOINT="https://api.example.com/webhooks/ebay",
        EBAY_WEBHOOK_SECRET="ebay-webhook-secret",
        WOOCOMMERCE_WEBHOOK_SECRET="woo-webhook-secret",
    )


@pytest.fixture
def cipher():
    from omnisync.security import TokenCipher

    return TokenCipher.from_base64(TEST_ENCRYPTION_KEY)


@pytest.fixture
def vault(db, cipher):
    from omnisync.services.credential_vault import CredentialVault

    return CredentialVault(db, cipher)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def tenant(db):
    from omnisync.models import Tenant

    row = Tenant(name="Acme Goods")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@pytest.fixture
def other_tenant(db):
    """Second tenant (for isolation tests)."""
    from omnisync.models import Tenant

    row = Tenant(name="Other Goods")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@pytest.fixture
def make_product(db, tenant):
    """Factory for canonical products owned by `tenant`."""
    from decimal import Decimal

    from omnisync.models import Product, ProductStatusEnum

    def _make(sku="TOTE-001", quantity=10, status=ProductStatusEnum.active, **fields):
        product = Product(
            tenant_id=fields.pop("tenant_id", tenant.id),
            sku=sku,
            title=fields.pop("title", f"Product {sku}"),
            price=fields.pop("price", Decimal("24.00")),
            quantity=quantity,
            status=status,
            **fields,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def shopify_connection(vault, tenant):
    from omnisync.models import PlatformEnum
    from omnisync.services.credential_vault import TokenBundle

    return vault.store(
        tenant.id,
        PlatformEnum.shopify,
        TokenBundle(access_token="shpat_live_token"),
        {"shop": SHOP_DOMAIN, "location_id": 9001},
    )


@pytest.fixture
def woo_connection(vault, tenant):
    from omnisync.models import PlatformEnum
    from omnisync.services.credential_vault import TokenBundle

    return vault.store(
        tenant.id,
        PlatformEnum.woocommerce,
        TokenBundle(access_token="ck_test", refresh_token="cs_test"),
        {"store_url": WOO_STORE_URL},
    )


# ============================================================================
# Queue / Coordinator Fixtures
# ============================================================================

@pytest.fixture
def queue(session_factory):
    """Queue with no wake-up notifier (no Redis in tests)."""
    from omnisync.services.job_queue import JobQueue

    return JobQueue(session_factory)


@pytest.fixture
def coordinator(session_factory, queue):
    from omnisync.services.sync_coordinator import SyncCoordinator

    return SyncCoordinator(session_factory, queue)


# ============================================================================
# HTTP Mocking
# ============================================================================

class PlatformRoutes:
    """Routes (method, host, path) to canned responses for httpx.MockTransport.

    Each route holds (status_code, json_body) pairs consumed in order; the
    last one repeats. Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[tuple, object] = {}
        self.requests = []

    def add(self, method: str, url: str, *responses: Tuple[int, Any]):
        parsed = httpx.URL(url)
        self.routes[(method.upper(), parsed.host, parsed.path)] = list(responses)

    def json(self, method: str, url: str, payload, status_code: int = 200):
        self.add(method, url, (status_code, payload))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.host, request.url.path)
        responses = self.routes.get(key)
        if not responses:
            return httpx.Response(404, json={"error": f"no route for {key}"})
        status_code, payload = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(status_code, json=payload)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def platform_routes():
    return PlatformRoutes()


@pytest.fixture
def adapter_factory(vault, settings, platform_routes):
    from omnisync.adapters.registry import AdapterFactory

    return AdapterFactory(vault, settings, transport=platform_routes.transport())


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory, settings, cipher, queue, coordinator, tenant, platform_routes):
    """FastAPI app wired to the test store; the caller is always `tenant`."""
    from omnisync.adapters.registry import AdapterFactory
    from omnisync.database import get_db
    from omnisync.deps import (
        get_adapter_factory,
        get_current_tenant_id,
        get_job_queue,
        get_session_factory,
        get_settings,
        get_token_cipher,
        get_vault,
    )
    from omnisync.main import create_app
    from omnisync.routers.platforms import get_connection_service
    from omnisync.services.connection_service import ConnectionService

    test_app = create_app(coordinator=coordinator)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_adapter_factory(vault=Depends(get_vault)):
        return AdapterFactory(vault, settings, transport=platform_routes.transport())

    def override_connection_service(vault=Depends(get_vault)):
        return ConnectionService(vault, settings, transport=platform_routes.transport())

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_token_cipher] = lambda: cipher
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory
    test_app.dependency_overrides[get_job_queue] = lambda: queue
    test_app.dependency_overrides[get_current_tenant_id] = lambda: tenant.id
    test_app.dependency_overrides[get_adapter_factory] = override_adapter_factory
    test_app.dependency_overrides[get_connection_service] = override_connection_service
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
