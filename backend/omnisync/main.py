"""FastAPI application entrypoint.

Configures CORS, includes routers, exposes a healthcheck endpoint, and builds
the sync coordinator behind the trigger and status endpoints. Scheduled syncs
run as arq cron jobs in the worker, not in this process.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .database import SessionLocal
from .deps import get_settings
from .routers import inventory as inventory_router
from .routers import oauth as oauth_router
from .routers import orders as orders_router
from .routers import platforms as platforms_router
from .routers import products as products_router
from .routers import sync as sync_router
from .routers import webhooks as webhooks_router
from .services.job_queue import JobQueue
from .services.sync_coordinator import SyncCoordinator
from .telemetry import init_observability
from .workers.arq_enqueue import notify_job_available, reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def build_coordinator(session_factory=SessionLocal) -> SyncCoordinator:
    """One coordinator per process, wired to the queue that wakes arq workers."""
    queue = JobQueue(session_factory, notifier=notify_job_available)
    return SyncCoordinator(session_factory, queue)


def create_app(coordinator: SyncCoordinator = None) -> FastAPI:
    """Build the API.

    Tests pass their own coordinator (bound to a test session factory);
    production builds one from SessionLocal.
    """
    settings = get_settings()
    init_observability()

    app = FastAPI(
        title="omnisync API",
        description="""
        Multi-platform commerce sync: one canonical catalog, inventory and
        order store kept in step with eBay, Amazon, Etsy, Shopify,
        WooCommerce and Google Shopping.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer so OAuth redirect URIs are https
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(platforms_router.router)
    app.include_router(oauth_router.router)
    app.include_router(products_router.router)
    app.include_router(orders_router.router)
    app.include_router(inventory_router.router)
    app.include_router(sync_router.router)
    app.include_router(webhooks_router.router)

    app.state.coordinator = coordinator or build_coordinator()

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("shutdown")
    async def shutdown_event():
        await reset_arq_pool()

    return app


app = create_app()
