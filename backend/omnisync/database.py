"""Database engine and session configuration.

WHAT:
    Creates the SQLAlchemy engine for the canonical store and exposes the
    session factory, the FastAPI dependency, and a context manager for workers.

WHY:
    - API routers, arq jobs and the sync coordinator all share one engine.
    - Sync engines are async (network bound) but persist through plain sync
      sessions, so a single sync engine is all the store needs.

ARCHITECTURE:
    ┌──────────────────┐
    │  engine          │  (postgresql / sqlite for tests)
    └────────┬─────────┘
             │
    ┌────────▼─────────┐
    │  SessionLocal    │
    └────────┬─────────┘
             │
    ┌────────▼─────────┐      ┌────────────────────┐
    │  get_db()        │      │ get_sync_session() │
    │  (routers)       │      │ (workers, cron)    │
    └──────────────────┘      └────────────────────┘

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - omnisync/routers/ (consumers of get_db)
    - omnisync/workers/arq_worker.py (consumer of get_sync_session)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from omnisync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# SQLite engines (tests, local dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base lives in omnisync.models so there is a single metadata registry
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Example:
        @router.get("/products")
        def list_products(db: Session = Depends(get_db)):
            return db.query(Product).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGER (workers, coordinator, scripts)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Example:
        with get_sync_session() as db:
            connections = db.query(PlatformConnection).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
