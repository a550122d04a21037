"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the arq worker.

Related files:
- omnisync/main.py: Initializes Sentry on app startup
- omnisync/workers/arq_worker.py: Initializes Sentry on worker startup, captures scheduled duty failures
- omnisync/services/job_queue.py: Captures job failures and dead letters
- omnisync/adapters/base.py: Captures unmapped platform statuses

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_SENTRY_ENABLED = False


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Safe to call from both the API and the worker; without a DSN this is a
    no-op and every capture helper below falls back to logging.

    Returns:
        True if Sentry was initialized, False otherwise.
    """
    global _SENTRY_ENABLED

    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # breadcrumbs
                    event_level=logging.ERROR,  # events
                ),
            ],
            traces_sample_rate=0.1,
            # Payloads can carry buyer names and addresses
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        _SENTRY_ENABLED = True
        logger.info(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def _enabled() -> bool:
    return _SENTRY_ENABLED


def set_tenant_context(tenant_id: str) -> None:
    """Attach the tenant to every subsequent event in this scope."""
    if not _enabled():
        return
    sentry_sdk.set_tag("tenant_id", tenant_id)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception.

    Example:
        try:
            await adapter.fetch_orders(window)
        except AdapterError as e:
            capture_exception(e, extra={"platform": "ebay", "tenant_id": tenant_id})
    """
    if not _enabled():
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    try:
        with sentry_sdk.push_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a non-exception event (unmapped status, dead-lettered job).

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not _enabled():
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    try:
        with sentry_sdk.push_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
