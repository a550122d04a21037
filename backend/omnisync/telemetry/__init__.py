"""
Telemetry Module
================

Observability for the omnisync API and worker.

Components:
- sentry.py: Error tracking for request handlers, queue jobs and the scheduler

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Deployment environment name

Usage:
    from omnisync.telemetry import init_observability

    init_observability()
"""

import logging

from omnisync.telemetry.sentry import (
    init_sentry,
    set_tenant_context,
    capture_exception,
    capture_message,
)

logger = logging.getLogger(__name__)


def init_observability() -> dict:
    """Initialize every observability backend, returning which are active."""
    status = {"sentry": init_sentry()}
    logger.info(f"[TELEMETRY] Observability initialized: {status}")
    return status


__all__ = [
    "init_observability",
    "init_sentry",
    "set_tenant_context",
    "capture_exception",
    "capture_message",
]
