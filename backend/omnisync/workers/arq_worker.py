"""ARQ worker - executes durable queue jobs.

WHAT:
    Runs queue_jobs rows through their handlers (product-sync, order-sync,
    inventory-sync, webhook-processing). Every wake-up runs the most urgent
    due job; a one-minute cron sweep drains anything a lost wake-up left
    behind, requeues jobs stranded in `running` by a crashed worker, and
    trims finished jobs past their retention counts. The scheduled sync
    duties (orders, inventory, products, cleanup) are cron jobs here too.

WHY:
    - Ordering, retries and dead letters live in the database
      (services/job_queue.py); arq gives us the async runtime, bounded
      concurrency (max_jobs), timeouts and cron.
    - arq-level retries are disabled (max_tries=1): a second layer of retries
      would double the attempt ceiling.

ARCHITECTURE:
    JobQueue.enqueue ──► queue_jobs row ──► notify_job_available
                                                 │ (arq, _defer_by for backoff)
                                                 ▼
                                   process_queue_job ─► JobQueue.process_next
                                                           │
                                                   SyncJobHandlers.*

USAGE:
    arq omnisync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m omnisync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - omnisync/services/job_queue.py
    - omnisync/services/sync_jobs.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from arq import cron

from omnisync.database import SessionLocal, get_sync_session
from omnisync.deps import get_settings, get_token_cipher
from omnisync.models import ConnectionStatusEnum, PlatformConnection
from omnisync.services.job_queue import JobQueue
from omnisync.services.sync_coordinator import SyncCoordinator
from omnisync.services.sync_jobs import SyncJobHandlers
from omnisync.telemetry import capture_exception, init_observability
from omnisync.workers.arq_enqueue import get_redis_settings, notify_job_available, reset_arq_pool

logger = logging.getLogger(__name__)

SWEEP_MAX_JOBS = 100


# =============================================================================
# JOB FUNCTIONS
# =============================================================================

async def process_queue_job(ctx: Dict, job_id: str) -> Dict[str, Any]:
    """Run the most urgent due job.

    The wake-up names the job that triggered it, but the queue decides what
    runs: a higher-priority job that became due meanwhile goes first, and the
    named job is picked up by a later wake-up or the sweep.
    """
    queue: JobQueue = ctx["queue"]
    handlers = ctx["handlers"]
    try:
        job = await queue.process_next(handlers)
    except Exception as e:
        logger.exception("[ARQ] process_queue_job failed (wake-up for %s)", job_id)
        capture_exception(e, extra={"operation": "process_queue_job", "job_id": job_id})
        raise

    if job is None:
        return {"processed": None, "wakeup": job_id}
    return {"processed": str(job.id), "job_type": job.job_type.value, "wakeup": job_id}


async def sweep_due_jobs(ctx: Dict) -> Dict[str, int]:
    """Cron: recover stale jobs, drain due jobs, prune finished ones."""
    queue: JobQueue = ctx["queue"]
    settings = ctx["settings"]
    try:
        recovered = queue.recover_stale(settings.JOB_TIMEOUT_SECONDS)
        processed = await queue.drain(ctx["handlers"], max_jobs=SWEEP_MAX_JOBS)
        pruned = queue.prune()
    except Exception as e:
        logger.exception("[ARQ] Sweep failed")
        capture_exception(e, extra={"operation": "sweep_due_jobs"})
        raise

    if recovered or processed or pruned:
        logger.info("[ARQ] Sweep: recovered=%d processed=%d pruned=%d", recovered, processed, pruned)
    return {"recovered": recovered, "processed": processed, "pruned": pruned}


# =============================================================================
# SCHEDULED DUTIES (cron)
# =============================================================================

async def _run_duty(ctx: Dict, name: str, duty) -> Dict[str, Any]:
    """Run one coordinator duty. Failures are logged and reported; the next tick retries."""
    logger.info("[ARQ] Starting scheduled %s", name)
    try:
        count = await duty(ctx["coordinator"])
    except Exception as e:
        logger.exception("[ARQ] Scheduled %s failed: %s", name, e)
        capture_exception(e, extra={"operation": "scheduled_sync", "duty": name})
        return {"duty": name, "error": str(e)}

    logger.info("[ARQ] Scheduled %s complete: %d", name, count)
    return {"duty": name, "count": count}


async def scheduled_order_sync(ctx: Dict) -> Dict[str, Any]:
    """Scheduled job: order-sync for every connected tenant.

    WHEN:
        Every 15 minutes at :00, :15, :30, :45.
    """
    return await _run_duty(ctx, "order sync", SyncCoordinator.enqueue_order_syncs)


async def scheduled_inventory_sync(ctx: Dict) -> Dict[str, Any]:
    """Scheduled job: inventory import for every connected tenant (:00, :30)."""
    return await _run_duty(ctx, "inventory sync", SyncCoordinator.enqueue_inventory_syncs)


async def scheduled_product_sync(ctx: Dict) -> Dict[str, Any]:
    """Scheduled job: product-sync per ACTIVE product, hourly at :00."""
    return await _run_duty(ctx, "product sync", SyncCoordinator.enqueue_product_syncs)


async def scheduled_cleanup(ctx: Dict) -> Dict[str, Any]:
    """Scheduled job: delete old SyncJob rows, daily at 02:00 UTC."""
    return await _run_duty(ctx, "cleanup", SyncCoordinator.cleanup_old_sync_jobs)


# Every tick is a unique arq job id, so several workers never run one tick twice
SCHEDULED_CRON_JOBS = [
    cron(scheduled_order_sync, minute={0, 15, 30, 45}, second=0),
    cron(scheduled_inventory_sync, minute={0, 30}, second=0),
    cron(scheduled_product_sync, minute=0, second=0),
    cron(scheduled_cleanup, hour=2, minute=0, second=0),
]


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - build the queue and handlers once."""
    init_observability()
    settings = get_settings()
    cipher = get_token_cipher()

    ctx["settings"] = settings
    ctx["queue"] = JobQueue(SessionLocal, notifier=notify_job_available)
    ctx["handlers"] = SyncJobHandlers(SessionLocal, cipher, settings).handlers()
    ctx["coordinator"] = SyncCoordinator(SessionLocal, ctx["queue"])
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0

    logger.info("=" * 60)
    logger.info("[ARQ] Worker started")
    logger.info("[ARQ] Concurrency: %d, job timeout: %ds", settings.WORKER_CONCURRENCY, settings.JOB_TIMEOUT_SECONDS)
    logger.info("[ARQ] Queue counts: %s", ctx["queue"].counts())
    logger.info("[ARQ] Scheduled sync duties: %s", "enabled" if settings.SCHEDULER_ENABLED else "disabled (SCHEDULER_ENABLED=false)")
    with get_sync_session() as db:
        active = db.query(PlatformConnection).filter(PlatformConnection.status == ConnectionStatusEnum.active).count()
    logger.info("[ARQ] Active platform connections: %d", active)
    logger.info("=" * 60)


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - close the wake-up pool and log stats."""
    await reset_arq_pool()
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[ARQ] Worker shutting down after %s (%d jobs)", uptime, ctx.get("jobs_processed", 0))


async def on_job_end(ctx: Dict) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

_settings = get_settings()


class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs: bounded pool (WORKER_CONCURRENCY)
    - job_timeout: per-job ceiling (JOB_TIMEOUT_SECONDS); the sweep treats
      anything running longer as stale
    - max_tries=1: retries are owned by the queue table
    """

    functions = [process_queue_job]
    cron_jobs = [
        cron(sweep_due_jobs, second=0, run_at_startup=True),
    ] + (SCHEDULED_CRON_JOBS if _settings.SCHEDULER_ENABLED else [])

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings(_settings.REDIS_URL)

    max_jobs = _settings.WORKER_CONCURRENCY
    job_timeout = _settings.JOB_TIMEOUT_SECONDS
    keep_result = 3600
    max_tries = 1
    health_check_interval = 30

