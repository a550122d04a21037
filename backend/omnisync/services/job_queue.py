"""Durable job queue with priorities, retries and dead letters.

WHAT:
    A database-backed queue (`queue_jobs`) for product-sync, order-sync,
    inventory-sync and webhook-processing jobs.

WHY:
    - Jobs survive worker restarts and Redis flushes; the arq worker is only
      the execution runtime and wake-up signal.
    - Claiming is an atomic conditional UPDATE, so any number of workers can
      poll the same table without double-running a job.
    - Exhausted jobs stay in `failed` for inspection (dead letter) instead of
      disappearing.

ARCHITECTURE:
    enqueue ──► queue_jobs(pending) ──notify──► arq process_queue_job
                                                   │
                       claim_next (pending→running, attempts+1)
                                                   │
                            handler ok ──► completed
                            handler err ─► pending (run_at += backoff)
                                           └─ attempts exhausted ─► failed

REFERENCES:
    - omnisync/workers/arq_worker.py (process_queue_job, sweep_due_jobs)
    - omnisync/services/sync_jobs.py (handlers)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import update

from omnisync.errors import JobRetryableError, NotConnectedError, SignatureError, ValidationError
from omnisync.models import QueueJob, QueueJobStatusEnum, QueueJobTypeEnum, utcnow
from omnisync.telemetry.sentry import capture_exception, capture_message, set_tenant_context

logger = logging.getLogger(__name__)


# =============================================================================
# POLICIES
# =============================================================================

@dataclass(frozen=True)
class JobPolicy:
    max_attempts: int
    backoff_base_seconds: float
    priority: int  # lower runs first
    keep_completed: int
    keep_failed: int

    def backoff(self, attempts: int) -> float:
        """Delay before the next attempt after `attempts` failures."""
        return self.backoff_base_seconds * (2 ** max(attempts - 1, 0))


# Order and inventory sync outrank product sync: stockouts and fulfillment
# delays cost more than stale listing copy.
JOB_POLICIES: Dict[QueueJobTypeEnum, JobPolicy] = {
    QueueJobTypeEnum.product_sync: JobPolicy(max_attempts=3, backoff_base_seconds=2, priority=2, keep_completed=100, keep_failed=50),
    QueueJobTypeEnum.order_sync: JobPolicy(max_attempts=3, backoff_base_seconds=2, priority=1, keep_completed=100, keep_failed=50),
    QueueJobTypeEnum.inventory_sync: JobPolicy(max_attempts=3, backoff_base_seconds=2, priority=1, keep_completed=100, keep_failed=50),
    QueueJobTypeEnum.webhook_processing: JobPolicy(max_attempts=5, backoff_base_seconds=1, priority=1, keep_completed=200, keep_failed=100),
}

# Errors a retry cannot fix
NON_RETRYABLE = (ValidationError, SignatureError, NotConnectedError)


@dataclass
class ClaimedJob:
    """Detached snapshot of a claimed job handed to handlers."""
    id: UUID
    job_type: QueueJobTypeEnum
    payload: Dict[str, Any]
    tenant_id: Optional[UUID]
    attempts: int
    max_attempts: int


@dataclass
class EnqueueResult:
    job_id: UUID
    created: bool


Handler = Callable[[ClaimedJob], Awaitable[Optional[Dict[str, Any]]]]
Notifier = Callable[[UUID, float], Awaitable[None]]

# Webhook acknowledgements wait on enqueue; a wake-up may never hold them longer
NOTIFY_TIMEOUT_SECONDS = 1.0


# =============================================================================
# QUEUE
# =============================================================================

class JobQueue:
    """Durable queue over `queue_jobs`.

    Each method opens its own short session from `session_factory`, so the
    queue is safe to share between the API, the coordinator and workers.
    """

    def __init__(
        self,
        session_factory,
        notifier: Optional[Notifier] = None,
        policies: Optional[Dict[QueueJobTypeEnum, JobPolicy]] = None,
        notify_timeout: float = NOTIFY_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.policies = policies or JOB_POLICIES
        self.notify_timeout = notify_timeout

    async def _notify(self, job_id: UUID, defer_seconds: float = 0) -> None:
        if not self.notifier:
            return
        try:
            await asyncio.wait_for(self.notifier(job_id, defer_seconds), timeout=self.notify_timeout)
        except asyncio.TimeoutError:
            logger.warning("[JOB_QUEUE] Wake-up notification for %s timed out after %ss", job_id, self.notify_timeout)
        except Exception as exc:
            # The row is durable; the worker's cron sweep will still find it
            logger.warning("[JOB_QUEUE] Wake-up notification failed for %s: %s", job_id, exc)

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: QueueJobTypeEnum,
        payload: Dict[str, Any],
        *,
        tenant_id: Optional[UUID] = None,
        priority: Optional[int] = None,
        dedup_key: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> EnqueueResult:
        """Persist a job and wake a worker.

        With `dedup_key`, an identical job that is still pending or running is
        returned instead of creating a second one.
        """
        policy = self.policies[job_type]
        db = self.session_factory()
        try:
            if dedup_key:
                existing = (
                    db.query(QueueJob)
                    .filter(
                        QueueJob.dedup_key == dedup_key,
                        QueueJob.status.in_([QueueJobStatusEnum.pending, QueueJobStatusEnum.running]),
                    )
                    .first()
                )
                if existing:
                    logger.info("[JOB_QUEUE] Skipping duplicate %s (%s already %s)", dedup_key, existing.id, existing.status.value)
                    return EnqueueResult(job_id=existing.id, created=False)

            job = QueueJob(
                job_type=job_type,
                tenant_id=tenant_id,
                payload=payload,
                priority=policy.priority if priority is None else priority,
                status=QueueJobStatusEnum.pending,
                attempts=0,
                max_attempts=policy.max_attempts,
                run_at=utcnow() + timedelta(seconds=delay_seconds),
                dedup_key=dedup_key,
            )
            db.add(job)
            db.commit()
            job_id = job.id
        finally:
            db.close()

        logger.info("[JOB_QUEUE] Enqueued %s job %s (priority=%s)", job_type.value, job_id, policy.priority if priority is None else priority)
        await self._notify(job_id, delay_seconds)
        return EnqueueResult(job_id=job_id, created=True)

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def claim_next(self, job_types: Optional[Iterable[QueueJobTypeEnum]] = None) -> Optional[ClaimedJob]:
        """Atomically move the most urgent due job from pending to running."""
        db = self.session_factory()
        try:
            now = utcnow()
            query = db.query(QueueJob.id).filter(
                QueueJob.status == QueueJobStatusEnum.pending,
                QueueJob.run_at <= now,
            )
            if job_types is not None:
                query = query.filter(QueueJob.job_type.in_(list(job_types)))
            candidates = (
                query.order_by(QueueJob.priority.asc(), QueueJob.run_at.asc(), QueueJob.created_at.asc())
                .limit(10)
                .all()
            )

            for (candidate_id,) in candidates:
                claimed = db.execute(
                    update(QueueJob)
                    .where(QueueJob.id == candidate_id, QueueJob.status == QueueJobStatusEnum.pending)
                    .values(status=QueueJobStatusEnum.running, attempts=QueueJob.attempts + 1, started_at=now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if claimed.rowcount != 1:
                    # Another worker won the race
                    continue
                job = db.get(QueueJob, candidate_id)
                return ClaimedJob(
                    id=job.id,
                    job_type=job.job_type,
                    payload=dict(job.payload or {}),
                    tenant_id=job.tenant_id,
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                )
            return None
        finally:
            db.close()

    def complete(self, job_id: UUID, result: Optional[Dict[str, Any]] = None) -> None:
        db = self.session_factory()
        try:
            job = db.get(QueueJob, job_id)
            if not job:
                return
            job.status = QueueJobStatusEnum.completed
            job.result = result
            job.last_error = None
            job.finished_at = utcnow()
            db.commit()
        finally:
            db.close()

    def fail(self, job_id: UUID, error: str, *, retryable: bool = True) -> Optional[float]:
        """Record a failed attempt.

        Returns the backoff delay in seconds when the job was requeued, or
        None when it landed in the dead letter state.
        """
        db = self.session_factory()
        try:
            job = db.get(QueueJob, job_id)
            if not job:
                return None
            policy = self.policies[job.job_type]
            job.last_error = error[:2000]

            if retryable and job.attempts < job.max_attempts:
                delay = policy.backoff(job.attempts)
                job.status = QueueJobStatusEnum.pending
                job.run_at = utcnow() + timedelta(seconds=delay)
                db.commit()
                logger.warning(
                    "[JOB_QUEUE] %s job %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    job.job_type.value, job.id, job.attempts, job.max_attempts, delay, error,
                )
                return delay

            job.status = QueueJobStatusEnum.failed
            job.finished_at = utcnow()
            db.commit()
            logger.error(
                "[JOB_QUEUE] %s job %s dead-lettered after %d attempt(s): %s",
                job.job_type.value, job.id, job.attempts, error,
            )
            capture_message(
                "Queue job dead-lettered",
                level="error",
                extra={"job_id": str(job.id), "job_type": job.job_type.value, "attempts": job.attempts, "error": error[:500]},
            )
            return None
        finally:
            db.close()

    async def process_next(self, handlers: Dict[QueueJobTypeEnum, Handler]) -> Optional[ClaimedJob]:
        """Claim and run one due job. Returns the job, or None when idle."""
        job = self.claim_next(handlers.keys())
        if job is None:
            return None

        logger.info("[JOB_QUEUE] Running %s job %s (attempt %d/%d)", job.job_type.value, job.id, job.attempts, job.max_attempts)
        if job.tenant_id is not None:
            set_tenant_context(str(job.tenant_id))
        try:
            result = await handlers[job.job_type](job)
        except JobRetryableError as exc:
            delay = self.fail(job.id, str(exc), retryable=True)
        except NON_RETRYABLE as exc:
            delay = self.fail(job.id, f"{type(exc).__name__}: {exc}", retryable=False)
        except Exception as exc:
            logger.exception("[JOB_QUEUE] Handler crashed for job %s", job.id)
            capture_exception(exc, extra={"job_id": str(job.id), "job_type": job.job_type.value})
            delay = self.fail(job.id, f"{type(exc).__name__}: {exc}", retryable=True)
        else:
            self.complete(job.id, result)
            return job

        if delay is not None:
            await self._notify(job.id, delay)
        return job

    async def drain(self, handlers: Dict[QueueJobTypeEnum, Handler], max_jobs: int = 100) -> int:
        """Run due jobs until the queue is idle or `max_jobs` ran."""
        processed = 0
        while processed < max_jobs:
            if await self.process_next(handlers) is None:
                break
            processed += 1
        return processed

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def recover_stale(self, timeout_seconds: int) -> int:
        """Requeue jobs stuck in running longer than the job timeout (worker crash)."""
        db = self.session_factory()
        try:
            cutoff = utcnow() - timedelta(seconds=timeout_seconds)
            stale = (
                db.query(QueueJob)
                .filter(QueueJob.status == QueueJobStatusEnum.running, QueueJob.started_at < cutoff)
                .all()
            )
            for job in stale:
                job.last_error = f"Recovered after exceeding {timeout_seconds}s in running state"
                if job.attempts >= job.max_attempts:
                    job.status = QueueJobStatusEnum.failed
                    job.finished_at = utcnow()
                else:
                    job.status = QueueJobStatusEnum.pending
                    job.run_at = utcnow()
            if stale:
                db.commit()
                logger.warning("[JOB_QUEUE] Recovered %d stale running job(s)", len(stale))
            return len(stale)
        finally:
            db.close()

    def prune(self) -> int:
        """Delete completed/failed jobs beyond each type's retention count."""
        db = self.session_factory()
        deleted = 0
        try:
            for job_type, policy in self.policies.items():
                for status, keep in (
                    (QueueJobStatusEnum.completed, policy.keep_completed),
                    (QueueJobStatusEnum.failed, policy.keep_failed),
                ):
                    stale_ids = [
                        row[0]
                        for row in db.query(QueueJob.id)
                        .filter(QueueJob.job_type == job_type, QueueJob.status == status)
                        .order_by(QueueJob.finished_at.desc(), QueueJob.created_at.desc())
                        .offset(keep)
                        .all()
                    ]
                    if stale_ids:
                        deleted += (
                            db.query(QueueJob)
                            .filter(QueueJob.id.in_(stale_ids))
                            .delete(synchronize_session=False)
                        )
            db.commit()
        finally:
            db.close()
        if deleted:
            logger.info("[JOB_QUEUE] Pruned %d finished job(s)", deleted)
        return deleted

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def get(self, job_id: UUID) -> Optional[QueueJob]:
        db = self.session_factory()
        try:
            job = db.get(QueueJob, job_id)
            if job:
                db.expunge(job)
            return job
        finally:
            db.close()

    def list_dead_letters(self, job_type: Optional[QueueJobTypeEnum] = None, limit: int = 50) -> List[QueueJob]:
        db = self.session_factory()
        try:
            query = db.query(QueueJob).filter(QueueJob.status == QueueJobStatusEnum.failed)
            if job_type:
                query = query.filter(QueueJob.job_type == job_type)
            jobs = query.order_by(QueueJob.finished_at.desc()).limit(limit).all()
            for job in jobs:
                db.expunge(job)
            return jobs
        finally:
            db.close()

    def counts(self) -> Dict[str, int]:
        db = self.session_factory()
        try:
            return {
                status.value: db.query(QueueJob).filter(QueueJob.status == status).count()
                for status in QueueJobStatusEnum
            }
        finally:
            db.close()
