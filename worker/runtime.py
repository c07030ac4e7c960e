# ============================================================================
# WORKER RUNTIME
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Claim / dispatch / settle loop
# PURPOSE: N asyncio workers pulling job_run rows from PostgreSQL
# CREATED: 12 OCT 2026
# ============================================================================
"""
Worker Runtime

Loop, per worker:
1. Claim a row (claim_next_runnable) with a timeout
2. Resolve the handler by job_type (unknown -> fatal ConfigError)
3. Renew the lease every stale_lease / 4 while the handler runs
4. Run the handler with a cancel signal
5. Settle the row with a guarded write (status still running):
   success   -> succeeded, progress 100, lease cleared
   transient -> failed + last_error_at, claimable again after backoff
   fatal     -> failed, retryable=false
   requeue   -> queued with run_after, attempt refunded
6. Notify after commit

Rows the orchestrator settles itself (HandlerResult.persisted) are only
counted. A guarded write that matches nothing means the row was canceled or
reclaimed; the outcome is dropped.

WorkerPool also runs the stale-lease sweep that fails running rows whose
lease expired with no attempts left.
"""

import asyncio
import logging
import random
import socket
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from psycopg_pool import AsyncConnectionPool

from core.config import Defaults, get_defaults
from core.contracts import JobRunStatus, utc_now
from core.errors import LeaseLost
from core.logging import log_checkpoint, log_context
from core.models import JobRun
from handlers.registry import HandlerContext, HandlerResult, Outcome, final_failure_hook_for
from repositories import DB_NOW, JobRunRepository
from services.notifier import JobNotifier
from services.waitpoint_service import REFUND_ATTEMPT
from worker.executor import JobExecutor, LeaseKeeper

if TYPE_CHECKING:
    from services.container import CoreServices

logger = logging.getLogger(__name__)


async def run_final_failure_hook(services: Optional["CoreServices"], job: JobRun) -> None:
    """Invoke the job type's final-failure hook after commit; errors are logged."""
    hook = final_failure_hook_for(job.job_type)
    if hook is None or services is None:
        return
    try:
        await hook(services, job)
    except Exception as e:
        logger.warning(f"Final-failure hook for job {job.id} ({job.job_type}) failed: {e}")


# ============================================================================
# STATS
# ============================================================================

class WorkerStats:
    """Counters shared by the workers of one pool."""

    def __init__(self):
        self.started_at: Optional[datetime] = None
        self.claimed = 0
        self.succeeded = 0
        self.failed = 0
        self.retry_pending = 0
        self.requeued = 0
        self.waiting = 0
        self.lease_lost = 0
        self.claim_errors = 0
        self.expired = 0
        self.last_claim_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retry_pending": self.retry_pending,
            "requeued": self.requeued,
            "waiting": self.waiting,
            "lease_lost": self.lease_lost,
            "claim_errors": self.claim_errors,
            "expired": self.expired,
            "last_claim_at": self.last_claim_at.isoformat() if self.last_claim_at else None,
        }


# ============================================================================
# JOB WORKER
# ============================================================================

class JobWorker:
    """One claim/dispatch/settle loop."""

    def __init__(
        self,
        pool: AsyncConnectionPool,
        worker_id: str,
        services: Optional["CoreServices"] = None,
        notifier: Optional[JobNotifier] = None,
        defaults: Optional[Defaults] = None,
        stats: Optional[WorkerStats] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize worker.

        Args:
            pool: Database connection pool
            worker_id: Identifier used in logs
            services: Service container handed to handlers
            notifier: Post-commit notifier, defaults to services.notifier
            defaults: Configuration, falls back to get_defaults()
            stats: Shared counters
            rng: Source for idle-poll jitter
        """
        self.pool = pool
        self.worker_id = worker_id
        self.services = services
        self.defaults = defaults or get_defaults()
        self.notifier = notifier or (services.notifier if services else JobNotifier(defaults=self.defaults))
        self.stats = stats or WorkerStats()
        self.rng = rng or random.Random()
        self.job_repo = JobRunRepository(pool)
        self.executor = JobExecutor(cancel_grace_seconds=self.defaults.worker.cancel_grace_seconds)
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        """Run until stop() is called."""
        logger.info(f"Worker {self.worker_id} started")
        while not self._stop_event.is_set():
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.claim_errors += 1
                logger.exception(f"Worker {self.worker_id} loop error: {e}")
                processed = False

            if not processed:
                await self._idle()
        logger.info(f"Worker {self.worker_id} stopped")

    async def _idle(self) -> None:
        interval = self.defaults.worker.poll_interval_seconds
        delay = interval * (0.5 + self.rng.random())
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def claim(self) -> Optional[JobRun]:
        """Claim the next runnable row; a slow store counts as nothing to do."""
        queue = self.defaults.queue
        job_types = list(self.defaults.worker.job_types) or None
        try:
            return await asyncio.wait_for(
                self.job_repo.claim_next_runnable(
                    stale_lease_seconds=queue.stale_lease_seconds,
                    retry_delay_base_ms=queue.retry_delay_base_ms,
                    retry_delay_cap_ms=queue.retry_delay_cap_ms,
                    job_types=job_types,
                ),
                timeout=queue.claim_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Worker {self.worker_id}: claim timed out after {queue.claim_timeout_seconds}s")
            self.stats.claim_errors += 1
            return None

    async def run_once(self) -> bool:
        """
        Claim and process at most one job.

        Returns:
            True if a job was claimed
        """
        job = await self.claim()
        if job is None:
            return False

        self.stats.claimed += 1
        self.stats.last_claim_at = utc_now()
        await self.process(job)
        return True

    async def process(self, job: JobRun) -> Optional[JobRun]:
        """
        Run the handler for a claimed job and settle the row.

        Returns:
            The settled row, or None when the outcome was dropped or the
            handler persisted it itself
        """
        with log_context(job_id=job.id, job_type=job.job_type, owner_user_id=job.owner_user_id, worker_id=self.worker_id):
            log_checkpoint("job_claimed", {"attempt": job.attempts, "max_attempts": job.max_attempts})
            cancel_event = asyncio.Event()
            ctx = HandlerContext(
                job=job,
                worker_id=self.worker_id,
                cancel_event=cancel_event,
                adapters=self.services.adapters if self.services else None,
                services=self.services,
            )
            ctx.progress_callback = self._progress_callback(ctx)

            period = self.defaults.worker.heartbeat_period(self.defaults.queue)
            try:
                async with LeaseKeeper(self.job_repo, job.id, period, cancel_event):
                    result = await self.executor.execute(ctx)
            except LeaseLost as e:
                self.stats.lease_lost += 1
                logger.info(f"Dropped outcome of job {job.id}: {e}")
                return None

            return await self.settle(ctx, result)

    def _progress_callback(self, ctx: HandlerContext):
        async def callback(stage: str, progress: int, message: str) -> None:
            if self.services is None:
                return
            ctx.job = await self.services.job_service.report_progress(ctx.job_id, stage, progress, message)
        return callback

    # =========================================================================
    # SETTLE
    # =========================================================================

    async def settle(self, ctx: HandlerContext, result: HandlerResult) -> Optional[JobRun]:
        """Write the handler outcome with a guarded update, then notify."""
        job = ctx.job

        if result.persisted:
            self._count(result.outcome, ctx.job)
            log_checkpoint("job_settled", {"outcome": result.outcome.value, "by": "handler"})
            return None

        if result.outcome == Outcome.SUCCEEDED:
            fields: Dict[str, Any] = {
                "status": JobRunStatus.SUCCEEDED,
                "stage": "done",
                "progress": 100,
                "message": result.message or "Completed",
                "error": "",
                "result": result.output,
                "locked_at": None,
                "heartbeat_at": DB_NOW,
            }
        elif result.outcome == Outcome.REQUEUED:
            fields = {
                "status": JobRunStatus.QUEUED,
                "message": result.message or "Requeued",
                "attempts": REFUND_ATTEMPT,
                "run_after": utc_now() + timedelta(seconds=result.requeue_after or 0),
                "locked_at": None,
                "heartbeat_at": None,
            }
        else:
            if result.outcome == Outcome.WAITING:
                # Waitpoints are a stage concept
                result = HandlerResult.failure_result("leaf handlers cannot wait for a decision", retryable=False)
            error = result.error_message or "handler returned failure"
            retry_left = result.retryable and job.attempts < job.max_attempts
            fields = {
                "status": JobRunStatus.FAILED,
                "message": "Retrying" if retry_left else "Failed",
                "error": error[:2000],
                "retryable": result.retryable,
                "last_error_at": DB_NOW,
                "locked_at": None,
                "heartbeat_at": DB_NOW,
            }

        settled = await self.job_repo.update_fields(job.id, fields, expected_status=[JobRunStatus.RUNNING])
        if settled is None:
            self.stats.lease_lost += 1
            logger.info(f"Job {job.id} left running before its outcome was written; dropped")
            return None

        ctx.job = settled
        self._count(result.outcome, settled)
        log_checkpoint("job_settled", {"outcome": result.outcome.value, "status": settled.status.value})

        if settled.status == JobRunStatus.SUCCEEDED:
            await self.notifier.job_done(settled)
        elif settled.status == JobRunStatus.FAILED:
            if settled.retry_pending:
                delay = self.defaults.queue.retry_delay_for(settled.attempts).total_seconds()
                logger.warning(
                    f"Job {settled.id} attempt {settled.attempts}/{settled.max_attempts} failed, "
                    f"retry after {delay:.2f}s: {settled.error}"
                )
            else:
                logger.error(f"Job {settled.id} failed: {settled.error}")
            await self.notifier.job_failed(settled)
            if not settled.retry_pending:
                await run_final_failure_hook(self.services, settled)
        return settled

    def _count(self, outcome: Outcome, job: JobRun) -> None:
        if outcome == Outcome.SUCCEEDED:
            self.stats.succeeded += 1
        elif outcome == Outcome.REQUEUED:
            self.stats.requeued += 1
        elif outcome == Outcome.WAITING:
            self.stats.waiting += 1
        elif job.retry_pending:
            self.stats.retry_pending += 1
        else:
            self.stats.failed += 1


# ============================================================================
# WORKER POOL
# ============================================================================

class WorkerPool:
    """
    N JobWorkers plus the stale-lease sweep.

    Usage:
        pool_ = WorkerPool(db_pool, services)
        await pool_.start()
        ...
        await pool_.stop()
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        services: Optional["CoreServices"] = None,
        defaults: Optional[Defaults] = None,
        worker_prefix: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self.pool = pool
        self.services = services
        self.defaults = defaults or (services.defaults if services else get_defaults())
        self.worker_prefix = worker_prefix or socket.gethostname()
        self.stats = WorkerStats()
        self.rng = rng or random.Random()
        self.job_repo = JobRunRepository(pool)
        self.notifier = services.notifier if services else JobNotifier(defaults=self.defaults)

        self.workers: List[JobWorker] = []
        self._tasks: List[asyncio.Task] = []
        self._sweep_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker pool already running")
            return

        count = max(1, self.defaults.worker.worker_count)
        self._stop_event.clear()
        self.stats.started_at = utc_now()
        for i in range(count):
            worker = JobWorker(
                self.pool,
                worker_id=f"{self.worker_prefix}-{i + 1}",
                services=self.services,
                notifier=self.notifier,
                defaults=self.defaults,
                stats=self.stats,
                rng=random.Random(self.rng.random()),
            )
            self.workers.append(worker)
            self._tasks.append(asyncio.create_task(worker.run(), name=worker.worker_id))

        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="stale-sweep")
        self._running = True
        logger.info(f"Worker pool started with {count} worker(s)")

    async def stop(self) -> None:
        """Stop claiming, wait for in-flight jobs, then cancel what is left."""
        if not self._running:
            return

        logger.info("Stopping worker pool...")
        self._stop_event.set()
        for worker in self.workers:
            worker.stop()

        if self._sweep_task is not None:
            self._sweep_task.cancel()

        timeout = self.defaults.worker.shutdown_timeout_seconds
        done, pending = await asyncio.wait(self._tasks, timeout=timeout) if self._tasks else (set(), set())
        if pending:
            logger.warning(f"Shutdown timeout - cancelling {len(pending)} worker(s)")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self._sweep_task is not None:
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        self._tasks.clear()
        self.workers.clear()
        self._running = False
        logger.info(f"Worker pool stopped. Stats: {self.stats.to_dict()}")

    async def wait(self) -> None:
        """Block until stop() is called."""
        await self._stop_event.wait()

    async def sweep_stale_leases(self) -> List[JobRun]:
        """Fail expired rows that have no attempts left; notifies each."""
        expired = await self.job_repo.expire_stale_leases(self.defaults.queue.stale_lease_seconds)
        self.stats.expired += len(expired)
        for job in expired:
            await self.notifier.job_failed(job)
            await run_final_failure_hook(self.services, job)
        return expired

    async def _sweep_loop(self) -> None:
        interval = self.defaults.worker.stale_sweep_interval_seconds
        while not self._stop_event.is_set():
            try:
                await self.sweep_stale_leases()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Stale lease sweep failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        data = self.stats.to_dict()
        data["workers"] = len(self.workers)
        data["running"] = self._running
        if self.services is not None and self.services.orchestrator is not None:
            data["orchestrator"] = self.services.orchestrator.stats()
        return data


__all__ = ["WorkerStats", "JobWorker", "WorkerPool", "run_final_failure_hook"]
