# ============================================================================
# JOB SERVICE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Job control plane
# PURPOSE: Enqueue, debounce, cancel, restart and query job runs
# CREATED: 12 OCT 2026
# ============================================================================
"""
Job Service

Control plane for job_run rows:
- enqueue / enqueue_if_needed (idempotency key, per-entity debounce)
- cancel (with best-effort cascade to orchestrator child jobs)
- restart (failed / canceled only; orchestrator stages reset)
- get / get_latest_for_entity for client polling
- report_progress for running handlers

Every state change commits first, then notifies.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from core.config import Defaults, get_defaults
from core.contracts import JobRunStatus
from core.errors import Conflict, InvalidArgument, LeaseLost, NotFound, StateViolation
from core.models import IdempotencyRecord, JobRun, OrchestratorState, reset_result_for_restart
from handlers.registry import max_attempts_for
from repositories import DB_NOW, AtLeast, IdempotencyRepository, JobRunRepository, transaction
from .notifier import JobNotifier

logger = logging.getLogger(__name__)


class JobService:
    """Service for job lifecycle management."""

    def __init__(
        self,
        pool: AsyncConnectionPool,
        notifier: Optional[JobNotifier] = None,
        defaults: Optional[Defaults] = None,
        max_attempts_resolver: Callable[[str], Optional[int]] = max_attempts_for,
    ):
        """
        Initialize job service.

        Args:
            pool: Database connection pool
            notifier: Post-commit notifier (events dropped when None)
            defaults: Configuration, falls back to get_defaults()
            max_attempts_resolver: Per-job_type claim budget override
        """
        self.pool = pool
        self.defaults = defaults or get_defaults()
        self.notifier = notifier or JobNotifier(defaults=self.defaults)
        self.job_repo = JobRunRepository(pool)
        self.idempotency_repo = IdempotencyRepository(pool)
        self._max_attempts_resolver = max_attempts_resolver

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def _validate(self, owner_user_id: Optional[UUID], job_type: Optional[str]) -> None:
        if owner_user_id is None:
            raise InvalidArgument("owner_user_id is required", operation="enqueue")
        if not job_type or not job_type.strip():
            raise InvalidArgument("job_type is required", operation="enqueue")
        if len(job_type) > 64:
            raise InvalidArgument("job_type must be at most 64 characters", operation="enqueue")

    def _max_attempts(self, job_type: str, explicit: Optional[int]) -> int:
        if explicit is not None:
            return explicit
        return self._max_attempts_resolver(job_type) or self.defaults.queue.max_attempts

    async def create_job(
        self,
        conn: AsyncConnection,
        owner_user_id: UUID,
        job_type: str,
        entity_type: str = "",
        entity_id: Optional[UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> JobRun:
        """
        Insert a queued row inside the caller's transaction.

        No notification is sent; the caller fires job_created after commit.

        Raises:
            InvalidArgument: empty owner or job_type
            Conflict: a runnable row already holds the entity's slot
        """
        self._validate(owner_user_id, job_type)
        job = JobRun(
            owner_user_id=owner_user_id,
            job_type=job_type,
            entity_type=entity_type or "",
            entity_id=entity_id,
            payload=payload or {},
            max_attempts=self._max_attempts(job_type, max_attempts),
            message="Queued",
        )
        return await self.job_repo.create(job, conn=conn)

    async def enqueue(
        self,
        owner_user_id: UUID,
        job_type: str,
        entity_type: str = "",
        entity_id: Optional[UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> JobRun:
        """
        Create a queued job and fire job_created.

        With an idempotency key, a repeated call returns the original job
        without creating a second row.

        Raises:
            InvalidArgument: empty owner or job_type
            Conflict: a runnable row already holds the entity's slot
        """
        self._validate(owner_user_id, job_type)

        async with transaction(self.pool) as conn:
            if idempotency_key:
                new_id = uuid4()
                target = await self.idempotency_repo.reserve(
                    IdempotencyRecord(
                        owner_user_id=owner_user_id,
                        operation=f"enqueue:{job_type}"[:64],
                        entity_key=f"{entity_type}:{entity_id or ''}",
                        idem_key=idempotency_key,
                        target_id=new_id,
                    ),
                    conn=conn,
                )
                if target != new_id:
                    existing = await self.job_repo.get(target, owner_user_id=owner_user_id, conn=conn)
                    if existing is None:
                        raise NotFound("idempotent job no longer exists", operation="enqueue", entity_id=target)
                    logger.info(f"Idempotent enqueue returned existing job {existing.id}")
                    return existing
                job = JobRun(
                    id=new_id,
                    owner_user_id=owner_user_id,
                    job_type=job_type,
                    entity_type=entity_type or "",
                    entity_id=entity_id,
                    payload=payload or {},
                    max_attempts=self._max_attempts(job_type, max_attempts),
                    message="Queued",
                )
                job = await self.job_repo.create(job, conn=conn)
            else:
                job = await self.create_job(
                    conn, owner_user_id, job_type, entity_type, entity_id, payload, max_attempts
                )

        await self.notifier.job_created(job)
        return job

    async def enqueue_if_needed(
        self,
        owner_user_id: UUID,
        job_type: str,
        entity_type: str,
        entity_id: UUID,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[JobRun], bool]:
        """
        Debounced enqueue.

        Returns:
            (job, True) when a new row was created, (None, False) when a
            runnable row already exists for the entity
        """
        self._validate(owner_user_id, job_type)
        if entity_id is None:
            raise InvalidArgument("enqueue_if_needed requires entity_id", operation="enqueue_if_needed")

        try:
            async with transaction(self.pool) as conn:
                if await self.job_repo.has_runnable_for_entity(
                    owner_user_id, entity_type, entity_id, job_type, conn=conn
                ):
                    logger.debug(f"Debounced {job_type} for {entity_type}:{entity_id}")
                    return None, False
                job = await self.create_job(conn, owner_user_id, job_type, entity_type, entity_id, payload)
        except Conflict:
            # Lost the race to a concurrent enqueue
            return None, False

        await self.notifier.job_created(job)
        return job, True

    # =========================================================================
    # CANCEL / RESTART
    # =========================================================================

    async def cancel(self, owner_user_id: UUID, job_id: UUID) -> JobRun:
        """
        Cancel a job.

        Terminal rows come back unchanged, except that a failed row with a
        retry pending is disarmed (retryable=false) so the claimer leaves it.
        Orchestrator children are canceled best-effort after commit.

        Raises:
            NotFound: missing or not owned
        """
        async with transaction(self.pool) as conn:
            job = await self.job_repo.lock(job_id, owner_user_id, conn)
            if job is None:
                raise NotFound("job not found", operation="cancel", entity_id=job_id)

            if job.status.is_terminal():
                if job.retry_pending:
                    job = await self.job_repo.update_fields(
                        job_id,
                        {"retryable": False, "message": "Canceled"},
                        expected_status=[JobRunStatus.FAILED],
                        conn=conn,
                    )
                    logger.info(f"Disarmed pending retry of job {job_id}")
                return job

            canceled = await self.job_repo.update_fields(
                job_id,
                {
                    "status": JobRunStatus.CANCELED,
                    "message": "Canceled",
                    "locked_at": None,
                    "heartbeat_at": DB_NOW,
                    "run_after": None,
                },
                expected_status=[job.status],
                conn=conn,
            )
            if canceled is None:
                raise StateViolation("job changed status during cancel", operation="cancel", entity_id=job_id)

        logger.info(f"Canceled job {job_id} (was {job.status.value})")
        await self.notifier.job_canceled(canceled)
        await self._cascade_cancel(canceled)
        return canceled

    async def _cascade_cancel(self, root: JobRun) -> List[JobRun]:
        """
        Best-effort cancel of the children listed in result.stages.

        Active children are canceled; a failed child with a retry pending is
        disarmed so it does not run after its root is gone.
        """
        child_ids = OrchestratorState.from_result(root.result).child_job_ids()
        if not child_ids:
            return []
        try:
            children = await self.job_repo.cancel_many(child_ids, root.owner_user_id)
        except Exception as e:
            logger.warning(f"Cascade cancel of {len(child_ids)} children of {root.id} failed: {e}")
            return []

        canceled = [c for c in children if c.status == JobRunStatus.CANCELED]
        for child in canceled:
            await self.notifier.job_canceled(child)
        if children:
            logger.info(
                f"Cascade-canceled {len(canceled)} and disarmed {len(children) - len(canceled)} "
                f"child job(s) of {root.id}"
            )
        return children

    async def restart(self, owner_user_id: UUID, job_id: UUID) -> JobRun:
        """
        Put a failed or canceled job back in the queue.

        Orchestrator roots keep their succeeded stages; everything else
        returns to pending with child ids and waits cleared.

        attempts is reset to 0 along with retryable, so the restarted run
        gets the full max_attempts budget again. Left as is, a job that
        exhausted its budget would run once more with no retries and its
        lease could never be reclaimed after a crash. Claim history stays
        in the logs and the job_restarted event.

        Raises:
            NotFound: missing or not owned
            StateViolation: job is not failed or canceled
            Conflict: another runnable row now holds the entity's slot
        """
        async with transaction(self.pool) as conn:
            job = await self.job_repo.lock(job_id, owner_user_id, conn)
            if job is None:
                raise NotFound("job not found", operation="restart", entity_id=job_id)
            if not job.can_restart():
                raise StateViolation(
                    f"cannot restart job in status {job.status.value}",
                    operation="restart",
                    entity_id=job_id,
                )

            restarted = await self.job_repo.update_fields(
                job_id,
                {
                    "status": JobRunStatus.QUEUED,
                    "stage": "queued",
                    "progress": 0,
                    "message": "Restarting",
                    "error": "",
                    "attempts": 0,
                    "retryable": True,
                    "last_error_at": None,
                    "locked_at": None,
                    "heartbeat_at": None,
                    "run_after": None,
                    "result": reset_result_for_restart(job.result),
                },
                expected_status=[job.status],
                conn=conn,
            )
            if restarted is None:
                raise StateViolation("job changed status during restart", operation="restart", entity_id=job_id)

        logger.info(f"Restarted job {job_id} (was {job.status.value})")
        await self.notifier.job_restarted(restarted)
        return restarted

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, owner_user_id: UUID, job_id: UUID) -> JobRun:
        job = await self.job_repo.get(job_id, owner_user_id=owner_user_id)
        if job is None:
            raise NotFound("job not found", operation="get", entity_id=job_id)
        return job

    async def get_latest_for_entity(
        self,
        owner_user_id: UUID,
        entity_type: str,
        entity_id: UUID,
        job_type: str,
    ) -> Optional[JobRun]:
        """Newest row for the entity regardless of status; for client polling."""
        return await self.job_repo.get_latest_by_entity(owner_user_id, entity_type, entity_id, job_type)

    # =========================================================================
    # PROGRESS
    # =========================================================================

    async def report_progress(
        self,
        job_id: UUID,
        stage: str,
        progress: int,
        message: str = "",
    ) -> JobRun:
        """
        Record in-attempt progress of a running job and fire job_progress.

        Progress never moves backwards within an attempt.

        Raises:
            LeaseLost: the row is no longer running
        """
        pct = max(0, min(int(progress), 100))
        fields: Dict[str, Any] = {
            "stage": stage[:128],
            "progress": AtLeast(pct),
            "heartbeat_at": DB_NOW,
        }
        if message:
            fields["message"] = message
        job = await self.job_repo.update_fields(job_id, fields, expected_status=[JobRunStatus.RUNNING])
        if job is None:
            raise LeaseLost("job is no longer running", operation="report_progress", entity_id=job_id)

        await self.notifier.job_progress(job)
        return job


__all__ = ["JobService"]
