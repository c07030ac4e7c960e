# ============================================================================
# WAITPOINT SERVICE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Human decision pause/resume
# PURPOSE: Park a stage on a user decision and resume it deterministically
# CREATED: 12 OCT 2026
# ============================================================================
"""
Waitpoint Service

A waitpoint is a stage in waiting_user. The prompt lives in
result.stages[name].prompt; the root job moves to waiting_user with its
lease cleared, so no worker holds it while the user thinks.

resume() writes the decision, returns the stage to pending and the root to
queued in one transaction; the next claim continues the pipeline and the
stage handler finds the decision on its context.

Cancel while waiting is handled by JobService.cancel and records no
decision.
"""

import logging
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from psycopg import AsyncConnection, sql
from psycopg_pool import AsyncConnectionPool

from core.contracts import JobRunStatus, StageStatus
from core.errors import InvalidArgument, LeaseLost, NotFound, StateViolation
from core.logging import log_checkpoint
from core.models import JobRun, OrchestratorState
from repositories import DB_NOW, JobRunRepository, transaction
from .notifier import JobNotifier

logger = logging.getLogger(__name__)

# A pause is not a failed attempt; parking gives the claim back
REFUND_ATTEMPT = sql.SQL("GREATEST(attempts - 1, 0)")


class WaitpointService:
    """Service for stage waitpoints."""

    def __init__(self, pool: AsyncConnectionPool, notifier: Optional[JobNotifier] = None):
        self.pool = pool
        self.notifier = notifier or JobNotifier()
        self.job_repo = JobRunRepository(pool)

    @staticmethod
    def mark_waiting(state: OrchestratorState, stage_name: str, prompt: Dict[str, Any]) -> None:
        """Put a stage in waiting_user with its prompt; no I/O."""
        stage = state.stages.get(stage_name)
        if stage is None:
            raise InvalidArgument(f"unknown stage: {stage_name}", operation="waitpoint.enter")
        stage.status = StageStatus.WAITING_USER
        stage.prompt = prompt
        stage.decision = None
        stage.wait_until = None

    async def park(
        self,
        job: JobRun,
        state: OrchestratorState,
        conn: Optional[AsyncConnection] = None,
    ) -> JobRun:
        """
        Move a running root to waiting_user and release its lease.

        Raises:
            LeaseLost: the root is no longer running
        """
        stage_name = state.waiting_stage()
        if stage_name is None:
            raise InvalidArgument("no stage is waiting", operation="waitpoint.park", entity_id=job.id)

        parked = await self.job_repo.update_fields(
            job.id,
            {
                "status": JobRunStatus.WAITING_USER,
                "stage": stage_name,
                "message": f"Waiting for input: {stage_name}",
                "result": state.to_result(),
                "attempts": REFUND_ATTEMPT,
                "locked_at": None,
                "heartbeat_at": DB_NOW,
            },
            expected_status=[JobRunStatus.RUNNING],
            conn=conn,
        )
        if parked is None:
            raise LeaseLost("root left running before it could park", operation="waitpoint.park", entity_id=job.id)

        log_checkpoint("waitpoint_entered", {"job_id": str(job.id), "stage": stage_name})
        return parked

    async def pending_prompt(self, owner_user_id: UUID, job_id: UUID) -> Optional[Tuple[str, Dict[str, Any]]]:
        """(stage_name, prompt) of a waiting job, or None."""
        job = await self.job_repo.get(job_id, owner_user_id=owner_user_id)
        if job is None:
            raise NotFound("job not found", operation="waitpoint.prompt", entity_id=job_id)
        if job.status != JobRunStatus.WAITING_USER:
            return None
        state = OrchestratorState.from_result(job.result)
        name = state.waiting_stage()
        if name is None:
            return None
        return name, state.stages[name].prompt or {}

    async def resume(
        self,
        owner_user_id: UUID,
        job_id: UUID,
        stage_name: str,
        decision: Dict[str, Any],
    ) -> JobRun:
        """
        Submit a decision for a waiting stage.

        Raises:
            NotFound: job missing or not owned
            StateViolation: job not waiting, or waiting on another stage
        """
        if not isinstance(decision, dict):
            raise InvalidArgument("decision must be an object", operation="waitpoint.resume")

        async with transaction(self.pool) as conn:
            job = await self.job_repo.lock(job_id, owner_user_id, conn)
            if job is None:
                raise NotFound("job not found", operation="waitpoint.resume", entity_id=job_id)
            if job.status != JobRunStatus.WAITING_USER:
                raise StateViolation(
                    f"job is {job.status.value}, not waiting for a decision",
                    operation="waitpoint.resume",
                    entity_id=job_id,
                )

            state = OrchestratorState.from_result(job.result)
            stage = state.stages.get(stage_name)
            if stage is None or stage.status != StageStatus.WAITING_USER:
                raise StateViolation(
                    f"stage {stage_name} is not waiting for a decision",
                    operation="waitpoint.resume",
                    entity_id=job_id,
                )

            stage.decision = decision
            stage.status = StageStatus.PENDING
            stage.wait_until = None
            state.wait_until = None

            resumed = await self.job_repo.update_fields(
                job_id,
                {
                    "status": JobRunStatus.QUEUED,
                    "stage": stage_name,
                    "message": f"Resuming {stage_name}",
                    "result": state.to_result(),
                    "locked_at": None,
                    "heartbeat_at": None,
                    "run_after": None,
                },
                expected_status=[JobRunStatus.WAITING_USER],
                conn=conn,
            )
            if resumed is None:
                raise StateViolation("job changed status during resume", operation="waitpoint.resume", entity_id=job_id)

        log_checkpoint("waitpoint_resumed", {"job_id": str(job_id), "stage": stage_name})
        logger.info(f"Resumed job {job_id} at stage {stage_name}")
        await self.notifier.job_restarted(resumed)
        return resumed


__all__ = ["WaitpointService", "REFUND_ATTEMPT"]
