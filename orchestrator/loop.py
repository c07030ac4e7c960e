# ============================================================================
# ORCHESTRATION LOOP
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Stage state machine for root jobs
# PURPOSE: Drive a claimed root job through its stage DAG
# CREATED: 12 OCT 2026
# ============================================================================
"""
Orchestration Loop

The orchestrator runs inside the worker that claimed a root job. Its whole
memory is the stage map in job_run.result, so any worker can pick a root up
where the last one left off.

One call to run() loops:
1. Poll child jobs of running child stages
2. All stages succeeded -> root succeeded, saga succeeded
3. Launch the first runnable stage (declaration order)
4. Nothing runnable:
   - a stage waits on a user decision -> park (waiting_user)
   - children in flight or a stage in backoff -> yield (queued + run_after)

Every stage boundary is one guarded write (status still running) of result,
stage, progress and heartbeat_at. A failure beyond the stage's retry budget
fails the root; if the stage is compensating the saga is compensated after
the failure commits.

Resume after crash: running stages whose child is missing or finally
failed go back to pending. Inline stages have no child, so they always
re-run; stage handlers must be idempotent.
"""

import asyncio
import logging
import random
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from psycopg_pool import AsyncConnectionPool

from core.config import Defaults, get_defaults
from core.contracts import JobRunStatus, SagaStatus, StageMode, StageStatus, utc_now
from core.errors import FatalError, LeaseLost, TRANSIENT, TransientError, classify_error
from core.logging import log_checkpoint, log_context
from core.models import JobRun, OrchestratorState, PipelineDefinition
from handlers.registry import HandlerContext, HandlerResult, Outcome, StageResult, get_stage_handler_or_raise
from orchestrator.context import StageContext
from orchestrator.engine.evaluator import StageEvaluator, get_evaluator
from repositories import DB_NOW, JobRunRepository, transaction
from services.waitpoint_service import REFUND_ATTEMPT, WaitpointService

if TYPE_CHECKING:
    from services.container import CoreServices

logger = logging.getLogger(__name__)

# Child jobs hold the singleton slot of (root id, stage)
CHILD_ENTITY_PREFIX = "stage:"


class Orchestrator:
    """
    Stage state machine for orchestrated job types.

    Stateless between calls apart from counters; safe to share across
    workers of one process.
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        services: "CoreServices",
        defaults: Optional[Defaults] = None,
        rng: Optional[random.Random] = None,
        evaluator: Optional[StageEvaluator] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            pool: Database connection pool
            services: Service container (saga, waitpoint, job, notifier)
            defaults: Configuration, falls back to get_defaults()
            rng: Source for backoff jitter; seed it for reproducible runs
            evaluator: Stage evaluator
        """
        self.pool = pool
        self.services = services
        self.defaults = defaults or get_defaults()
        self.config = self.defaults.orchestrator
        self.rng = rng or random.Random()
        self.evaluator = evaluator or get_evaluator()
        self.job_repo = JobRunRepository(pool)

        # Metrics
        self._stages_succeeded = 0
        self._stages_retried = 0
        self._stages_failed = 0
        self._yields = 0
        self._parks = 0
        self._compensations = 0

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def run(self, ctx: HandlerContext, pipeline: PipelineDefinition) -> HandlerResult:
        """
        Advance a claimed root job as far as it can go in this claim.

        Returns:
            HandlerResult with persisted=True; the root row already holds
            the outcome.

        Raises:
            LeaseLost: the root was canceled or reclaimed mid-run
        """
        job = ctx.job
        with log_context(job_id=job.id, job_type=job.job_type, component="orchestrator"):
            state = self.evaluator.init_state(pipeline, OrchestratorState.from_result(job.result))
            state.wait_until = None
            await self._ensure_saga(job, state)
            await self._recover(job, pipeline, state)
            log_checkpoint("orchestrator_resumed", {"stages": {n: s.status.value for n, s in state.stages.items()}})
            return await self._drive(ctx, pipeline, state)

    async def _drive(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
    ) -> HandlerResult:
        while True:
            ctx.raise_if_cancelled()

            outcome = await self._poll_children(ctx, pipeline, state)
            if outcome is not None:
                return outcome

            if self.evaluator.is_complete(pipeline, state):
                return await self._succeed(ctx, pipeline, state)

            runnable = self.evaluator.runnable_stages(pipeline, state)
            if runnable:
                outcome = await self._run_stage(ctx, pipeline, state, runnable[0])
                if outcome is not None:
                    return outcome
                continue

            if state.waiting_stage() is not None:
                return await self._park(ctx, state)

            return await self._yield(ctx, pipeline, state)

    # =========================================================================
    # SETUP / RECOVERY
    # =========================================================================

    async def _ensure_saga(self, job: JobRun, state: OrchestratorState) -> None:
        saga_service = self.services.saga_service
        saga = await saga_service.create_or_get(job.owner_user_id, job.id)
        if saga.status in (SagaStatus.FAILED, SagaStatus.COMPENSATED):
            # Root was restarted
            saga = await saga_service.transition_status(saga.id, SagaStatus.RUNNING)
            logger.info(f"Reopened saga {saga.id} for restarted root {job.id}")
        state.saga_id = saga.id

    async def _recover(self, job: JobRun, pipeline: PipelineDefinition, state: OrchestratorState) -> None:
        """
        Return interrupted stages to pending.

        An inline stage left running was cut off by a crash. A child stage is
        only reset when its child row is gone; a failed or canceled child is
        left for _poll_children so it is charged against the stage budget.
        """
        running = [name for name, s in state.stages.items() if s.status == StageStatus.RUNNING]
        if not running:
            return

        child_ids = [state.stages[n].child_job_id for n in running if state.stages[n].child_job_id]
        children = {c.id: c for c in await self.job_repo.get_by_ids(child_ids, owner_user_id=job.owner_user_id)}

        for name in running:
            stage = state.stages[name]
            if stage.child_job_id in children:
                continue
            stage.reset_to_pending()
            logger.info(f"Recovered stage {name} of root {job.id} to pending")

    @staticmethod
    def _child_finally_failed(child: JobRun) -> bool:
        if child.status == JobRunStatus.CANCELED:
            return True
        return child.status == JobRunStatus.FAILED and not child.retry_pending

    # =========================================================================
    # STAGE EXECUTION
    # =========================================================================

    async def _run_stage(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
        name: str,
    ) -> Optional[HandlerResult]:
        stage_def = pipeline.get_stage(name)
        stage = state.stages[name]

        with log_context(stage=name):
            stage.status = StageStatus.RUNNING
            stage.started_at = utc_now()
            stage.finished_at = None
            stage.wait_until = None
            stage.attempts += 1

            if stage_def.mode == StageMode.CHILD:
                try:
                    await self._launch_child(ctx, state, stage_def)
                except (LeaseLost, asyncio.CancelledError):
                    raise
                except Exception as e:
                    return await self._stage_failed(ctx, pipeline, state, name, e)
                return None

            await self._persist(ctx, state, {
                "stage": name,
                "message": stage_def.start_message or f"Running {name}",
            })
            log_checkpoint("stage_started", {"attempt": stage.attempts})

            sctx = StageContext(
                job=ctx.job,
                stage=stage_def,
                state=state,
                services=self.services,
                cancel_event=ctx.cancel_event,
            )
            try:
                handler = get_stage_handler_or_raise(stage_def.handler_name)
                if stage_def.timeout_seconds:
                    result = await asyncio.wait_for(handler(sctx), timeout=stage_def.timeout_seconds)
                else:
                    result = await handler(sctx)
            except (LeaseLost, asyncio.CancelledError):
                raise
            except Exception as e:
                ctx.job = sctx.job
                return await self._stage_failed(ctx, pipeline, state, name, e)
            ctx.job = sctx.job

            if isinstance(result, StageResult) and result.wait_prompt is not None:
                await self._enter_wait(ctx, state, name, result.wait_prompt)
                return None

            outputs = result.outputs if isinstance(result, StageResult) else result
            await self._complete_stage(ctx, pipeline, state, name, outputs)
            return None

    async def _launch_child(self, ctx: HandlerContext, state: OrchestratorState, stage_def) -> None:
        job = ctx.job
        stage = state.stages[stage_def.name]
        payload: Dict[str, Any] = dict(stage_def.child_payload)
        payload.update({
            "root_job_id": str(job.id),
            "stage": stage_def.name,
            "root_payload": job.payload,
        })

        async with transaction(self.pool) as conn:
            child = await self.services.job_service.create_job(
                conn,
                job.owner_user_id,
                stage_def.child_job_type,
                entity_type=f"{CHILD_ENTITY_PREFIX}{stage_def.name}"[:64],
                entity_id=job.id,
                payload=payload,
            )
            stage.child_job_id = child.id
            stage.child_job_type = child.job_type
            stage.child_job_status = child.status.value
            await self._persist(ctx, state, {
                "stage": stage_def.name,
                "message": stage_def.start_message or f"Started {stage_def.name}",
            }, conn=conn)

        log_checkpoint("child_enqueued", {"child_job_id": str(child.id), "child_job_type": child.job_type})
        await self.services.notifier.job_created(child)

    async def _poll_children(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
    ) -> Optional[HandlerResult]:
        names = self.evaluator.running_children(pipeline, state)
        if not names:
            return None

        ids = [state.stages[n].child_job_id for n in names]
        children = {c.id: c for c in await self.job_repo.get_by_ids(ids, owner_user_id=ctx.job.owner_user_id)}

        for name in names:
            stage = state.stages[name]
            child = children.get(stage.child_job_id)
            if child is None:
                error: Optional[Exception] = TransientError(f"child job {stage.child_job_id} disappeared")
            else:
                stage.child_job_status = child.status.value
                error = None
                if child.status == JobRunStatus.SUCCEEDED:
                    with log_context(stage=name):
                        await self._complete_stage(ctx, pipeline, state, name, child.result)
                    continue
                if child.status == JobRunStatus.CANCELED:
                    error = FatalError(f"child job {child.id} was canceled")
                elif self._child_finally_failed(child):
                    message = child.error or f"child job {child.id} failed"
                    error = TransientError(message) if child.retryable else FatalError(message)

            if error is not None:
                with log_context(stage=name):
                    outcome = await self._stage_failed(ctx, pipeline, state, name, error)
                if outcome is not None:
                    return outcome
        return None

    async def _complete_stage(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
        name: str,
        outputs: Any,
    ) -> None:
        stage_def = pipeline.get_stage(name)
        stage = state.stages[name]
        if outputs is None:
            outputs = {}
        elif not isinstance(outputs, dict):
            outputs = {"value": outputs}

        stage.status = StageStatus.SUCCEEDED
        stage.finished_at = utc_now()
        stage.last_error = None
        stage.outputs = outputs
        state.last_progress = self.evaluator.progress(pipeline, state)

        job = await self._persist(ctx, state, {
            "stage": name,
            "progress": state.last_progress,
            "message": stage_def.done_message or f"Finished {name}",
        })
        self._stages_succeeded += 1
        log_checkpoint("stage_succeeded", {"progress": state.last_progress})
        await self.services.notifier.job_progress(job)

    async def _enter_wait(self, ctx: HandlerContext, state: OrchestratorState, name: str, prompt: Dict[str, Any]) -> None:
        stage = state.stages[name]
        WaitpointService.mark_waiting(state, name, prompt)
        # Waiting is not a failed try
        stage.attempts = max(stage.attempts - 1, 0)
        await self._persist(ctx, state, {"stage": name, "message": f"Waiting for input: {name}"})
        log_checkpoint("stage_waiting", {"stage": name})

    async def _stage_failed(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
        name: str,
        exc: Exception,
    ) -> Optional[HandlerResult]:
        """Retry the stage with backoff, or fail the root."""
        stage_def = pipeline.get_stage(name)
        stage = state.stages[name]
        message = str(exc) or exc.__class__.__name__
        budget = stage_def.max_attempts or self.config.stage_max_attempts

        if classify_error(exc) == TRANSIENT and stage.attempts < budget:
            delay = self._backoff(stage.attempts)
            stage.reset_to_pending()
            stage.last_error = message
            stage.wait_until = utc_now() + timedelta(seconds=delay)
            await self._persist(ctx, state, {"stage": name, "message": f"Retrying {name} in {delay:.1f}s"})
            self._stages_retried += 1
            logger.warning(f"Stage {name} attempt {stage.attempts}/{budget} failed, retry in {delay:.2f}s: {message}")
            return None

        stage.status = StageStatus.FAILED
        stage.finished_at = utc_now()
        stage.last_error = message
        self._stages_failed += 1
        logger.error(f"Stage {name} failed after {stage.attempts} attempt(s): {message}")
        return await self._fail_root(ctx, pipeline, state, name, message)

    def _backoff(self, attempts: int) -> float:
        """Claimer backoff for the stage's attempt count, with +/- jitter."""
        base = self.defaults.queue.retry_delay_for(attempts).total_seconds()
        jitter = base * self.config.backoff_jitter * self.rng.uniform(-1.0, 1.0)
        return max(0.0, base + jitter)

    # =========================================================================
    # ROOT OUTCOMES
    # =========================================================================

    async def _persist(
        self,
        ctx: HandlerContext,
        state: OrchestratorState,
        fields: Dict[str, Any],
        conn=None,
    ) -> JobRun:
        """Guarded write of the stage map; LeaseLost if the root left running."""
        fields = dict(fields)
        fields["result"] = state.to_result()
        fields["heartbeat_at"] = DB_NOW
        updated = await self.job_repo.update_fields(
            ctx.job.id,
            fields,
            expected_status=[JobRunStatus.RUNNING],
            conn=conn,
        )
        if updated is None:
            raise LeaseLost("root left running", operation="orchestrator.persist", entity_id=ctx.job.id)
        ctx.job = updated
        return updated

    async def _succeed(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
    ) -> HandlerResult:
        state.last_progress = 100
        doc = state.to_result()
        doc["outputs"] = {name: dict(s.outputs) for name, s in state.stages.items()}

        async with transaction(self.pool) as conn:
            done = await self.job_repo.update_fields(
                ctx.job.id,
                {
                    "status": JobRunStatus.SUCCEEDED,
                    "stage": "done",
                    "progress": 100,
                    "message": "Completed",
                    "error": "",
                    "result": doc,
                    "locked_at": None,
                    "heartbeat_at": DB_NOW,
                },
                expected_status=[JobRunStatus.RUNNING],
                conn=conn,
            )
            if done is None:
                raise LeaseLost("root left running before it could finish", operation="orchestrator.succeed", entity_id=ctx.job.id)
            if state.saga_id is not None:
                await self.services.saga_service.transition_status(state.saga_id, SagaStatus.SUCCEEDED, conn=conn)

        ctx.job = done
        log_checkpoint("root_succeeded", {"stages": len(pipeline.stages)})
        logger.info(f"Root {done.id} ({done.job_type}) succeeded")
        await self.services.notifier.job_done(done)
        return HandlerResult.handled(Outcome.SUCCEEDED, "Completed")

    async def _fail_root(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
        name: str,
        message: str,
    ) -> HandlerResult:
        stage_def = pipeline.get_stage(name)
        compensate = (
            stage_def.compensating
            and self.config.compensation_on_fatal
            and state.saga_id is not None
        )
        if compensate:
            state.compensation = {"failed_stage": name, "status": "pending"}

        async with transaction(self.pool) as conn:
            failed = await self.job_repo.update_fields(
                ctx.job.id,
                {
                    "status": JobRunStatus.FAILED,
                    "stage": name,
                    "message": f"Failed at {name}",
                    "error": message,
                    "retryable": False,
                    "result": state.to_result(),
                    "last_error_at": DB_NOW,
                    "locked_at": None,
                    "heartbeat_at": DB_NOW,
                },
                expected_status=[JobRunStatus.RUNNING],
                conn=conn,
            )
            if failed is None:
                raise LeaseLost("root left running before it could fail", operation="orchestrator.fail", entity_id=ctx.job.id)
            if state.saga_id is not None:
                await self.services.saga_service.transition_status(state.saga_id, SagaStatus.FAILED, conn=conn)

        ctx.job = failed
        log_checkpoint("root_failed", {"failed_stage": name, "compensate": compensate})
        await self.services.notifier.job_failed(failed)

        if compensate:
            await self._compensate(ctx, state)
        return HandlerResult.handled(Outcome.FAILED, message)

    async def _compensate(self, ctx: HandlerContext, state: OrchestratorState) -> None:
        """Run the saga backwards and record the outcome in the compensation marker."""
        self._compensations += 1
        try:
            report = await self.services.saga_service.compensate(state.saga_id)
            state.compensation.update({
                "status": "compensated" if report.complete else "partial",
                "done": report.done,
                "failed": report.failed,
                "skipped": report.skipped,
            })
        except Exception as e:
            # Root is already failed; compensate() is safe to re-invoke later
            logger.error(f"Compensation of saga {state.saga_id} did not run to completion: {e}")
            state.compensation.update({"status": "error", "error": str(e)})

        marked = await self.job_repo.update_fields(
            ctx.job.id,
            {"result": state.to_result()},
            expected_status=[JobRunStatus.FAILED],
        )
        if marked is not None:
            ctx.job = marked

    async def _park(self, ctx: HandlerContext, state: OrchestratorState) -> HandlerResult:
        parked = await self.services.waitpoint_service.park(ctx.job, state)
        ctx.job = parked
        self._parks += 1
        await self.services.notifier.job_progress(parked)
        return HandlerResult.handled(Outcome.WAITING, parked.message)

    async def _yield(
        self,
        ctx: HandlerContext,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
    ) -> HandlerResult:
        """Give the worker back until a child may have moved or a backoff ends."""
        now = utc_now()
        delays = []
        waiting_on = None

        children = self.evaluator.running_children(pipeline, state)
        if children:
            waiting_on = children[0]
            delays.append(self.config.clamp_poll(self.config.min_poll_seconds))

        wake = self.evaluator.next_wake(state)
        if wake is not None:
            delays.append(max((wake - now).total_seconds(), 0.0))
            if waiting_on is None:
                waiting_on = next(
                    (n for n, s in state.stages.items() if s.status == StageStatus.PENDING and s.wait_until),
                    None,
                )

        if not delays:
            raise FatalError(
                f"pipeline {pipeline.job_type} has no runnable stage and nothing in flight",
                operation="orchestrator.yield",
                entity_id=ctx.job.id,
            )

        delay = min(delays)
        state.wait_until = now + timedelta(seconds=delay)
        yielded = await self.job_repo.update_fields(
            ctx.job.id,
            {
                "status": JobRunStatus.QUEUED,
                "stage": waiting_on or ctx.job.stage,
                "message": f"Waiting on {waiting_on}" if waiting_on else "Waiting",
                "result": state.to_result(),
                "attempts": REFUND_ATTEMPT,
                "run_after": state.wait_until,
                "locked_at": None,
                "heartbeat_at": None,
            },
            expected_status=[JobRunStatus.RUNNING],
        )
        if yielded is None:
            raise LeaseLost("root left running before it could yield", operation="orchestrator.yield", entity_id=ctx.job.id)

        ctx.job = yielded
        self._yields += 1
        logger.debug(f"Root {yielded.id} yielded for {delay:.2f}s")
        return HandlerResult.handled(Outcome.REQUEUED, yielded.message)

    # =========================================================================
    # METRICS
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        return {
            "stages_succeeded": self._stages_succeeded,
            "stages_retried": self._stages_retried,
            "stages_failed": self._stages_failed,
            "yields": self._yields,
            "parks": self._parks,
            "compensations": self._compensations,
        }


__all__ = ["Orchestrator", "CHILD_ENTITY_PREFIX"]
