# ============================================================================
# WORKER EXECUTOR
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Handler execution engine
# PURPOSE: Run one claimed job's handler with lease renewal, timeout and cancel
# CREATED: 12 OCT 2026
# ============================================================================
"""
Worker Executor

Executes handlers from the registry with:
- Lease renewal (heartbeat_at every stale_lease / 4)
- Cooperative cancel (cancel_event), then hard cancel after a grace period
- Optional per-handler timeout
- Error capture and transient / fatal classification

The executor never writes the job's outcome; JobWorker does that with a
guarded update once execute() returns.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from core.errors import FATAL, LeaseLost, TransientError, classify_error
from handlers.registry import (
    HandlerContext,
    HandlerResult,
    get_handler_or_raise,
    timeout_for,
)
from repositories import JobRunRepository

logger = logging.getLogger(__name__)


# ============================================================================
# LEASE KEEPER
# ============================================================================

class LeaseKeeper:
    """
    Background heartbeat for one claimed row.

    A heartbeat that matches no running row means the job was canceled or
    reclaimed: the cancel event is set and renewal stops. Store errors are
    logged and retried on the next tick; the stale window is four ticks.
    """

    def __init__(
        self,
        job_repo: JobRunRepository,
        job_id: UUID,
        period_seconds: float,
        cancel_event: asyncio.Event,
    ):
        self.job_repo = job_repo
        self.job_id = job_id
        self.period_seconds = period_seconds
        self.cancel_event = cancel_event
        self.beats = 0
        self.lost = False
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "LeaseKeeper":
        self._task = asyncio.create_task(self._run(), name=f"lease-{self.job_id}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.period_seconds)
            try:
                alive = await self.job_repo.heartbeat(self.job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Heartbeat for job {self.job_id} failed: {e}")
                continue
            if not alive:
                self.lost = True
                logger.warning(f"Lease on job {self.job_id} lost (canceled or reclaimed)")
                self.cancel_event.set()
                return
            self.beats += 1


# ============================================================================
# EXECUTION CONTEXT
# ============================================================================

@dataclass
class ExecutionContext:
    """Timing for a single handler invocation."""
    job_id: UUID
    job_type: str
    start_time: float

    @property
    def elapsed_ms(self) -> int:
        """Elapsed time in milliseconds."""
        return int((time.time() - self.start_time) * 1000)


# ============================================================================
# EXECUTOR
# ============================================================================

class JobExecutor:
    """
    Executes job handlers.

    Takes a HandlerContext, runs the registered handler, returns a
    HandlerResult. Handler exceptions become failure results; LeaseLost and
    task cancellation propagate.
    """

    def __init__(self, cancel_grace_seconds: float = 5.0):
        """
        Initialize executor.

        Args:
            cancel_grace_seconds: Time a handler gets to stop on its own
                after cancel_event is set
        """
        self.cancel_grace_seconds = cancel_grace_seconds

    async def execute(self, ctx: HandlerContext) -> HandlerResult:
        """
        Run the handler for ctx.job.

        Raises:
            LeaseLost: the row stopped being ours while the handler ran
        """
        exec_ctx = ExecutionContext(job_id=ctx.job_id, job_type=ctx.job_type, start_time=time.time())
        logger.info(f"Executing job {ctx.job_id}: type={ctx.job_type}, attempt={ctx.attempt}")

        try:
            handler = get_handler_or_raise(ctx.job_type)
            raw = await self._run_guarded(handler, ctx, timeout_for(ctx.job_type))
            result = self._normalize(raw)

        except LeaseLost:
            logger.info(f"Job {ctx.job_id} abandoned after {exec_ctx.elapsed_ms}ms: lease lost")
            raise

        except asyncio.TimeoutError:
            timeout = timeout_for(ctx.job_type)
            logger.error(f"Job {ctx.job_id} timed out after {timeout}s")
            return HandlerResult.failure_result(f"handler timed out after {timeout} seconds", retryable=True)

        except Exception as e:
            kind = classify_error(e)
            error_msg = f"{type(e).__name__}: {e}"
            if kind == FATAL:
                logger.error(f"Job {ctx.job_id} failed fatally: {error_msg}")
            else:
                logger.exception(f"Job {ctx.job_id} failed with exception")
            return HandlerResult.failure_result(error_msg[:2000], retryable=kind != FATAL)

        logger.info(
            f"Job {ctx.job_id} handler finished: "
            f"outcome={result.outcome.value}, duration={exec_ctx.elapsed_ms}ms"
        )
        return result

    async def _run_guarded(self, handler, ctx: HandlerContext, timeout: Optional[float]) -> Any:
        """Race the handler against its timeout and the cancel event."""
        handler_task = asyncio.create_task(self._invoke(handler, ctx))
        cancel_task = asyncio.create_task(ctx.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {handler_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if handler_task in done:
                return handler_task.result()

            if not done:
                await self._stop(handler_task)
                raise asyncio.TimeoutError()

            # Cancel requested: cooperative stop first
            done, _ = await asyncio.wait({handler_task}, timeout=self.cancel_grace_seconds)
            if handler_task in done:
                # Whatever it returned, the row is no longer ours
                if not handler_task.cancelled():
                    handler_task.exception()
            else:
                logger.warning(f"Job {ctx.job_id} ignored cancel for {self.cancel_grace_seconds}s; cancelling task")
                await self._stop(handler_task)
            raise LeaseLost("job canceled or reclaimed", operation="execute", entity_id=ctx.job_id)
        finally:
            cancel_task.cancel()
            if not handler_task.done():
                await self._stop(handler_task)

    @staticmethod
    async def _stop(task: asyncio.Task) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Handler raised while being cancelled: {e}")

    @staticmethod
    async def _invoke(handler, ctx: HandlerContext) -> Any:
        """Handles both sync and async handlers."""
        if asyncio.iscoroutinefunction(handler):
            return await handler(ctx)
        # Run sync handler in thread pool
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, handler, ctx)

    @staticmethod
    def _normalize(raw: Any) -> HandlerResult:
        if isinstance(raw, HandlerResult):
            return raw
        if raw is None:
            return HandlerResult.success_result()
        if isinstance(raw, dict):
            return HandlerResult.success_result(raw)
        raise TransientError(f"handler returned unsupported value of type {type(raw).__name__}")


__all__ = ["LeaseKeeper", "ExecutionContext", "JobExecutor"]
