# ============================================================================
# HANDLER REGISTRY
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Handler, stage and pipeline registration
# PURPOSE: Resolve job handlers by job_type and stage handlers by name
# CREATED: 12 OCT 2026
# ============================================================================
"""
Handler Registry

Process-wide registry the worker runtime dispatches through.

Three kinds of entries:
- Job handlers (register_handler), keyed by job_type. Leaf jobs.
- Stage handlers (register_stage), keyed by stage handler name. Invoked by
  the orchestrator for inline stages.
- Pipelines (register_pipeline), keyed by job_type. Registering a pipeline
  also registers a job handler that drives it through the orchestrator.

Design:
- Handlers are registered at import time via decorator
- Fail-fast on duplicate registration
- Supports both sync and async handlers
- Unknown job_type resolves to ConfigError (fatal, never retried)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import UUID

from core.contracts import utc_now
from core.errors import ConfigError, LeaseLost
from core.models import JobRun, PipelineDefinition

if TYPE_CHECKING:
    from infrastructure.adapters import Adapters
    from services.container import CoreServices

logger = logging.getLogger(__name__)


# ============================================================================
# HANDLER TYPES
# ============================================================================

ProgressCallback = Callable[[str, int, str], Awaitable[None]]


@dataclass
class HandlerContext:
    """
    Context passed to job handler functions.

    cancel_event is set when the row stops being ours (canceled, or the
    lease heartbeat found it reclaimed). Long handlers should check
    ctx.cancelled between steps.
    """
    job: JobRun
    worker_id: str = ""
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    adapters: Optional["Adapters"] = None
    services: Optional["CoreServices"] = None

    # Progress callback (stage, percent, message)
    progress_callback: Optional[ProgressCallback] = None

    @property
    def job_id(self) -> UUID:
        return self.job.id

    @property
    def job_type(self) -> str:
        return self.job.job_type

    @property
    def owner_user_id(self) -> UUID:
        return self.job.owner_user_id

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def attempt(self) -> int:
        return self.job.attempts

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise LeaseLost("job is no longer running", operation="handler", entity_id=self.job.id)

    async def report_progress(self, stage: str, progress: int, message: str = "") -> None:
        """Report progress if callback is available."""
        if self.progress_callback:
            await self.progress_callback(stage, progress, message)


class Outcome(str, Enum):
    """What the worker should do with the row after the handler returns."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUEUED = "requeued"      # back to queued, claimable after requeue_after
    WAITING = "waiting"        # parked in waiting_user


@dataclass
class HandlerResult:
    """
    Result returned by handler functions.

    persisted=True means the handler already wrote the row's new state in
    its own transaction (the orchestrator does this); the worker then only
    records stats.
    """
    outcome: Outcome = Outcome.SUCCEEDED
    output: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    retryable: bool = True
    requeue_after: Optional[float] = None
    message: str = ""
    persisted: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    @classmethod
    def success_result(cls, output: Optional[Dict[str, Any]] = None, message: str = "") -> "HandlerResult":
        """Create a success result."""
        return cls(outcome=Outcome.SUCCEEDED, output=output or {}, message=message)

    @classmethod
    def failure_result(cls, error_message: str, retryable: bool = True) -> "HandlerResult":
        """Create a failure result."""
        return cls(outcome=Outcome.FAILED, error_message=error_message, retryable=retryable)

    @classmethod
    def requeue_result(cls, after_seconds: float, message: str = "") -> "HandlerResult":
        """Give the worker back; the row is claimable again after the delay."""
        return cls(outcome=Outcome.REQUEUED, requeue_after=after_seconds, message=message)

    @classmethod
    def handled(cls, outcome: "Outcome", message: str = "") -> "HandlerResult":
        """The handler already persisted the outcome."""
        return cls(outcome=outcome, message=message, persisted=True)


# Handler function type
HandlerFunc = Callable[[HandlerContext], Union[HandlerResult, Awaitable[HandlerResult]]]

# Stage handler: receives orchestrator.context.StageContext, returns
# outputs dict, a StageResult, or None
StageFunc = Callable[[Any], Awaitable[Any]]

# Final-failure hook: receives (CoreServices, failed JobRun) once the row is
# failed with no retry left
FailureHook = Callable[[Any, Any], Awaitable[None]]


@dataclass
class StageResult:
    """Return value of a stage handler that wants more than outputs."""
    outputs: Dict[str, Any] = field(default_factory=dict)
    wait_prompt: Optional[Dict[str, Any]] = None

    @classmethod
    def done(cls, outputs: Optional[Dict[str, Any]] = None) -> "StageResult":
        return cls(outputs=outputs or {})

    @classmethod
    def wait(cls, prompt: Dict[str, Any]) -> "StageResult":
        """Park the stage in waiting_user with a prompt for the decider."""
        return cls(wait_prompt=prompt)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class HandlerError(Exception):
    """Base exception for handler registration errors."""
    pass


class DuplicateHandlerError(HandlerError):
    """Raised when a handler name is already registered."""
    def __init__(self, handler_name: str):
        self.handler_name = handler_name
        super().__init__(f"Handler already registered: {handler_name}")


# ============================================================================
# REGISTRY
# ============================================================================

# Global registries
_handlers: Dict[str, HandlerFunc] = {}
_handler_metadata: Dict[str, Dict[str, Any]] = {}
_failure_hooks: Dict[str, FailureHook] = {}
_stages: Dict[str, StageFunc] = {}
_pipelines: Dict[str, PipelineDefinition] = {}


def register_handler(
    job_type: str,
    *,
    description: str = "",
    timeout_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    tags: Optional[List[str]] = None,
    on_final_failure: Optional[FailureHook] = None,
) -> Callable[[HandlerFunc], HandlerFunc]:
    """
    Decorator to register a job handler.

    Args:
        job_type: Job type the handler runs (must be unique)
        description: Human-readable description
        timeout_seconds: Per-attempt timeout; None means no limit
        max_attempts: Claim budget for new rows of this type; None uses config
        tags: Optional tags for categorization
        on_final_failure: Awaited after the row is failed for good (fatal,
            budget spent, timed out on the last attempt or lease expired)

    Example:
        @register_handler("material_ingest", max_attempts=3)
        async def ingest(ctx: HandlerContext) -> HandlerResult:
            return HandlerResult.success_result({"chunks": 12})
    """
    def decorator(func: HandlerFunc) -> HandlerFunc:
        if job_type in _handlers:
            raise DuplicateHandlerError(job_type)

        _handlers[job_type] = func
        if on_final_failure is not None:
            _failure_hooks[job_type] = on_final_failure
        _handler_metadata[job_type] = {
            "job_type": job_type,
            "description": description,
            "timeout_seconds": timeout_seconds,
            "max_attempts": max_attempts,
            "tags": tags or [],
            "function": func.__name__,
            "module": func.__module__,
            "is_async": asyncio.iscoroutinefunction(func),
            "registered_at": utc_now().isoformat(),
        }

        logger.debug(f"Registered handler: {job_type} ({func.__module__}.{func.__name__})")
        return func

    return decorator


def get_handler(job_type: str) -> Optional[HandlerFunc]:
    return _handlers.get(job_type)


def get_handler_or_raise(job_type: str) -> HandlerFunc:
    """
    Get a handler by job_type.

    Raises:
        ConfigError: nothing registered (fatal for the job)
    """
    handler = _handlers.get(job_type)
    if handler is None:
        raise ConfigError(f"no handler registered for job_type={job_type}", operation="dispatch")
    return handler


def list_handlers() -> List[Dict[str, Any]]:
    return list(_handler_metadata.values())


def get_handler_metadata(job_type: str) -> Optional[Dict[str, Any]]:
    return _handler_metadata.get(job_type)


def max_attempts_for(job_type: str) -> Optional[int]:
    """Per-type claim budget override, None when the type uses the default."""
    meta = _handler_metadata.get(job_type)
    return meta["max_attempts"] if meta else None


def timeout_for(job_type: str) -> Optional[float]:
    meta = _handler_metadata.get(job_type)
    return meta["timeout_seconds"] if meta else None


def final_failure_hook_for(job_type: str) -> Optional[FailureHook]:
    return _failure_hooks.get(job_type)


def registered_job_types() -> List[str]:
    return sorted(_handlers)


# ============================================================================
# STAGES
# ============================================================================

def register_stage(name: str) -> Callable[[StageFunc], StageFunc]:
    """
    Decorator to register an inline stage handler.

    Stage handlers must be idempotent: after a crash the orchestrator
    re-invokes them, and they find prior work in ctx.state.artifacts.
    """
    def decorator(func: StageFunc) -> StageFunc:
        if name in _stages:
            raise DuplicateHandlerError(f"stage:{name}")
        _stages[name] = func
        logger.debug(f"Registered stage handler: {name} ({func.__module__}.{func.__name__})")
        return func

    return decorator


def get_stage_handler(name: str) -> Optional[StageFunc]:
    return _stages.get(name)


def get_stage_handler_or_raise(name: str) -> StageFunc:
    handler = _stages.get(name)
    if handler is None:
        raise ConfigError(f"no stage handler registered for stage={name}", operation="stage")
    return handler


# ============================================================================
# PIPELINES
# ============================================================================

def register_pipeline(definition: PipelineDefinition) -> PipelineDefinition:
    """
    Register an orchestrated job type.

    The generated job handler hands the job to the orchestrator found on
    ctx.services.
    """
    job_type = definition.job_type
    if job_type in _pipelines:
        raise DuplicateHandlerError(f"pipeline:{job_type}")

    async def run_pipeline(ctx: HandlerContext) -> HandlerResult:
        if ctx.services is None or ctx.services.orchestrator is None:
            raise ConfigError(f"pipeline {job_type} needs an orchestrator", operation="dispatch")
        return await ctx.services.orchestrator.run(ctx, _pipelines[job_type])

    run_pipeline.__name__ = f"pipeline_{job_type}"
    register_handler(
        job_type,
        description=definition.description or f"Pipeline {job_type} v{definition.version}",
        max_attempts=definition.max_attempts,
        tags=["pipeline"],
    )(run_pipeline)
    _pipelines[job_type] = definition
    logger.info(f"Registered pipeline: {job_type} v{definition.version} ({len(definition.stages)} stages)")
    return definition


def get_pipeline(job_type: str) -> Optional[PipelineDefinition]:
    return _pipelines.get(job_type)


def list_pipelines() -> List[PipelineDefinition]:
    return list(_pipelines.values())


def validate_stage_handlers(definition: PipelineDefinition) -> List[str]:
    """
    Check that every referenced handler exists.

    Returns:
        List of missing handler names (empty if all valid)
    """
    missing = []
    for stage in definition.stages:
        if stage.mode.value == "inline" and stage.handler_name not in _stages:
            missing.append(stage.handler_name)
    return missing


def clear_handlers() -> None:
    """
    Clear all registrations.

    Primarily for testing.
    """
    _handlers.clear()
    _failure_hooks.clear()
    _handler_metadata.clear()
    _stages.clear()
    _pipelines.clear()
    logger.debug("Cleared all handlers")


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "register_handler",
    "get_handler",
    "get_handler_or_raise",
    "list_handlers",
    "get_handler_metadata",
    "max_attempts_for",
    "timeout_for",
    "final_failure_hook_for",
    "registered_job_types",
    "register_stage",
    "get_stage_handler",
    "get_stage_handler_or_raise",
    "register_pipeline",
    "get_pipeline",
    "list_pipelines",
    "validate_stage_handlers",
    "clear_handlers",
    "HandlerFunc",
    "StageFunc",
    "FailureHook",
    "HandlerContext",
    "HandlerResult",
    "StageResult",
    "Outcome",
    "HandlerError",
    "DuplicateHandlerError",
]
