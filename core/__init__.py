# ============================================================================
# CORE MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core module initialization
# PURPOSE: Export core contracts, errors and models
# CREATED: 12 OCT 2026
# ============================================================================

from core.contracts import JobRunStatus, StageStatus, SagaStatus, SagaActionKind, NotifyEvent
from core.errors import (
    JobCoreError,
    InvalidArgument,
    NotFound,
    Conflict,
    ThreadBusy,
    StateViolation,
    TransientError,
    FatalError,
    ConfigError,
)
from core.models import JobRun, SagaRun, SagaAction, PipelineDefinition, StageDefinition

__all__ = [
    # Enums
    "JobRunStatus",
    "StageStatus",
    "SagaStatus",
    "SagaActionKind",
    "NotifyEvent",
    # Errors
    "JobCoreError",
    "InvalidArgument",
    "NotFound",
    "Conflict",
    "ThreadBusy",
    "StateViolation",
    "TransientError",
    "FatalError",
    "ConfigError",
    # Models
    "JobRun",
    "SagaRun",
    "SagaAction",
    "PipelineDefinition",
    "StageDefinition",
]
