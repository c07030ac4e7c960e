# ============================================================================
# ERROR TAXONOMY
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Foundation - Typed errors for every component
# PURPOSE: One exception hierarchy shared by repositories, services, workers
# CREATED: 12 OCT 2026
# ============================================================================
"""
Error Taxonomy

Every error carries optional operation / entity_id context so log lines and
job_run.error values can be traced back to the failing call.

Hierarchy:
    JobCoreError
    ├── InvalidArgument
    ├── NotFound            (also "not authenticated" and "not owned")
    ├── Conflict
    │   └── ThreadBusy
    ├── StateViolation
    ├── LeaseLost           (worker no longer owns the row)
    ├── TransientError      (retry with backoff)
    └── FatalError          (never retried)
        └── ConfigError

Handlers raise TransientError / FatalError to choose retry behavior;
anything else is classified by classify_error().
"""

import asyncio
from typing import Optional

import httpx
import psycopg


class JobCoreError(Exception):
    """Base exception for job core operations."""

    def __init__(self, message: str, operation: Optional[str] = None, entity_id: Optional[str] = None):
        self.operation = operation
        self.entity_id = str(entity_id) if entity_id is not None else None
        super().__init__(message)


class InvalidArgument(JobCoreError):
    """Caller supplied a malformed or out-of-range value."""


class NotFound(JobCoreError):
    """Row missing, not owned by the caller, or caller not authenticated."""


class Conflict(JobCoreError):
    """A uniqueness rule rejected the write."""


class ThreadBusy(Conflict):
    """A chat_respond job is already runnable for the thread."""

    def __init__(self, thread_id, operation: Optional[str] = None):
        super().__init__("thread is busy", operation=operation, entity_id=thread_id)


class StateViolation(JobCoreError):
    """Operation not allowed from the row's current status."""


class LeaseLost(JobCoreError):
    """The worker's guarded write found the row canceled or reclaimed."""


class TransientError(JobCoreError):
    """Retryable failure (timeouts, connection resets, 5xx)."""


class FatalError(JobCoreError):
    """Non-retryable failure."""


class ConfigError(FatalError):
    """Missing handler, pipeline or adapter configuration."""


# ============================================================================
# CLASSIFICATION
# ============================================================================

TRANSIENT = "transient"
FATAL = "fatal"

_FATAL_TYPES = (FatalError, InvalidArgument, NotFound, StateViolation)
_TRANSIENT_TYPES = (
    TransientError,
    asyncio.TimeoutError,
    ConnectionError,
    psycopg.OperationalError,
    httpx.TransportError,
)


def classify_error(exc: BaseException) -> str:
    """
    Decide whether a handler error should be retried.

    Unknown exceptions are transient: the attempt budget bounds them.
    """
    if isinstance(exc, _FATAL_TYPES):
        return FATAL
    if isinstance(exc, _TRANSIENT_TYPES):
        return TRANSIENT
    return TRANSIENT


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) == TRANSIENT


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "JobCoreError",
    "InvalidArgument",
    "NotFound",
    "Conflict",
    "ThreadBusy",
    "StateViolation",
    "LeaseLost",
    "TransientError",
    "FatalError",
    "ConfigError",
    "TRANSIENT",
    "FATAL",
    "classify_error",
    "is_retryable",
]
