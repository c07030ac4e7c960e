# ============================================================================
# BASE CONTRACTS & ENUMS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Foundation - Core enums shared by every component
# PURPOSE: Status enums, saga action kinds and notification event kinds
# CREATED: 12 OCT 2026
# ============================================================================
"""
Base contracts for the job core.

These enums cross every boundary:
- SQL (PostgreSQL enum types generated from them)
- Notifications (event kinds on the wire)
- Python (internal processing)

String values are stable; they are persisted and published.
"""

from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    """Timezone-aware UTC now, used for every persisted timestamp."""
    return datetime.now(timezone.utc)


# ============================================================================
# JOB RUN STATUS
# ============================================================================

class JobRunStatus(str, Enum):
    """
    Job run lifecycle states.

    State transitions:
        QUEUED -> RUNNING -> SUCCEEDED
                          -> FAILED -> RUNNING (claimer retry, budget left)
                          -> WAITING_USER -> QUEUED (resume)
                          -> QUEUED (orchestrator yield)
        any non-terminal  -> CANCELED
        FAILED, CANCELED  -> QUEUED (restart only)
    """
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (JobRunStatus.SUCCEEDED, JobRunStatus.FAILED, JobRunStatus.CANCELED)

    def is_active(self) -> bool:
        """Queued, running or parked on a user decision."""
        return not self.is_terminal()

    @classmethod
    def terminal_values(cls) -> list:
        return [s.value for s in cls if s.is_terminal()]

    @classmethod
    def active_values(cls) -> list:
        return [s.value for s in cls if s.is_active()]


class StageStatus(str, Enum):
    """
    Orchestrator stage states, persisted in job_run.result.stages.

    State transitions:
        PENDING -> RUNNING -> SUCCEEDED
                           -> FAILED
                           -> PENDING (retry with backoff, or resume after crash)
                -> WAITING_USER -> PENDING (decision submitted)
    """
    PENDING = "pending"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED)


class StageMode(str, Enum):
    """How a stage executes."""
    INLINE = "inline"    # Stage handler runs inside the root job's worker
    CHILD = "child"      # Stage enqueues a child job and the root polls it


# ============================================================================
# SAGA
# ============================================================================

class SagaStatus(str, Enum):
    """
    Saga run lifecycle.

    State transitions:
        RUNNING -> SUCCEEDED
                -> FAILED -> COMPENSATING
                -> COMPENSATING -> COMPENSATED
                                -> FAILED
        COMPENSATED -> COMPENSATING (re-invoked to retry failed actions)
        FAILED, COMPENSATED -> RUNNING (root job restarted)
    """
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


SAGA_TRANSITIONS = {
    SagaStatus.RUNNING: {SagaStatus.SUCCEEDED, SagaStatus.FAILED, SagaStatus.COMPENSATING},
    SagaStatus.FAILED: {SagaStatus.COMPENSATING, SagaStatus.RUNNING},
    SagaStatus.COMPENSATING: {SagaStatus.COMPENSATED, SagaStatus.FAILED},
    SagaStatus.COMPENSATED: {SagaStatus.COMPENSATING, SagaStatus.RUNNING},
    SagaStatus.SUCCEEDED: set(),
}


class SagaActionStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class SagaActionKind(str, Enum):
    """
    Closed set of compensating actions.

    Older rows may carry provider-specific names; normalize() maps them.
    """
    OBJECT_DELETE_KEY = "object_delete_key"
    OBJECT_DELETE_PREFIX = "object_delete_prefix"
    VECTOR_DELETE_IDS = "vector_delete_ids"

    @classmethod
    def normalize(cls, raw: str) -> "SagaActionKind":
        """
        Map a stored or caller-supplied kind to the canonical enum.

        Raises:
            ValueError: unknown kind
        """
        value = (raw or "").strip().lower()
        value = LEGACY_ACTION_KINDS.get(value, value)
        return cls(value)


LEGACY_ACTION_KINDS = {
    "gcs_delete_key": SagaActionKind.OBJECT_DELETE_KEY.value,
    "gcs_delete_prefix": SagaActionKind.OBJECT_DELETE_PREFIX.value,
    "pinecone_delete_ids": SagaActionKind.VECTOR_DELETE_IDS.value,
}


# ============================================================================
# OBJECT STORE
# ============================================================================

class ObjectCategory(str, Enum):
    """Object store buckets/containers."""
    MATERIAL = "material"
    AVATAR = "avatar"


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class NotifyEvent(str, Enum):
    """Event kinds published after commit."""
    JOB_CREATED = "job_created"
    JOB_PROGRESS = "job_progress"
    JOB_FAILED = "job_failed"
    JOB_DONE = "job_done"
    JOB_CANCELED = "job_canceled"
    JOB_RESTARTED = "job_restarted"
    MESSAGE_CREATED = "message_created"
    TURN_FAILED = "turn_failed"


# ============================================================================
# CHAT
# ============================================================================

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    SENT = "sent"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


class TurnStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    def is_terminal(self) -> bool:
        return self in (TurnStatus.DONE, TurnStatus.ERROR)


# Job types owned by the chat coordinator
JOB_TYPE_CHAT_RESPOND = "chat_respond"
JOB_TYPE_CHAT_REBUILD = "chat_rebuild"
ENTITY_CHAT_THREAD = "chat_thread"


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "utc_now",
    "JobRunStatus",
    "StageStatus",
    "StageMode",
    "SagaStatus",
    "SAGA_TRANSITIONS",
    "SagaActionStatus",
    "SagaActionKind",
    "LEGACY_ACTION_KINDS",
    "ObjectCategory",
    "NotifyEvent",
    "MessageRole",
    "MessageStatus",
    "TurnStatus",
    "JOB_TYPE_CHAT_RESPOND",
    "JOB_TYPE_CHAT_REBUILD",
    "ENTITY_CHAT_THREAD",
]
