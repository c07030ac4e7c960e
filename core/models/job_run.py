# ============================================================================
# JOB RUN MODEL
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core model - Unit of background work
# PURPOSE: Durable job row claimed, leased and advanced by workers
# CREATED: 12 OCT 2026
# ============================================================================
"""
Job Run Model

Every unit of background work is one job_run row. Workers claim rows with a
lease (locked_at / heartbeat_at); the lease exists exactly while the row is
running.

A row is "runnable" when it still occupies its entity's singleton slot:
queued, running, waiting_user, or failed with retries left. The partial
unique index idx_job_run_singleton enforces at most one runnable row per
(owner_user_id, entity_type, entity_id, job_type).
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field

from core.contracts import JobRunStatus, utc_now


# Predicate shared by the singleton index and has_runnable_for_entity
RUNNABLE_PREDICATE = (
    "deleted_at IS NULL AND ("
    "status IN ('queued', 'running', 'waiting_user') "
    "OR (status = 'failed' AND retryable AND attempts < max_attempts))"
)

ALLOWED_TRANSITIONS = {
    JobRunStatus.QUEUED: {JobRunStatus.RUNNING, JobRunStatus.CANCELED},
    JobRunStatus.RUNNING: {
        JobRunStatus.SUCCEEDED,
        JobRunStatus.FAILED,
        JobRunStatus.WAITING_USER,
        JobRunStatus.QUEUED,
        JobRunStatus.CANCELED,
    },
    JobRunStatus.WAITING_USER: {JobRunStatus.QUEUED, JobRunStatus.CANCELED},
    JobRunStatus.SUCCEEDED: set(),
    JobRunStatus.FAILED: {JobRunStatus.RUNNING},
    JobRunStatus.CANCELED: set(),
}

RESTARTABLE = {JobRunStatus.FAILED, JobRunStatus.CANCELED}


class JobRun(BaseModel):
    """
    A job run row.

    Maps to: jobcore.job_run table

    Lifecycle:
        1. Enqueued with status=QUEUED, stage="queued", attempts=0
        2. Claimed: RUNNING, attempts+1, lease set
        3. Handler outcome: SUCCEEDED | FAILED (retryable or not) |
           WAITING_USER | QUEUED (orchestrator yield)
        4. Cancel from any non-terminal status; restart from FAILED/CANCELED
    """

    # =========================================================================
    # SQL DDL METADATA (Used by PydanticToSQL generator)
    # =========================================================================
    __sql_table__: ClassVar[str] = "job_run"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["id"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {}
    __sql_indexes__: ClassVar[List[Any]] = [
        # Claim scan
        ("idx_job_run_claim", ["status", "created_at", "id"], "deleted_at IS NULL"),
        {
            "name": "idx_job_run_singleton",
            "columns": ["owner_user_id", "entity_type", "entity_id", "job_type"],
            "unique": True,
            "partial_where": f"entity_id IS NOT NULL AND {RUNNABLE_PREDICATE}",
        },
        {
            "name": "idx_job_run_entity_latest",
            "columns": ["owner_user_id", "entity_type", "entity_id", "job_type", "created_at", "id"],
            "desc_columns": ["created_at", "id"],
        },
        ("idx_job_run_heartbeat", ["heartbeat_at"], "status = 'running'"),
    ]

    id: UUID = Field(default_factory=uuid4)
    owner_user_id: UUID
    job_type: str = Field(..., min_length=1, max_length=64)
    entity_type: str = Field(default="", max_length=64)
    entity_id: Optional[UUID] = None

    status: JobRunStatus = Field(default=JobRunStatus.QUEUED)
    stage: str = Field(default="queued", max_length=128)
    progress: int = Field(default=0, ge=0, le=100)
    message: str = Field(default="", description="Human-readable status line")
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1, description="Claim budget for this row")
    retryable: bool = Field(default=True, description="False after a fatal failure")
    error: str = Field(default="")

    locked_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    run_after: Optional[datetime] = Field(
        default=None,
        description="Queued rows are not claimed before this instant",
    )

    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status.is_terminal()

    @property
    def retry_pending(self) -> bool:
        """Failed but will be reclaimed once backoff elapses."""
        return (
            self.status == JobRunStatus.FAILED
            and self.retryable
            and self.attempts < self.max_attempts
        )

    @property
    def is_runnable(self) -> bool:
        """Occupies the entity's singleton slot (see RUNNABLE_PREDICATE)."""
        if self.deleted_at is not None:
            return False
        return self.status.is_active() or self.retry_pending

    def can_transition_to(self, new_status: JobRunStatus) -> bool:
        """Validate a status transition (restart is checked by can_restart)."""
        if self.status == new_status:
            return True
        return new_status in ALLOWED_TRANSITIONS.get(self.status, set())

    def can_restart(self) -> bool:
        return self.status in RESTARTABLE

    def channel_id(self) -> str:
        """Notification channel for this row's owner."""
        return f"user:{self.owner_user_id}"


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["JobRun", "RUNNABLE_PREDICATE", "ALLOWED_TRANSITIONS", "RESTARTABLE"]
