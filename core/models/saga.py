# ============================================================================
# SAGA MODELS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core model - Compensation log for a root job
# PURPOSE: SagaRun (one per root job) and its ordered SagaActions
# CREATED: 12 OCT 2026
# ============================================================================
"""
Saga Models

A SagaRun records every external side effect of a root job as an ordered
list of compensating actions. On failure the actions run newest-first.

Payload models validate action payloads per kind at append time; the stored
payload is the validated model dumped to JSON.
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Type
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, field_validator

from core.contracts import (
    ObjectCategory,
    SagaActionKind,
    SagaActionStatus,
    SagaStatus,
    SAGA_TRANSITIONS,
    utc_now,
)


def staging_prefix(saga_id: UUID) -> str:
    """Object key prefix for artifacts staged by a saga."""
    return f"staging/saga/{saga_id}/"


# ============================================================================
# SAGA RUN
# ============================================================================

class SagaRun(BaseModel):
    """
    Maps to: jobcore.saga_run table
    """

    __sql_table__: ClassVar[str] = "saga_run"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["id"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {}
    __sql_indexes__: ClassVar[List[Any]] = [
        {"name": "idx_saga_run_root_job", "columns": ["root_job_id"], "unique": True},
        ("idx_saga_run_owner", ["owner_user_id"]),
    ]

    id: UUID = Field(default_factory=uuid4)
    owner_user_id: UUID
    root_job_id: UUID
    status: SagaStatus = Field(default=SagaStatus.RUNNING)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status == SagaStatus.SUCCEEDED

    def can_transition_to(self, new_status: SagaStatus) -> bool:
        """Same-status transitions are accepted as no-ops."""
        if self.status == new_status:
            return True
        return new_status in SAGA_TRANSITIONS.get(self.status, set())

    @property
    def staging_prefix(self) -> str:
        return staging_prefix(self.id)


# ============================================================================
# ACTION PAYLOADS
# ============================================================================

class ObjectDeleteKeyPayload(BaseModel):
    category: ObjectCategory
    key: str = Field(..., min_length=1)


class ObjectDeletePrefixPayload(BaseModel):
    category: ObjectCategory
    prefix: str = Field(..., min_length=1)

    @field_validator("prefix")
    @classmethod
    def refuse_bucket_root(cls, v: str) -> str:
        if v.strip("/") == "":
            raise ValueError("prefix must not address the container root")
        return v


class VectorDeleteIdsPayload(BaseModel):
    namespace: str = Field(..., min_length=1)
    ids: List[str] = Field(..., min_length=1)


PAYLOAD_MODELS: Dict[SagaActionKind, Type[BaseModel]] = {
    SagaActionKind.OBJECT_DELETE_KEY: ObjectDeleteKeyPayload,
    SagaActionKind.OBJECT_DELETE_PREFIX: ObjectDeletePrefixPayload,
    SagaActionKind.VECTOR_DELETE_IDS: VectorDeleteIdsPayload,
}


def parse_action_payload(kind: SagaActionKind, payload: Dict[str, Any]) -> BaseModel:
    """Validate payload for kind; raises pydantic.ValidationError."""
    return PAYLOAD_MODELS[kind].model_validate(payload)


# ============================================================================
# SAGA ACTION
# ============================================================================

class SagaAction(BaseModel):
    """
    Maps to: jobcore.saga_action table

    seq is gap-free from 1 per saga; kind and payload never change after
    insert. Status moves pending -> done | failed; a failed action is
    retried when compensation is re-invoked.
    """

    __sql_table__: ClassVar[str] = "saga_action"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["id"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {
        "saga_id": "jobcore.saga_run(id)",
    }
    __sql_indexes__: ClassVar[List[Any]] = [
        {"name": "idx_saga_action_seq", "columns": ["saga_id", "seq"], "unique": True},
    ]

    id: UUID = Field(default_factory=uuid4)
    saga_id: UUID
    seq: int = Field(..., ge=1)
    kind: str = Field(..., max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: SagaActionStatus = Field(default=SagaActionStatus.PENDING)
    error: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def canonical_kind(self) -> Optional[SagaActionKind]:
        """Normalized kind, or None for a kind this build does not know."""
        try:
            return SagaActionKind.normalize(self.kind)
        except ValueError:
            return None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "SagaRun",
    "SagaAction",
    "ObjectDeleteKeyPayload",
    "ObjectDeletePrefixPayload",
    "VectorDeleteIdsPayload",
    "PAYLOAD_MODELS",
    "parse_action_payload",
    "staging_prefix",
]
