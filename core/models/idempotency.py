# ============================================================================
# IDEMPOTENCY RECORD MODEL
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core model - Replay protection for enqueue
# PURPOSE: Map (owner, operation, entity, key) to the row it created
# CREATED: 12 OCT 2026
# ============================================================================
"""
Idempotency Record

A caller-supplied key reserves a target id inside the same transaction that
creates the target. The primary key makes a second reservation a no-op
(INSERT ... ON CONFLICT DO NOTHING), and the caller then reads back the
original target.
"""

from datetime import datetime
from typing import ClassVar, Dict, List
from uuid import UUID

from pydantic import BaseModel, Field

from core.contracts import utc_now


class IdempotencyRecord(BaseModel):
    """
    Maps to: jobcore.idempotency_key table
    """

    __sql_table__: ClassVar[str] = "idempotency_key"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["owner_user_id", "operation", "entity_key", "idem_key"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {}
    __sql_indexes__: ClassVar[List[tuple]] = [
        ("idx_idempotency_target", ["target_id"]),
    ]

    owner_user_id: UUID
    operation: str = Field(..., max_length=64, description="e.g. enqueue:<job_type>")
    entity_key: str = Field(default="", max_length=200, description="entity_type:entity_id or empty")
    idem_key: str = Field(..., min_length=1, max_length=200)
    target_id: UUID
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["IdempotencyRecord"]
