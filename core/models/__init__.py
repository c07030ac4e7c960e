# ============================================================================
# MODELS MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Model exports
# PURPOSE: Central export point for all Pydantic models
# CREATED: 12 OCT 2026
# ============================================================================
"""
Models Module - Central Export Point

Models define SQL metadata via __sql_* ClassVar attributes for DDL generation.

Single Source of Truth Pattern:
    - Pydantic models define structure
    - PydanticToSQL reads __sql_* metadata
    - PostgreSQL schema generated from models
"""

from core.models.job_run import JobRun, RUNNABLE_PREDICATE
from core.models.idempotency import IdempotencyRecord
from core.models.saga import (
    SagaRun,
    SagaAction,
    ObjectDeleteKeyPayload,
    ObjectDeletePrefixPayload,
    VectorDeleteIdsPayload,
    parse_action_payload,
    staging_prefix,
)
from core.models.chat import ChatThread, ChatMessage, ChatTurn
from core.models.pipeline import StageDefinition, PipelineDefinition
from core.models.orchestrator_state import (
    StageState,
    OrchestratorState,
    reset_result_for_restart,
)

__all__ = [
    # Jobs
    "JobRun",
    "RUNNABLE_PREDICATE",
    "IdempotencyRecord",
    # Saga
    "SagaRun",
    "SagaAction",
    "ObjectDeleteKeyPayload",
    "ObjectDeletePrefixPayload",
    "VectorDeleteIdsPayload",
    "parse_action_payload",
    "staging_prefix",
    # Chat
    "ChatThread",
    "ChatMessage",
    "ChatTurn",
    # Pipelines
    "StageDefinition",
    "PipelineDefinition",
    "StageState",
    "OrchestratorState",
    "reset_result_for_restart",
]
