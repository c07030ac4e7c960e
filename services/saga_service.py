# ============================================================================
# SAGA SERVICE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Compensation log and rollback
# PURPOSE: Record side effects of a root job and undo them newest-first
# CREATED: 12 OCT 2026
# ============================================================================
"""
Saga Service

A saga is the compensation log of one root job.

append_action() must run inside the transaction that records the side
effect (typically the stage artifact update), under the saga row lock, so
seq stays gap-free and an action exists iff its stage state committed.

compensate() walks actions in seq DESC order. Each action that is not yet
done is executed through the CompensationExecutor; a failure marks the
action failed and the walk continues. NotFound from an adapter means the
side effect is already gone and counts as done. Re-invoking compensate()
skips done actions and retries failed ones.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool
from pydantic import ValidationError

from core.contracts import SagaActionKind, SagaActionStatus, SagaStatus
from core.errors import ConfigError, FatalError, InvalidArgument, NotFound, StateViolation
from core.logging import log_checkpoint
from core.models import (
    ObjectDeleteKeyPayload,
    ObjectDeletePrefixPayload,
    SagaAction,
    SagaRun,
    VectorDeleteIdsPayload,
    parse_action_payload,
)
from infrastructure.adapters import Adapters
from repositories import SagaActionRepository, SagaRunRepository, transaction

logger = logging.getLogger(__name__)


# ============================================================================
# COMPENSATION EXECUTOR
# ============================================================================

class CompensationExecutor:
    """Maps an action kind to the inverse adapter call."""

    def __init__(self, adapters: Optional[Adapters]):
        self.adapters = adapters or Adapters()

    async def execute(self, action: SagaAction) -> None:
        """
        Run the inverse of one action.

        Raises:
            FatalError: unknown kind or malformed payload
            ConfigError: the adapter the kind needs is not configured
            whatever the adapter raises (NotFound is handled by the caller)
        """
        kind = action.canonical_kind
        if kind is None:
            raise FatalError(f"unknown saga action kind: {action.kind}", operation="compensate", entity_id=action.id)
        try:
            payload = parse_action_payload(kind, action.payload)
        except ValidationError as e:
            raise FatalError(f"invalid payload for {kind.value}: {e}", operation="compensate") from e

        if isinstance(payload, ObjectDeleteKeyPayload):
            await self._objects().delete(payload.category, payload.key)
        elif isinstance(payload, ObjectDeletePrefixPayload):
            await self._objects().delete_prefix(payload.category, payload.prefix)
        elif isinstance(payload, VectorDeleteIdsPayload):
            await self._vectors().delete_ids(payload.namespace, payload.ids)

    def _objects(self):
        if self.adapters.objects is None:
            raise ConfigError("object store adapter is not configured", operation="compensate")
        return self.adapters.objects

    def _vectors(self):
        if self.adapters.vectors is None:
            raise ConfigError("vector store adapter is not configured", operation="compensate")
        return self.adapters.vectors


@dataclass
class CompensationReport:
    saga: SagaRun
    done: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def complete(self) -> bool:
        return self.failed == 0


# ============================================================================
# SAGA SERVICE
# ============================================================================

class SagaService:
    """Service for saga runs and their compensating actions."""

    def __init__(self, pool: AsyncConnectionPool, adapters: Optional[Adapters] = None):
        """
        Initialize saga service.

        Args:
            pool: Database connection pool
            adapters: External adapters used by compensation
        """
        self.pool = pool
        self.saga_repo = SagaRunRepository(pool)
        self.action_repo = SagaActionRepository(pool)
        self.executor = CompensationExecutor(adapters)

    async def create_or_get(
        self,
        owner_user_id: UUID,
        root_job_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> SagaRun:
        """Idempotent: one saga per root job."""
        existing = await self.saga_repo.get_by_root_job(root_job_id, owner_user_id=owner_user_id, conn=conn)
        if existing is not None:
            return existing

        created = await self.saga_repo.create(
            SagaRun(owner_user_id=owner_user_id, root_job_id=root_job_id),
            conn=conn,
        )
        if created is not None:
            return created

        # Concurrent creator won the insert
        existing = await self.saga_repo.get_by_root_job(root_job_id, owner_user_id=owner_user_id, conn=conn)
        if existing is None:
            raise NotFound("saga vanished after conflict", operation="saga.create_or_get", entity_id=root_job_id)
        return existing

    async def get_for_root_job(self, owner_user_id: UUID, root_job_id: UUID) -> Optional[SagaRun]:
        return await self.saga_repo.get_by_root_job(root_job_id, owner_user_id=owner_user_id)

    async def append_action(
        self,
        conn: AsyncConnection,
        saga_id: UUID,
        kind: str,
        payload: Dict[str, Any],
    ) -> SagaAction:
        """
        Append a compensating action inside the caller's transaction.

        Raises:
            InvalidArgument: no transaction, or payload does not fit the kind
            FatalError: unknown kind
            NotFound: saga missing
            StateViolation: saga is not running
        """
        if conn is None:
            raise InvalidArgument("append_action must run in the caller's transaction", operation="saga.append")

        try:
            canonical = SagaActionKind.normalize(kind)
        except ValueError as e:
            raise FatalError(f"unknown saga action kind: {kind}", operation="saga.append", entity_id=saga_id) from e
        try:
            validated = parse_action_payload(canonical, payload)
        except ValidationError as e:
            raise InvalidArgument(f"invalid payload for {canonical.value}: {e}", operation="saga.append") from e

        saga = await self.saga_repo.lock_by_id(saga_id, conn)
        if saga is None:
            raise NotFound("saga not found", operation="saga.append", entity_id=saga_id)
        if saga.status != SagaStatus.RUNNING:
            raise StateViolation(
                f"cannot append to saga in status {saga.status.value}",
                operation="saga.append",
                entity_id=saga_id,
            )

        seq = await self.action_repo.get_max_seq(saga_id, conn) + 1
        action = await self.action_repo.create(
            SagaAction(
                saga_id=saga_id,
                seq=seq,
                kind=canonical.value,
                payload=validated.model_dump(mode="json"),
            ),
            conn,
        )
        logger.info(f"Saga {saga_id} action #{seq} {canonical.value}")
        return action

    async def transition_status(
        self,
        saga_id: UUID,
        status: SagaStatus,
        conn: Optional[AsyncConnection] = None,
    ) -> SagaRun:
        """
        Explicit lifecycle move, validated against SAGA_TRANSITIONS.

        Raises:
            NotFound: saga missing
            StateViolation: transition not allowed
        """
        if conn is None:
            async with transaction(self.pool) as tx:
                return await self._transition(saga_id, status, tx)
        return await self._transition(saga_id, status, conn)

    async def _transition(self, saga_id: UUID, status: SagaStatus, conn: AsyncConnection) -> SagaRun:
        saga = await self.saga_repo.lock_by_id(saga_id, conn)
        if saga is None:
            raise NotFound("saga not found", operation="saga.transition", entity_id=saga_id)
        if saga.status == status:
            return saga
        if not saga.can_transition_to(status):
            raise StateViolation(
                f"saga transition {saga.status.value} -> {status.value} not allowed",
                operation="saga.transition",
                entity_id=saga_id,
            )
        updated = await self.saga_repo.update_status(saga_id, status, expected_status=[saga.status], conn=conn)
        logger.info(f"Saga {saga_id}: {saga.status.value} -> {status.value}")
        return updated

    async def compensate(self, saga_id: UUID) -> CompensationReport:
        """
        Undo recorded side effects newest-first.

        Safe to re-invoke: done actions are skipped, failed ones retried.

        Raises:
            NotFound: saga missing
            StateViolation: saga already succeeded
        """
        saga = await self.transition_status(saga_id, SagaStatus.COMPENSATING)
        log_checkpoint("saga_compensating", {"saga_id": str(saga_id)})

        report = CompensationReport(saga=saga)
        for action in await self.action_repo.list_by_saga_desc(saga_id):
            if action.status == SagaActionStatus.DONE:
                report.skipped += 1
                continue
            try:
                await self.executor.execute(action)
            except NotFound:
                logger.info(f"Saga {saga_id} action #{action.seq}: target already absent")
            except Exception as e:
                report.failed += 1
                logger.warning(f"Saga {saga_id} action #{action.seq} {action.kind} failed: {e}")
                await self.action_repo.update_status(action.id, SagaActionStatus.FAILED, error=str(e))
                continue
            await self.action_repo.update_status(action.id, SagaActionStatus.DONE)
            report.done += 1

        report.saga = await self.transition_status(saga_id, SagaStatus.COMPENSATED)
        log_checkpoint(
            "saga_compensated",
            {"saga_id": str(saga_id), "done": report.done, "failed": report.failed, "skipped": report.skipped},
        )
        return report


__all__ = ["SagaService", "CompensationExecutor", "CompensationReport"]
