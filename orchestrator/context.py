# ============================================================================
# STAGE CONTEXT
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Inline stage handler context
# PURPOSE: What a stage handler sees and how it records side effects
# CREATED: 12 OCT 2026
# ============================================================================
"""
Stage Context

Handed to inline stage handlers by the orchestrator.

record_action() is the only way a stage should register an external side
effect: the saga action and the stage artifact commit in one transaction
under the saga row lock, guarded on the root still running. After a crash
the stage is re-invoked and finds its earlier artifacts on ctx.artifacts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from uuid import UUID

from core.contracts import JobRunStatus
from core.errors import LeaseLost
from core.models import JobRun, OrchestratorState, SagaAction, StageDefinition, StageState
from repositories import DB_NOW, transaction

if TYPE_CHECKING:
    from infrastructure.adapters import Adapters
    from services.container import CoreServices

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    job: JobRun
    stage: StageDefinition
    state: OrchestratorState
    services: "CoreServices"
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def job_id(self) -> UUID:
        return self.job.id

    @property
    def owner_user_id(self) -> UUID:
        return self.job.owner_user_id

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def stage_name(self) -> str:
        return self.stage.name

    @property
    def stage_state(self) -> StageState:
        return self.state.stages[self.stage.name]

    @property
    def saga_id(self) -> Optional[UUID]:
        return self.state.saga_id

    @property
    def adapters(self) -> Optional["Adapters"]:
        return self.services.adapters

    @property
    def attempt(self) -> int:
        return self.stage_state.attempts

    @property
    def decision(self) -> Optional[Dict[str, Any]]:
        """Decision submitted through the waitpoint, if any."""
        return self.stage_state.decision

    @property
    def artifacts(self) -> List[Dict[str, Any]]:
        return self.stage_state.artifacts

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise LeaseLost("job is no longer running", operation="stage", entity_id=self.job.id)

    def outputs_of(self, stage_name: str) -> Dict[str, Any]:
        """Outputs of an upstream stage (empty if it has none)."""
        stage = self.state.stages.get(stage_name)
        return dict(stage.outputs) if stage else {}

    def has_artifact(self, name: str) -> bool:
        return any(a.get("name") == name for a in self.artifacts)

    async def record_action(
        self,
        kind: str,
        payload: Dict[str, Any],
        artifact: Optional[Dict[str, Any]] = None,
    ) -> SagaAction:
        """
        Append a compensating action and the stage artifact atomically.

        Call right after the external side effect succeeded.

        Raises:
            LeaseLost: the root was canceled or reclaimed
            FatalError / InvalidArgument: from SagaService.append_action
        """
        self.raise_if_cancelled()
        if self.state.saga_id is None:
            raise LeaseLost("stage has no saga", operation="stage.record_action", entity_id=self.job.id)

        entry = dict(artifact or {})
        entry.setdefault("kind", kind)
        entry.setdefault("payload", payload)

        async with transaction(self.services.pool) as conn:
            action = await self.services.saga_service.append_action(conn, self.state.saga_id, kind, payload)
            entry["action_seq"] = action.seq
            self.stage_state.artifacts.append(entry)

            updated = await self.services.job_service.job_repo.update_fields(
                self.job.id,
                {"result": self.state.to_result(), "heartbeat_at": DB_NOW},
                expected_status=[JobRunStatus.RUNNING],
                conn=conn,
            )
            if updated is None:
                raise LeaseLost(
                    "root left running while recording an action",
                    operation="stage.record_action",
                    entity_id=self.job.id,
                )

        self.job = updated
        logger.debug(f"Stage {self.stage.name} recorded {action.kind} #{action.seq}")
        return action

    async def report_progress(self, message: str) -> None:
        """In-stage status line; progress itself moves at stage boundaries."""
        updated = await self.services.job_service.job_repo.update_fields(
            self.job.id,
            {"message": message, "heartbeat_at": DB_NOW},
            expected_status=[JobRunStatus.RUNNING],
        )
        if updated is None:
            raise LeaseLost("job is no longer running", operation="stage.progress", entity_id=self.job.id)
        self.job = updated


__all__ = ["StageContext"]
