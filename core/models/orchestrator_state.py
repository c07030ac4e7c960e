# ============================================================================
# ORCHESTRATOR STATE MODEL
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core model - Stage map persisted in a root job's result
# PURPOSE: Round-trip stage states through job_run.result
# CREATED: 12 OCT 2026
# ============================================================================
"""
Orchestrator State

The root job's result document is the orchestrator's whole memory:

    {
      "version": 1,
      "stages": {"<name>": {"status": "...", "child_job_id": "...", ...}},
      "wait_until": "...",
      "last_progress": 40,
      "saga_id": "...",
      "compensation": {"failed_stage": "...", "status": "..."},
      "outputs": {...}                      # only after success
    }

Keys this build does not know are preserved on round-trip.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from core.contracts import StageMode, StageStatus

STATE_VERSION = 1


class StageState(BaseModel):
    """One entry of result.stages."""
    model_config = ConfigDict(extra="allow")

    status: StageStatus = Field(default=StageStatus.PENDING)
    mode: StageMode = Field(default=StageMode.INLINE)
    attempts: int = Field(default=0, ge=0)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    wait_until: Optional[datetime] = None

    child_job_id: Optional[UUID] = None
    child_job_type: Optional[str] = None
    child_job_status: Optional[str] = None

    prompt: Optional[Dict[str, Any]] = None
    decision: Optional[Dict[str, Any]] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    artifacts: List[Dict[str, Any]] = Field(default_factory=list)

    def reset_to_pending(self) -> None:
        """Forget everything tied to a previous run of this stage."""
        self.status = StageStatus.PENDING
        self.started_at = None
        self.finished_at = None
        self.last_error = None
        self.wait_until = None
        self.child_job_id = None
        self.child_job_status = None


class OrchestratorState(BaseModel):
    """Stage map plus orchestration metadata."""
    model_config = ConfigDict(extra="allow")

    version: int = Field(default=STATE_VERSION)
    stages: Dict[str, StageState] = Field(default_factory=dict)
    wait_until: Optional[datetime] = None
    last_progress: int = Field(default=0, ge=0, le=100)
    saga_id: Optional[UUID] = None
    compensation: Optional[Dict[str, Any]] = None

    @staticmethod
    def is_orchestrated(result: Optional[Dict[str, Any]]) -> bool:
        return bool(result) and isinstance(result.get("stages"), dict)

    @classmethod
    def from_result(cls, result: Optional[Dict[str, Any]]) -> "OrchestratorState":
        if not cls.is_orchestrated(result):
            return cls()
        return cls.model_validate(result)

    def to_result(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def ensure_stage(self, name: str, mode: StageMode = StageMode.INLINE) -> StageState:
        """Idempotent; an existing entry keeps its status and mode."""
        stage = self.stages.get(name)
        if stage is None:
            stage = StageState(mode=mode)
            self.stages[name] = stage
        return stage

    def child_job_ids(self) -> List[UUID]:
        return [s.child_job_id for s in self.stages.values() if s.child_job_id is not None]

    def waiting_stage(self) -> Optional[str]:
        for name, stage in self.stages.items():
            if stage.status == StageStatus.WAITING_USER:
                return name
        return None

    def reset_for_restart(self) -> None:
        """
        Prepare the state for a restarted root job.

        Succeeded stages are kept unless their side effects were compensated;
        everything else returns to pending with child ids cleared.
        """
        compensated = self.compensation is not None
        for stage in self.stages.values():
            if stage.status == StageStatus.SUCCEEDED and not compensated:
                continue
            stage.reset_to_pending()
            stage.attempts = 0
            stage.prompt = None
            stage.decision = None
            if compensated:
                stage.outputs = {}
                stage.artifacts = []
        self.wait_until = None
        self.compensation = None
        if compensated:
            self.last_progress = 0


def reset_result_for_restart(result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Restart helper for job_run.result; non-orchestrated results are cleared."""
    if not OrchestratorState.is_orchestrated(result):
        return {}
    state = OrchestratorState.from_result(result)
    state.reset_for_restart()
    doc = state.to_result()
    doc.pop("outputs", None)
    return doc


__all__ = ["StageState", "OrchestratorState", "STATE_VERSION", "reset_result_for_restart"]
