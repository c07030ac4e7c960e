# ============================================================================
# PIPELINE DEFINITION MODEL
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core model - Stage DAG template for orchestrated job types
# PURPOSE: Define the stages of a root job, loaded from YAML or registered
# CREATED: 12 OCT 2026
# ============================================================================
"""
Pipeline Definition Models

A PipelineDefinition is the template for an orchestrated job type.
It defines:
- What stages exist, in declaration order
- How each stage runs (inline stage handler, or a child job)
- Dependencies between stages (depends_on)
- Progress weight, retry budget, compensation and parallel-safety flags

If a stage omits depends_on it depends on the stage declared before it;
an explicit empty list makes it a root of the DAG.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from core.contracts import StageMode


class StageDefinition(BaseModel):
    """Definition of a single stage."""
    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9_\-]+$")
    mode: StageMode = Field(default=StageMode.INLINE)
    handler: Optional[str] = Field(
        default=None,
        description="Stage handler name (inline); defaults to the stage name",
    )
    child_job_type: Optional[str] = Field(default=None, description="Job type enqueued in child mode")
    child_payload: Dict[str, object] = Field(default_factory=dict)
    depends_on: Optional[List[str]] = None
    weight: float = Field(default=1.0, gt=0)
    compensating: bool = Field(
        default=False,
        description="Failure of this stage compensates the saga",
    )
    parallel_safe: bool = Field(
        default=False,
        description="May start while another stage waits on a user decision",
    )
    max_attempts: Optional[int] = Field(default=None, ge=1, le=20)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    start_message: Optional[str] = None
    done_message: Optional[str] = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def handle_string_input(cls, v):
        """Allow single string as shorthand for single-item list."""
        if isinstance(v, str):
            return [v]
        return v

    @model_validator(mode="after")
    def check_mode(self) -> "StageDefinition":
        if self.mode == StageMode.CHILD and not self.child_job_type:
            raise ValueError(f"stage '{self.name}': child mode requires child_job_type")
        return self

    @property
    def handler_name(self) -> str:
        return self.handler or self.name


class PipelineDefinition(BaseModel):
    """
    Stage DAG for one orchestrated job type.

    Stage order in the list is the launch order among runnable stages.
    """
    job_type: str = Field(..., min_length=1, max_length=64)
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, description="Root job claim budget")
    stages: List[StageDefinition] = Field(..., min_length=1)

    def get_stage(self, name: str) -> Optional[StageDefinition]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]

    def dependencies(self) -> Dict[str, List[str]]:
        """Resolved prerequisites per stage (implicit previous-stage rule applied)."""
        deps: Dict[str, List[str]] = {}
        previous: Optional[str] = None
        for stage in self.stages:
            if stage.depends_on is None:
                deps[stage.name] = [previous] if previous else []
            else:
                deps[stage.name] = list(stage.depends_on)
            previous = stage.name
        return deps

    @property
    def total_weight(self) -> float:
        return sum(s.weight for s in self.stages)

    def validate_structure(self) -> List[str]:
        """
        Validate names and references.

        Cycle detection lives in orchestrator.engine.evaluator.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        names = self.stage_names()

        seen = set()
        for name in names:
            if name in seen:
                errors.append(f"Duplicate stage name: {name}")
            seen.add(name)

        for stage, deps in self.dependencies().items():
            for dep in deps:
                if dep not in seen:
                    errors.append(f"Stage '{stage}' depends on non-existent stage: {dep}")
                if dep == stage:
                    errors.append(f"Stage '{stage}' depends on itself")

        return errors


__all__ = ["StageDefinition", "PipelineDefinition"]
