# ============================================================================
# STAGE EVALUATOR
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Stage DAG dependency resolution
# PURPOSE: Validate pipelines, find runnable stages, compute progress
# CREATED: 12 OCT 2026
# ============================================================================
"""
Stage Evaluator

Core logic for stage DAG traversal and dependency resolution.

Features:
- Dependency graph construction
- Topological sort validation (cycle detection)
- Runnable stage detection in declaration order
- Weighted progress

The evaluator is stateless - it takes a pipeline definition and the
persisted stage map as input and returns decisions about what should
happen next.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from core.contracts import StageMode, StageStatus, utc_now
from core.models import OrchestratorState, PipelineDefinition

logger = logging.getLogger(__name__)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class DependencyGraph:
    """
    Dependency graph for a pipeline.

    A -> B means "B depends on A" (A must succeed before B starts).
    """
    # Stage -> stages that depend on it
    forward_edges: Dict[str, List[str]] = field(default_factory=lambda: defaultdict(list))

    # Stage -> stages it depends on
    backward_edges: Dict[str, List[str]] = field(default_factory=lambda: defaultdict(list))

    # Declaration order
    nodes: List[str] = field(default_factory=list)

    def add_node(self, name: str) -> None:
        if name not in self.nodes:
            self.nodes.append(name)

    def add_edge(self, from_node: str, to_node: str) -> None:
        """Add a dependency edge: to_node depends on from_node."""
        self.forward_edges[from_node].append(to_node)
        self.backward_edges[to_node].append(from_node)
        self.add_node(from_node)
        self.add_node(to_node)

    def get_dependencies(self, name: str) -> List[str]:
        return self.backward_edges.get(name, [])

    def get_dependents(self, name: str) -> List[str]:
        return self.forward_edges.get(name, [])


# ============================================================================
# GRAPH BUILDER
# ============================================================================

class GraphBuilder:
    """Builds dependency graph from a pipeline definition."""

    def build(self, pipeline: PipelineDefinition) -> DependencyGraph:
        graph = DependencyGraph()
        for name in pipeline.stage_names():
            graph.add_node(name)
        for name, deps in pipeline.dependencies().items():
            for dep in deps:
                graph.add_edge(dep, name)
        return graph


# ============================================================================
# TOPOLOGICAL SORT / CYCLE DETECTION
# ============================================================================

class TopologicalSorter:
    """Validates DAG structure and provides topological ordering (Kahn)."""

    def validate(self, graph: DependencyGraph) -> Tuple[bool, List[str], Optional[str]]:
        """
        Validate that graph is a DAG (no cycles).

        Returns:
            Tuple of (is_valid, sorted_nodes, error_message)
        """
        in_degree = {node: 0 for node in graph.nodes}

        for node in graph.nodes:
            for dep in graph.get_dependencies(node):
                if dep in in_degree:
                    in_degree[node] += 1

        # Ties resolve in declaration order
        queue = deque([node for node in graph.nodes if in_degree[node] == 0])
        sorted_nodes = []

        while queue:
            node = queue.popleft()
            sorted_nodes.append(node)

            for dependent in graph.get_dependents(node):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(sorted_nodes) != len(graph.nodes):
            remaining = [n for n in graph.nodes if n not in sorted_nodes]
            return False, sorted_nodes, f"Cycle detected involving stages: {remaining}"

        return True, sorted_nodes, None


# ============================================================================
# STAGE EVALUATOR
# ============================================================================

class StageEvaluator:
    """
    Main evaluator for pipeline stage maps.

    Stateless; the orchestrator persists the stage map between calls.
    """

    def __init__(self):
        self.graph_builder = GraphBuilder()
        self.sorter = TopologicalSorter()

    def validate_pipeline(self, pipeline: PipelineDefinition) -> List[str]:
        """
        Validate names, references and acyclicity.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = pipeline.validate_structure()
        if errors:
            return errors

        graph = self.graph_builder.build(pipeline)
        is_valid, _, error = self.sorter.validate(graph)
        if not is_valid:
            errors.append(error)
        return errors

    def topological_order(self, pipeline: PipelineDefinition) -> List[str]:
        graph = self.graph_builder.build(pipeline)
        _, ordered, _ = self.sorter.validate(graph)
        return ordered

    def init_state(self, pipeline: PipelineDefinition, state: OrchestratorState) -> OrchestratorState:
        """Add missing stage entries; existing entries are left as they are."""
        for stage in pipeline.stages:
            state.ensure_stage(stage.name, stage.mode)
        return state

    def runnable_stages(
        self,
        pipeline: PipelineDefinition,
        state: OrchestratorState,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Pending stages whose prerequisites all succeeded, in declaration order.

        A stage in backoff (wait_until in the future) is not runnable. While
        any stage waits on a user decision only parallel-safe stages start.
        """
        now = now or utc_now()
        deps = pipeline.dependencies()
        someone_waiting = state.waiting_stage() is not None

        runnable = []
        for stage_def in pipeline.stages:
            stage = state.stages.get(stage_def.name)
            if stage is None or stage.status != StageStatus.PENDING:
                continue
            if stage.wait_until is not None and stage.wait_until > now:
                continue
            if someone_waiting and not stage_def.parallel_safe:
                continue
            if self._dependencies_met(deps[stage_def.name], state):
                runnable.append(stage_def.name)
        return runnable

    def running_children(self, pipeline: PipelineDefinition, state: OrchestratorState) -> List[str]:
        """Child-mode stages that have a child job in flight."""
        names = []
        for stage_def in pipeline.stages:
            stage = state.stages.get(stage_def.name)
            if (
                stage is not None
                and stage.status == StageStatus.RUNNING
                and stage.mode == StageMode.CHILD
                and stage.child_job_id is not None
            ):
                names.append(stage_def.name)
        return names

    def next_wake(self, state: OrchestratorState) -> Optional[datetime]:
        """Earliest backoff deadline among pending stages."""
        deadlines = [
            s.wait_until for s in state.stages.values()
            if s.status == StageStatus.PENDING and s.wait_until is not None
        ]
        return min(deadlines) if deadlines else None

    def is_complete(self, pipeline: PipelineDefinition, state: OrchestratorState) -> bool:
        return all(
            state.stages.get(name) is not None and state.stages[name].status == StageStatus.SUCCEEDED
            for name in pipeline.stage_names()
        )

    def failed_stages(self, state: OrchestratorState) -> List[str]:
        return [name for name, s in state.stages.items() if s.status == StageStatus.FAILED]

    def progress(self, pipeline: PipelineDefinition, state: OrchestratorState) -> int:
        """round(100 * weighted_succeeded / total_weight), halves round up."""
        total = pipeline.total_weight
        if total <= 0:
            return 0
        done = sum(
            s.weight for s in pipeline.stages
            if state.stages.get(s.name) is not None
            and state.stages[s.name].status == StageStatus.SUCCEEDED
        )
        return min(100, int(100 * done / total + 0.5))

    def _dependencies_met(self, deps: List[str], state: OrchestratorState) -> bool:
        for dep in deps:
            dep_state = state.stages.get(dep)
            if dep_state is None or dep_state.status != StageStatus.SUCCEEDED:
                return False
        return True


# ============================================================================
# CONVENIENCE
# ============================================================================

_evaluator: Optional[StageEvaluator] = None


def get_evaluator() -> StageEvaluator:
    """Get global evaluator instance."""
    global _evaluator
    if _evaluator is None:
        _evaluator = StageEvaluator()
    return _evaluator


def validate_pipeline(pipeline: PipelineDefinition) -> List[str]:
    return get_evaluator().validate_pipeline(pipeline)


def find_runnable_stages(pipeline: PipelineDefinition, state: OrchestratorState) -> List[str]:
    return get_evaluator().runnable_stages(pipeline, state)


__all__ = [
    "DependencyGraph",
    "GraphBuilder",
    "TopologicalSorter",
    "StageEvaluator",
    "get_evaluator",
    "validate_pipeline",
    "find_runnable_stages",
]
