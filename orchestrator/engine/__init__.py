# ============================================================================
# ORCHESTRATOR ENGINE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Engine components
# PURPOSE: Stage DAG evaluation
# CREATED: 12 OCT 2026
# ============================================================================
"""
Orchestrator Engine Components

- evaluator: stage dependency resolution, cycle detection, progress
"""

from orchestrator.engine.evaluator import (
    DependencyGraph,
    GraphBuilder,
    TopologicalSorter,
    StageEvaluator,
    get_evaluator,
    validate_pipeline,
    find_runnable_stages,
)

__all__ = [
    "DependencyGraph",
    "GraphBuilder",
    "TopologicalSorter",
    "StageEvaluator",
    "get_evaluator",
    "validate_pipeline",
    "find_runnable_stages",
]
