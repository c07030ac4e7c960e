# ============================================================================
# ORCHESTRATOR MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Stage orchestration
# PURPOSE: Run root jobs as a DAG of stages
# CREATED: 12 OCT 2026
# ============================================================================
"""
Orchestrator Module

Drives orchestrated job types. The pipeline job handler registered by
handlers.registry.register_pipeline calls Orchestrator.run() for every claim.

Usage:
    from orchestrator import Orchestrator

    orchestrator = Orchestrator(pool, services)
    result = await orchestrator.run(ctx, pipeline)
"""

from .context import StageContext
from .loop import Orchestrator, CHILD_ENTITY_PREFIX

__all__ = ["Orchestrator", "StageContext", "CHILD_ENTITY_PREFIX"]
