# ============================================================================
# WORKER MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Worker execution components
# PURPOSE: Claim, execute and settle jobs; lease renewal; worker pool
# CREATED: 12 OCT 2026
# ============================================================================
"""
Worker Module

Components for job execution:
- executor: handler execution with lease renewal, timeout and cancel
- runtime: claim loop, outcome settlement, worker pool and stale sweep
- main: worker process entry point
"""

from worker.executor import (
    LeaseKeeper,
    JobExecutor,
    ExecutionContext,
)
from worker.runtime import (
    WorkerStats,
    JobWorker,
    WorkerPool,
)

__all__ = [
    # Executor
    "LeaseKeeper",
    "JobExecutor",
    "ExecutionContext",
    # Runtime
    "WorkerStats",
    "JobWorker",
    "WorkerPool",
]
