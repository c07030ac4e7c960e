# ============================================================================
# REPOSITORIES MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Data access layer
# PURPOSE: Database repositories for all persisted models
# CREATED: 12 OCT 2026
# ============================================================================
"""
Repositories Module

Async PostgreSQL access via psycopg3. Every method accepts an optional
connection so services can group writes in one transaction.
"""

from .database import (
    get_pool,
    init_pool,
    close_pool,
    use_connection,
    transaction,
    DatabasePool,
)
from .job_run_repo import JobRunRepository, DB_NOW, AtLeast
from .idempotency_repo import IdempotencyRepository
from .saga_repo import SagaRunRepository, SagaActionRepository
from .chat_repo import ChatThreadRepository, ChatMessageRepository, ChatTurnRepository

__all__ = [
    # Database
    "get_pool",
    "init_pool",
    "close_pool",
    "use_connection",
    "transaction",
    "DatabasePool",
    # Repositories
    "JobRunRepository",
    "DB_NOW",
    "AtLeast",
    "IdempotencyRepository",
    "SagaRunRepository",
    "SagaActionRepository",
    "ChatThreadRepository",
    "ChatMessageRepository",
    "ChatTurnRepository",
]
