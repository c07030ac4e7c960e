# ============================================================================
# INFRASTRUCTURE MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Infrastructure - External adapters
# PURPOSE: Object store, vector store and credential helpers
# CREATED: 12 OCT 2026
# ============================================================================
"""
Infrastructure module for the job core.

Provides:
- Adapters: bundle of external adapters handed to handlers
- ObjectStore: Azure Blob Storage object store
- VectorStore: HTTP vector index client

Usage:
    from infrastructure import Adapters, ObjectStore, StorageConfig

    adapters = Adapters(objects=ObjectStore(StorageConfig.from_env()))
"""

from infrastructure.adapters import (
    Adapters,
    ObjectStoreAdapter,
    VectorStoreAdapter,
    LLMAdapter,
)
from infrastructure.storage import ObjectStore, StorageConfig
from infrastructure.vector_store import VectorStore, VectorStoreConfig

__all__ = [
    # Interfaces
    "Adapters",
    "ObjectStoreAdapter",
    "VectorStoreAdapter",
    "LLMAdapter",
    # Object store
    "ObjectStore",
    "StorageConfig",
    # Vector store
    "VectorStore",
    "VectorStoreConfig",
]
