# ============================================================================
# CONFIGURATION MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Configuration and defaults
# PURPOSE: Centralized configuration management
# CREATED: 12 OCT 2026
# ============================================================================
"""
Configuration Module

Provides centralized configuration and defaults for the job core.
"""

from core.config.defaults import (
    QueueDefaults,
    WorkerDefaults,
    OrchestratorDefaults,
    ChatDefaults,
    NotifierDefaults,
    Defaults,
    get_defaults,
    reset_defaults,
)

__all__ = [
    "QueueDefaults",
    "WorkerDefaults",
    "OrchestratorDefaults",
    "ChatDefaults",
    "NotifierDefaults",
    "Defaults",
    "get_defaults",
    "reset_defaults",
]
