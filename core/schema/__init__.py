# ============================================================================
# SCHEMA MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Schema generation from Pydantic models
# PURPOSE: Generate PostgreSQL DDL from Pydantic models (single source of truth)
# CREATED: 12 OCT 2026
# ============================================================================

from core.schema.ddl_utils import IndexBuilder, TriggerBuilder, SchemaUtils
from core.schema.sql_generator import PydanticToSQL

__all__ = [
    "PydanticToSQL",
    "IndexBuilder",
    "TriggerBuilder",
    "SchemaUtils",
]
