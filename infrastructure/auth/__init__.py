# ============================================================================
# AUTHENTICATION MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Infrastructure - Azure authentication
# PURPOSE: Managed identity for PostgreSQL
# CREATED: 12 OCT 2026
# ============================================================================
"""
Authentication module for the job core.

Usage:
    from infrastructure.auth import get_postgres_connection_string

    conn_str = get_postgres_connection_string()
"""

from infrastructure.auth.postgres_auth import (
    get_postgres_connection_string,
    get_postgres_token,
    get_postgres_token_status,
)

__all__ = [
    'get_postgres_connection_string',
    'get_postgres_token',
    'get_postgres_token_status',
]
