# ============================================================================
# POSTGRESQL OAUTH AUTHENTICATION
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Infrastructure - Managed identity for the job store
# PURPOSE: Build a psycopg connection string with an Entra ID token password
# CREATED: 12 OCT 2026
# ============================================================================
"""
PostgreSQL OAuth authentication for the job core.

Used by repositories.database.get_connection_string() when
USE_MANAGED_IDENTITY=true. Tokens are cached and refreshed when they are
within TOKEN_REFRESH_BUFFER_SECS of expiry.

Environment Variables:
    USE_MANAGED_IDENTITY=true
    AZURE_CLIENT_ID=<guid>                 # user-assigned identity (optional)
    POSTGRES_IDENTITY_NAME=<identity-name> # database role of the identity
    POSTGRES_HOST=<server>.postgres.database.azure.com
    POSTGRES_DB=<database>
    POSTGRES_PORT=5432
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.errors import ConfigError

logger = logging.getLogger(__name__)

# OAuth scope for Azure Database for PostgreSQL
POSTGRES_SCOPE = "https://ossrdbms-aad.database.windows.net/.default"

TOKEN_REFRESH_BUFFER_SECS = 300


@dataclass
class TokenCache:
    """Simple in-memory token cache."""
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def get_if_valid(self, min_ttl_seconds: int = 0) -> Optional[str]:
        if not self.token or self.ttl_seconds() <= min_ttl_seconds:
            return None
        return self.token

    def set(self, token: str, expires_at: datetime) -> None:
        self.token = token
        self.expires_at = expires_at

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = None

    def ttl_seconds(self) -> float:
        if not self.expires_at:
            return 0
        return (self.expires_at - datetime.now(timezone.utc)).total_seconds()


# Global token cache
_token_cache = TokenCache()


def get_postgres_token() -> str:
    """
    Get a PostgreSQL OAuth token, cached until close to expiry.

    Raises:
        azure.core.exceptions.ClientAuthenticationError: token acquisition failed
    """
    cached = _token_cache.get_if_valid(min_ttl_seconds=TOKEN_REFRESH_BUFFER_SECS)
    if cached:
        logger.debug(f"Using cached PostgreSQL token, TTL: {_token_cache.ttl_seconds():.0f}s")
        return cached

    from azure.core.exceptions import ClientAuthenticationError
    from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

    client_id = os.environ.get("AZURE_CLIENT_ID")
    if client_id:
        logger.info(f"Using user-assigned Managed Identity: {client_id[:8]}...")
        credential = ManagedIdentityCredential(client_id=client_id)
    else:
        logger.info("Using DefaultAzureCredential (system MI or az login)")
        credential = DefaultAzureCredential()

    try:
        token_response = credential.get_token(POSTGRES_SCOPE)
    except ClientAuthenticationError as e:
        logger.error(f"Failed to get PostgreSQL OAuth token: {e}")
        logger.error("Verify the identity is assigned and a matching database role exists")
        raise

    expires_at = datetime.fromtimestamp(token_response.expires_on, tz=timezone.utc)
    _token_cache.set(token_response.token, expires_at)
    logger.info(f"PostgreSQL token acquired, expires: {expires_at.isoformat()}")
    return token_response.token


def get_postgres_connection_string() -> str:
    """
    Connection string with the current token as password.

    Raises:
        ConfigError: POSTGRES_IDENTITY_NAME is not set
    """
    identity_name = os.environ.get("POSTGRES_IDENTITY_NAME", "")
    if not identity_name:
        raise ConfigError("POSTGRES_IDENTITY_NAME is required with USE_MANAGED_IDENTITY=true", operation="auth")

    host = os.environ.get("POSTGRES_HOST", "localhost")
    port = os.environ.get("POSTGRES_PORT", "5432")
    database = os.environ.get("POSTGRES_DB", "postgres")
    token = get_postgres_token()

    return (
        f"host={host} "
        f"port={port} "
        f"dbname={database} "
        f"user={identity_name} "
        f"password={token} "
        f"sslmode=require"
    )


def get_postgres_token_status() -> Dict[str, Any]:
    """Token status for the worker health endpoint."""
    if os.environ.get("USE_MANAGED_IDENTITY", "false").lower() != "true":
        return {"auth_type": "password", "token_cached": False}

    return {
        "auth_type": "managed_identity",
        "token_cached": _token_cache.token is not None,
        "ttl_seconds": _token_cache.ttl_seconds() if _token_cache.token else 0,
        "expires_at": _token_cache.expires_at.isoformat() if _token_cache.expires_at else None,
    }
