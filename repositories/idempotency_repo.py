# ============================================================================
# IDEMPOTENCY REPOSITORY
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Idempotency key reservation
# PURPOSE: Database access for the idempotency_key table
# CREATED: 12 OCT 2026
# ============================================================================
"""
Idempotency Repository

reserve() must run inside the transaction that creates the target row.
A concurrent reservation of the same key blocks on the primary key until
the first transaction finishes, then reads back the committed target.
"""

import logging
from typing import Optional
from uuid import UUID

from psycopg import AsyncConnection, sql
from psycopg_pool import AsyncConnectionPool

from core.models import IdempotencyRecord
from .database import TABLE_IDEMPOTENCY, use_connection

logger = logging.getLogger(__name__)


class IdempotencyRepository:
    """Repository for IdempotencyRecord rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def reserve(self, record: IdempotencyRecord, conn: Optional[AsyncConnection] = None) -> UUID:
        """
        Reserve a key for record.target_id.

        Returns:
            record.target_id if the key was new, otherwise the target that
            already owns the key
        """
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                INSERT INTO {} (owner_user_id, operation, entity_key, idem_key, target_id, created_at)
                VALUES (%(owner)s, %(operation)s, %(entity_key)s, %(key)s, %(target)s, %(created_at)s)
                ON CONFLICT (owner_user_id, operation, entity_key, idem_key) DO NOTHING
                RETURNING target_id
                """).format(TABLE_IDEMPOTENCY),
                {
                    "owner": record.owner_user_id,
                    "operation": record.operation,
                    "entity_key": record.entity_key,
                    "key": record.idem_key,
                    "target": record.target_id,
                    "created_at": record.created_at,
                },
            )
            row = await result.fetchone()
            if row is not None:
                return row["target_id"]

            result = await c.execute(
                sql.SQL("""
                SELECT target_id FROM {}
                WHERE owner_user_id = %(owner)s
                  AND operation = %(operation)s
                  AND entity_key = %(entity_key)s
                  AND idem_key = %(key)s
                """).format(TABLE_IDEMPOTENCY),
                {
                    "owner": record.owner_user_id,
                    "operation": record.operation,
                    "entity_key": record.entity_key,
                    "key": record.idem_key,
                },
            )
            existing = await result.fetchone()

        logger.info(f"Idempotency key replay for {record.operation} -> {existing['target_id']}")
        return existing["target_id"]


__all__ = ["IdempotencyRepository"]
