# ============================================================================
# SAGA REPOSITORIES
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Saga run and action persistence
# PURPOSE: Database access for saga_run and saga_action tables
# CREATED: 12 OCT 2026
# ============================================================================
"""
Saga Repositories

Sequence numbers are allocated as max(seq)+1 while the caller holds the
saga_run row lock (lock_by_id), which keeps seq gap-free and unique.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from psycopg import AsyncConnection, sql
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import SagaActionStatus, SagaStatus
from core.models import SagaAction, SagaRun
from .database import TABLE_SAGA_ACTION, TABLE_SAGA_RUN, use_connection

logger = logging.getLogger(__name__)


class SagaRunRepository:
    """Repository for SagaRun rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def create(self, saga: SagaRun, conn: Optional[AsyncConnection] = None) -> Optional[SagaRun]:
        """
        Insert a saga run.

        Returns:
            The new row, or None if the root job already has a saga
        """
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                INSERT INTO {} (id, owner_user_id, root_job_id, status, created_at, updated_at)
                VALUES (%(id)s, %(owner)s, %(root)s, %(status)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (root_job_id) DO NOTHING
                RETURNING *
                """).format(TABLE_SAGA_RUN),
                {
                    "id": saga.id,
                    "owner": saga.owner_user_id,
                    "root": saga.root_job_id,
                    "status": saga.status.value,
                    "created_at": saga.created_at,
                    "updated_at": saga.updated_at,
                },
            )
            row = await result.fetchone()

        if row is None:
            return None
        logger.info(f"Created saga {saga.id} for root job {saga.root_job_id}")
        return self._row_to_saga(row)

    async def get(self, saga_id: UUID, conn: Optional[AsyncConnection] = None) -> Optional[SagaRun]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("SELECT * FROM {} WHERE id = %s").format(TABLE_SAGA_RUN),
                (saga_id,),
            )
            row = await result.fetchone()
        return self._row_to_saga(row) if row else None

    async def get_by_root_job(
        self,
        root_job_id: UUID,
        owner_user_id: Optional[UUID] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[SagaRun]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE root_job_id = %(root)s
                  AND (%(owner)s::uuid IS NULL OR owner_user_id = %(owner)s::uuid)
                """).format(TABLE_SAGA_RUN),
                {"root": root_job_id, "owner": owner_user_id},
            )
            row = await result.fetchone()
        return self._row_to_saga(row) if row else None

    async def lock_by_id(self, saga_id: UUID, conn: AsyncConnection) -> Optional[SagaRun]:
        """SELECT ... FOR UPDATE inside the caller's transaction."""
        result = await conn.execute(
            sql.SQL("SELECT * FROM {} WHERE id = %s FOR UPDATE").format(TABLE_SAGA_RUN),
            (saga_id,),
        )
        row = await result.fetchone()
        return self._row_to_saga(row) if row else None

    async def update_status(
        self,
        saga_id: UUID,
        status: SagaStatus,
        expected_status: Optional[Iterable[SagaStatus]] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[SagaRun]:
        """Compare-and-set the saga status; None if the guard did not match."""
        expected = [s.value for s in expected_status] if expected_status is not None else None
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET status = %(status)s, updated_at = NOW()
                WHERE id = %(id)s
                  AND (%(expected)s::text[] IS NULL OR status::text = ANY(%(expected)s::text[]))
                RETURNING *
                """).format(TABLE_SAGA_RUN),
                {"id": saga_id, "status": status.value, "expected": expected},
            )
            row = await result.fetchone()
        return self._row_to_saga(row) if row else None

    def _row_to_saga(self, row: Dict[str, Any]) -> SagaRun:
        return SagaRun(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            root_job_id=row["root_job_id"],
            status=SagaStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class SagaActionRepository:
    """Repository for SagaAction rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def get_max_seq(self, saga_id: UUID, conn: AsyncConnection) -> int:
        """Highest seq for the saga, 0 when empty. Call under the saga lock."""
        result = await conn.execute(
            sql.SQL("SELECT COALESCE(MAX(seq), 0) AS max_seq FROM {} WHERE saga_id = %s").format(
                TABLE_SAGA_ACTION
            ),
            (saga_id,),
        )
        row = await result.fetchone()
        return int(row["max_seq"])

    async def create(self, action: SagaAction, conn: AsyncConnection) -> SagaAction:
        result = await conn.execute(
            sql.SQL("""
            INSERT INTO {} (id, saga_id, seq, kind, payload, status, error, created_at, updated_at)
            VALUES (%(id)s, %(saga_id)s, %(seq)s, %(kind)s, %(payload)s, %(status)s, %(error)s,
                    %(created_at)s, %(updated_at)s)
            RETURNING *
            """).format(TABLE_SAGA_ACTION),
            {
                "id": action.id,
                "saga_id": action.saga_id,
                "seq": action.seq,
                "kind": action.kind,
                "payload": Json(action.payload),
                "status": action.status.value,
                "error": action.error,
                "created_at": action.created_at,
                "updated_at": action.updated_at,
            },
        )
        row = await result.fetchone()
        logger.debug(f"Appended saga action seq={action.seq} kind={action.kind} saga={action.saga_id}")
        return self._row_to_action(row)

    async def list_by_saga_desc(self, saga_id: UUID, conn: Optional[AsyncConnection] = None) -> List[SagaAction]:
        """Actions newest-first (compensation order)."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("SELECT * FROM {} WHERE saga_id = %s ORDER BY seq DESC").format(TABLE_SAGA_ACTION),
                (saga_id,),
            )
            rows = await result.fetchall()
        return [self._row_to_action(row) for row in rows]

    async def update_status(
        self,
        action_id: UUID,
        status: SagaActionStatus,
        error: str = "",
        conn: Optional[AsyncConnection] = None,
    ) -> bool:
        """Move a not-yet-done action to done or failed."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET status = %(status)s, error = %(error)s, updated_at = NOW()
                WHERE id = %(id)s AND status <> 'done'
                """).format(TABLE_SAGA_ACTION),
                {"id": action_id, "status": status.value, "error": error[:2000]},
            )
            return result.rowcount > 0

    def _row_to_action(self, row: Dict[str, Any]) -> SagaAction:
        return SagaAction(
            id=row["id"],
            saga_id=row["saga_id"],
            seq=row["seq"],
            kind=row["kind"],
            payload=row.get("payload") or {},
            status=SagaActionStatus(row["status"]),
            error=row.get("error") or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


__all__ = ["SagaRunRepository", "SagaActionRepository"]
