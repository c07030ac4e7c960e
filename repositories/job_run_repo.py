# ============================================================================
# JOB RUN REPOSITORY
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Job store and claimer queries
# PURPOSE: Database access for the job_run table
# CREATED: 12 OCT 2026
# ============================================================================
"""
Job Run Repository

CRUD, guarded updates and the claim query for job_run rows.

Every method takes an optional `conn`; pass the connection yielded by
repositories.database.transaction() to join the caller's transaction.

Guarded updates:
    update_fields(..., expected_status=[...]) only applies when the row is
    in one of the expected statuses; unless_status=[...] only applies when
    it is not. Both return the updated row, or None when nothing matched.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from psycopg import AsyncConnection, sql
from psycopg import errors as pg_errors
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import JobRunStatus
from core.errors import Conflict, InvalidArgument
from core.models import JobRun, RUNNABLE_PREDICATE
from .database import TABLE_JOB_RUN, use_connection

logger = logging.getLogger(__name__)

# Pass as a field value to write the database clock
DB_NOW = sql.SQL("NOW()")


@dataclass(frozen=True)
class AtLeast:
    """Field value that only moves a column forward: col = GREATEST(col, value)."""
    value: Any


INSERT_COLUMNS = (
    "id", "owner_user_id", "job_type", "entity_type", "entity_id", "status",
    "stage", "progress", "message", "attempts", "max_attempts", "retryable",
    "error", "locked_at", "heartbeat_at", "last_error_at", "run_after",
    "payload", "result", "created_at", "updated_at",
)

UPDATABLE_COLUMNS = frozenset({
    "status", "stage", "progress", "message", "attempts", "retryable", "error",
    "locked_at", "heartbeat_at", "last_error_at", "run_after", "payload",
    "result", "deleted_at",
})

JSON_COLUMNS = frozenset({"payload", "result"})

ACTIVE_STATUSES = JobRunStatus.active_values()


def _statuses(values: Iterable[Any]) -> List[str]:
    return [v.value if isinstance(v, JobRunStatus) else str(v) for v in values]


class JobRunRepository:
    """Repository for JobRun rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    async def create(self, job: JobRun, conn: Optional[AsyncConnection] = None) -> JobRun:
        """
        Insert a new job row.

        Raises:
            Conflict: a runnable row already holds the entity's singleton slot
        """
        values = job.model_dump()
        params = {}
        for col in INSERT_COLUMNS:
            value = values[col]
            if col in JSON_COLUMNS:
                value = Json(value)
            elif isinstance(value, JobRunStatus):
                value = value.value
            params[col] = value

        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            TABLE_JOB_RUN,
            sql.SQL(", ").join(sql.Identifier(c) for c in INSERT_COLUMNS),
            sql.SQL(", ").join(sql.Placeholder(c) for c in INSERT_COLUMNS),
        )

        try:
            async with use_connection(self.pool, conn) as c:
                result = await c.execute(query, params)
                row = await result.fetchone()
        except pg_errors.UniqueViolation as e:
            raise Conflict(
                f"runnable {job.job_type} already exists for {job.entity_type}:{job.entity_id}",
                operation="job_run.create",
                entity_id=job.entity_id,
            ) from e

        logger.info(f"Created job {job.id} type={job.job_type} entity={job.entity_type}:{job.entity_id}")
        return self._row_to_job(row)

    async def get(
        self,
        job_id: UUID,
        owner_user_id: Optional[UUID] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[JobRun]:
        """Get a job by ID, optionally scoped to its owner."""
        jobs = await self.get_by_ids([job_id], owner_user_id=owner_user_id, conn=conn)
        return jobs[0] if jobs else None

    async def get_by_ids(
        self,
        job_ids: List[UUID],
        owner_user_id: Optional[UUID] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> List[JobRun]:
        """Fetch jobs by id; rows owned by someone else are omitted."""
        if not job_ids:
            return []
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE id = ANY(%(ids)s)
                  AND (%(owner)s::uuid IS NULL OR owner_user_id = %(owner)s::uuid)
                  AND deleted_at IS NULL
                """).format(TABLE_JOB_RUN),
                {"ids": list(job_ids), "owner": owner_user_id},
            )
            rows = await result.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def lock(
        self,
        job_id: UUID,
        owner_user_id: Optional[UUID],
        conn: AsyncConnection,
    ) -> Optional[JobRun]:
        """SELECT ... FOR UPDATE inside the caller's transaction."""
        result = await conn.execute(
            sql.SQL("""
            SELECT * FROM {}
            WHERE id = %(id)s
              AND (%(owner)s::uuid IS NULL OR owner_user_id = %(owner)s::uuid)
              AND deleted_at IS NULL
            FOR UPDATE
            """).format(TABLE_JOB_RUN),
            {"id": job_id, "owner": owner_user_id},
        )
        row = await result.fetchone()
        return self._row_to_job(row) if row else None

    # =========================================================================
    # GUARDED UPDATES
    # =========================================================================

    async def update_fields(
        self,
        job_id: UUID,
        fields: Dict[str, Any],
        expected_status: Optional[Iterable[JobRunStatus]] = None,
        unless_status: Optional[Iterable[JobRunStatus]] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[JobRun]:
        """
        Update selected columns, optionally as a compare-and-set on status.

        Returns:
            The updated row, or None if the guard did not match
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise InvalidArgument(f"cannot update job_run columns: {sorted(unknown)}")
        if not fields:
            raise InvalidArgument("update_fields requires at least one field")

        assignments = []
        params: Dict[str, Any] = {"id": job_id}
        for col, value in fields.items():
            if isinstance(value, sql.Composable):
                assignments.append(sql.SQL("{} = {}").format(sql.Identifier(col), value))
                continue
            if isinstance(value, AtLeast):
                params[f"v_{col}"] = value.value
                assignments.append(sql.SQL("{0} = GREATEST({0}, {1})").format(
                    sql.Identifier(col), sql.Placeholder(f"v_{col}")
                ))
                continue
            if col in JSON_COLUMNS:
                value = Json(value)
            elif isinstance(value, JobRunStatus):
                value = value.value
            params[f"v_{col}"] = value
            assignments.append(sql.SQL("{} = {}").format(sql.Identifier(col), sql.Placeholder(f"v_{col}")))
        if "updated_at" not in fields:
            assignments.append(sql.SQL("updated_at = NOW()"))

        conditions = [sql.SQL("id = %(id)s")]
        if expected_status is not None:
            params["expected"] = _statuses(expected_status)
            conditions.append(sql.SQL("status::text = ANY(%(expected)s)"))
        if unless_status is not None:
            params["excluded"] = _statuses(unless_status)
            conditions.append(sql.SQL("NOT (status::text = ANY(%(excluded)s))"))

        query = sql.SQL("UPDATE {} SET {} WHERE {} RETURNING *").format(
            TABLE_JOB_RUN,
            sql.SQL(", ").join(assignments),
            sql.SQL(" AND ").join(conditions),
        )

        try:
            async with use_connection(self.pool, conn) as c:
                result = await c.execute(query, params)
                row = await result.fetchone()
        except pg_errors.UniqueViolation as e:
            raise Conflict(
                "another runnable job holds this entity",
                operation="job_run.update_fields",
                entity_id=job_id,
            ) from e

        if row is None:
            logger.debug(f"Guarded update on job {job_id} matched no row (fields={sorted(fields)})")
            return None
        return self._row_to_job(row)

    async def update_fields_unless_status(
        self,
        job_id: UUID,
        excluded: Iterable[JobRunStatus],
        fields: Dict[str, Any],
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[JobRun]:
        return await self.update_fields(job_id, fields, unless_status=excluded, conn=conn)

    # =========================================================================
    # CLAIMER
    # =========================================================================

    async def claim_next_runnable(
        self,
        stale_lease_seconds: int,
        retry_delay_base_ms: int,
        retry_delay_cap_ms: int,
        job_types: Optional[List[str]] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[JobRun]:
        """
        Atomically claim the oldest eligible row.

        Eligible:
            queued (and past run_after)
            running with a lease older than stale_lease and attempts left
            failed, retryable, attempts left, backoff since last_error_at elapsed

        The claim sets running, attempts+1 and a fresh lease; concurrent
        claimers skip locked candidates, so no row is returned twice.
        """
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                WITH candidate AS (
                    SELECT id FROM {table}
                    WHERE deleted_at IS NULL
                      AND (%(job_types)s::text[] IS NULL OR job_type = ANY(%(job_types)s::text[]))
                      AND (
                        (status = 'queued' AND (run_after IS NULL OR run_after <= NOW()))
                        OR (
                          status = 'running'
                          AND attempts < max_attempts
                          AND COALESCE(heartbeat_at, locked_at, updated_at)
                              < NOW() - %(stale)s * INTERVAL '1 second'
                        )
                        OR (
                          status = 'failed'
                          AND retryable
                          AND attempts < max_attempts
                          AND (
                            last_error_at IS NULL
                            OR last_error_at
                               + LEAST(%(base_ms)s * POWER(2, GREATEST(attempts - 1, 0)), %(cap_ms)s)
                                 * INTERVAL '1 millisecond'
                               <= NOW()
                          )
                        )
                      )
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE {table} AS j SET
                    status = 'running',
                    attempts = j.attempts + 1,
                    locked_at = NOW(),
                    heartbeat_at = NOW(),
                    run_after = NULL,
                    error = CASE WHEN j.status = 'failed' THEN '' ELSE j.error END,
                    updated_at = NOW()
                FROM candidate
                WHERE j.id = candidate.id
                RETURNING j.*
                """).format(table=TABLE_JOB_RUN),
                {
                    "job_types": list(job_types) if job_types else None,
                    "stale": stale_lease_seconds,
                    "base_ms": retry_delay_base_ms,
                    "cap_ms": retry_delay_cap_ms,
                },
            )
            row = await result.fetchone()

        if row is None:
            return None

        job = self._row_to_job(row)
        logger.info(f"Claimed job {job.id} type={job.job_type} attempt={job.attempts}/{job.max_attempts}")
        return job

    async def heartbeat(self, job_id: UUID, conn: Optional[AsyncConnection] = None) -> bool:
        """
        Renew the lease.

        Returns False when the row is no longer running (canceled, finished
        or reclaimed elsewhere); the caller must stop working on it.
        """
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET heartbeat_at = NOW()
                WHERE id = %s AND status = 'running'
                """).format(TABLE_JOB_RUN),
                (job_id,),
            )
            return result.rowcount > 0

    async def expire_stale_leases(
        self,
        stale_lease_seconds: int,
        conn: Optional[AsyncConnection] = None,
    ) -> List[JobRun]:
        """Fail running rows whose lease expired with no attempts left."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET
                    status = 'failed',
                    retryable = false,
                    error = 'lease expired after ' || attempts || ' attempts',
                    last_error_at = NOW(),
                    locked_at = NULL,
                    updated_at = NOW()
                WHERE status = 'running'
                  AND attempts >= max_attempts
                  AND COALESCE(heartbeat_at, locked_at, updated_at)
                      < NOW() - %(stale)s * INTERVAL '1 second'
                RETURNING *
                """).format(TABLE_JOB_RUN),
                {"stale": stale_lease_seconds},
            )
            rows = await result.fetchall()

        if rows:
            logger.warning(f"Expired {len(rows)} stale lease(s) with no attempts left")
        return [self._row_to_job(row) for row in rows]

    # =========================================================================
    # ENTITY QUERIES
    # =========================================================================

    async def has_runnable_for_entity(
        self,
        owner_user_id: UUID,
        entity_type: str,
        entity_id: UUID,
        job_type: str,
        conn: Optional[AsyncConnection] = None,
    ) -> bool:
        """True iff a row holds the entity's singleton slot."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT EXISTS (
                    SELECT 1 FROM {}
                    WHERE owner_user_id = %(owner)s
                      AND entity_type = %(entity_type)s
                      AND entity_id = %(entity_id)s
                      AND job_type = %(job_type)s
                      AND {}
                ) AS busy
                """).format(TABLE_JOB_RUN, sql.SQL(RUNNABLE_PREDICATE)),
                {
                    "owner": owner_user_id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "job_type": job_type,
                },
            )
            row = await result.fetchone()
        return bool(row and row["busy"])

    async def get_latest_by_entity(
        self,
        owner_user_id: UUID,
        entity_type: str,
        entity_id: UUID,
        job_type: str,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[JobRun]:
        """Newest row for the entity, any status (created_at DESC, id DESC)."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE owner_user_id = %(owner)s
                  AND entity_type = %(entity_type)s
                  AND entity_id = %(entity_id)s
                  AND job_type = %(job_type)s
                  AND deleted_at IS NULL
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """).format(TABLE_JOB_RUN),
                {
                    "owner": owner_user_id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "job_type": job_type,
                },
            )
            row = await result.fetchone()
        return self._row_to_job(row) if row else None

    async def cancel_many(
        self,
        job_ids: List[UUID],
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> List[JobRun]:
        """
        Cancel the listed rows that are still active.

        A failed row with a retry pending keeps its status but is disarmed
        (retryable = false) so the claimer never picks it up again.

        Returns:
            The canceled and disarmed rows
        """
        if not job_ids:
            return []
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET
                    status = CASE WHEN status::text = ANY(%(active)s) THEN 'canceled' ELSE status END,
                    retryable = CASE WHEN status::text = ANY(%(active)s) THEN retryable ELSE false END,
                    message = 'Canceled',
                    locked_at = NULL,
                    heartbeat_at = NOW(),
                    updated_at = NOW()
                WHERE id = ANY(%(ids)s)
                  AND owner_user_id = %(owner)s
                  AND (
                      status::text = ANY(%(active)s)
                      OR (status = 'failed' AND retryable AND attempts < max_attempts)
                  )
                RETURNING *
                """).format(TABLE_JOB_RUN),
                {"ids": list(job_ids), "owner": owner_user_id, "active": ACTIVE_STATUSES},
            )
            rows = await result.fetchall()
        return [self._row_to_job(row) for row in rows]

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _row_to_job(self, row: Dict[str, Any]) -> JobRun:
        """Convert database row to JobRun model."""
        return JobRun(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            job_type=row["job_type"],
            entity_type=row.get("entity_type") or "",
            entity_id=row.get("entity_id"),
            status=JobRunStatus(row["status"]),
            stage=row.get("stage") or "",
            progress=row.get("progress") or 0,
            message=row.get("message") or "",
            attempts=row.get("attempts") or 0,
            max_attempts=row.get("max_attempts") or 1,
            retryable=row.get("retryable", True),
            error=row.get("error") or "",
            locked_at=row.get("locked_at"),
            heartbeat_at=row.get("heartbeat_at"),
            last_error_at=row.get("last_error_at"),
            run_after=row.get("run_after"),
            payload=row.get("payload") or {},
            result=row.get("result") or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["JobRunRepository", "DB_NOW", "AtLeast"]
