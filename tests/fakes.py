# ============================================================================
# IN-MEMORY STORE DOUBLES
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Tests - Repository doubles
# PURPOSE: Run services, orchestrator and workers without PostgreSQL
# CREATED: 12 OCT 2026
# ============================================================================
"""
In-memory store doubles.

FakeStore holds every table as a dict of pydantic models. FakePool hands out
FakeConnections whose transaction() snapshots the store and restores it if
the block raises, so repositories.database.transaction() keeps its
all-or-nothing behaviour.

The fake repositories reproduce the contracts of the real ones: guarded
updates, the claim predicate, the per-entity singleton slot, saga seq
uniqueness, idempotency keys and the chat uniqueness rules.

Usage:
    store = FakeStore()
    services = build_services(store)
    worker = make_worker(store, services)
"""

import copy
import random
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from psycopg import sql

from core.config import (
    Defaults,
    NotifierDefaults,
    OrchestratorDefaults,
    QueueDefaults,
    WorkerDefaults,
)
from core.contracts import (
    JobRunStatus,
    MessageRole,
    MessageStatus,
    SagaActionStatus,
    SagaStatus,
    TurnStatus,
    utc_now,
)
from core.errors import Conflict, InvalidArgument
from core.models import (
    ChatMessage,
    ChatThread,
    ChatTurn,
    IdempotencyRecord,
    JobRun,
    SagaAction,
    SagaRun,
)
from repositories.job_run_repo import DB_NOW, UPDATABLE_COLUMNS, AtLeast
from services.waitpoint_service import REFUND_ATTEMPT


# ============================================================================
# STORE / POOL
# ============================================================================

class FakeStore:
    """All tables, plus an insertion counter for stable claim order."""

    def __init__(self):
        self.tables: Dict[str, Dict[Any, Any]] = {
            "job_run": {},
            "idempotency": {},
            "saga_run": {},
            "saga_action": {},
            "chat_thread": {},
            "chat_message": {},
            "chat_turn": {},
        }
        self.insert_order: Dict[UUID, int] = {}
        self._counter = 0

    def now(self):
        return utc_now()

    def next_order(self) -> int:
        self._counter += 1
        return self._counter

    def snapshot(self) -> Tuple[Dict[str, Dict[Any, Any]], Dict[UUID, int]]:
        return copy.deepcopy(self.tables), dict(self.insert_order)

    def restore(self, snap) -> None:
        self.tables, self.insert_order = snap

    @property
    def jobs(self) -> Dict[UUID, JobRun]:
        return self.tables["job_run"]

    @property
    def sagas(self) -> Dict[UUID, SagaRun]:
        return self.tables["saga_run"]

    @property
    def actions(self) -> Dict[UUID, SagaAction]:
        return self.tables["saga_action"]

    @property
    def messages(self) -> Dict[UUID, ChatMessage]:
        return self.tables["chat_message"]

    @property
    def turns(self) -> Dict[UUID, ChatTurn]:
        return self.tables["chat_turn"]

    @property
    def threads(self) -> Dict[UUID, ChatThread]:
        return self.tables["chat_thread"]

    def jobs_of_type(self, job_type: str) -> List[JobRun]:
        rows = [j for j in self.jobs.values() if j.job_type == job_type]
        return sorted(rows, key=lambda j: self.insert_order[j.id])


class FakeConnection:
    def __init__(self, store: FakeStore):
        self.store = store
        self.row_factory = None

    @asynccontextmanager
    async def transaction(self):
        snap = self.store.snapshot()
        try:
            yield self
        except BaseException:
            self.store.restore(snap)
            raise


class FakePool:
    """Stands in for psycopg_pool.AsyncConnectionPool."""

    def __init__(self, store: FakeStore):
        self.store = store

    @asynccontextmanager
    async def connection(self):
        yield FakeConnection(self.store)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


# ============================================================================
# JOB RUN
# ============================================================================

def _is_runnable(job: JobRun) -> bool:
    return job.is_runnable and job.entity_id is not None


class FakeJobRunRepository:
    """Same contract as repositories.JobRunRepository."""

    def __init__(self, store: FakeStore):
        self.store = store

    def _check_singleton(self, job: JobRun) -> None:
        if not _is_runnable(job):
            return
        for other in self.store.jobs.values():
            if other.id == job.id or not _is_runnable(other):
                continue
            if (other.owner_user_id, other.entity_type, other.entity_id, other.job_type) == (
                job.owner_user_id, job.entity_type, job.entity_id, job.job_type
            ):
                raise Conflict(
                    f"runnable {job.job_type} already exists for {job.entity_type}:{job.entity_id}",
                    operation="job_run.create",
                    entity_id=job.entity_id,
                )

    async def create(self, job: JobRun, conn=None) -> JobRun:
        row = _copy(job)
        self._check_singleton(row)
        self.store.jobs[row.id] = row
        self.store.insert_order[row.id] = self.store.next_order()
        return _copy(row)

    async def get(self, job_id: UUID, owner_user_id: Optional[UUID] = None, conn=None) -> Optional[JobRun]:
        jobs = await self.get_by_ids([job_id], owner_user_id=owner_user_id, conn=conn)
        return jobs[0] if jobs else None

    async def get_by_ids(self, job_ids: List[UUID], owner_user_id: Optional[UUID] = None, conn=None) -> List[JobRun]:
        found = []
        for job_id in job_ids:
            job = self.store.jobs.get(job_id)
            if job is None or job.deleted_at is not None:
                continue
            if owner_user_id is not None and job.owner_user_id != owner_user_id:
                continue
            found.append(_copy(job))
        return found

    async def lock(self, job_id: UUID, owner_user_id: Optional[UUID], conn) -> Optional[JobRun]:
        return await self.get(job_id, owner_user_id=owner_user_id, conn=conn)

    def _evaluate(self, row: JobRun, col: str, value: Any) -> Any:
        if value is DB_NOW:
            return self.store.now()
        if value is REFUND_ATTEMPT:
            return max(row.attempts - 1, 0)
        if isinstance(value, AtLeast):
            return max(getattr(row, col), value.value)
        if isinstance(value, sql.Composable):
            raise AssertionError(f"fake store cannot evaluate {value!r}")
        return copy.deepcopy(value)

    async def update_fields(
        self,
        job_id: UUID,
        fields: Dict[str, Any],
        expected_status: Optional[Iterable[JobRunStatus]] = None,
        unless_status: Optional[Iterable[JobRunStatus]] = None,
        conn=None,
    ) -> Optional[JobRun]:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise InvalidArgument(f"cannot update job_run columns: {sorted(unknown)}")
        if not fields:
            raise InvalidArgument("update_fields requires at least one field")

        row = self.store.jobs.get(job_id)
        if row is None:
            return None
        if expected_status is not None and row.status not in list(expected_status):
            return None
        if unless_status is not None and row.status in list(unless_status):
            return None

        updated = row.model_copy(deep=True)
        for col, value in fields.items():
            setattr(updated, col, self._evaluate(row, col, value))
        if isinstance(updated.status, str):
            updated.status = JobRunStatus(updated.status)
        updated.updated_at = self.store.now()
        self._check_singleton(updated)
        self.store.jobs[job_id] = updated
        return _copy(updated)

    async def update_fields_unless_status(self, job_id, excluded, fields, conn=None):
        return await self.update_fields(job_id, fields, unless_status=excluded, conn=conn)

    def _claimable(self, job: JobRun, now, stale: int, base_ms: int, cap_ms: int) -> bool:
        if job.deleted_at is not None:
            return False
        if job.status == JobRunStatus.QUEUED:
            return job.run_after is None or job.run_after <= now
        if job.status == JobRunStatus.RUNNING:
            lease = job.heartbeat_at or job.locked_at or job.updated_at
            return job.attempts < job.max_attempts and lease < now - timedelta(seconds=stale)
        if job.status == JobRunStatus.FAILED:
            if not job.retryable or job.attempts >= job.max_attempts:
                return False
            if job.last_error_at is None:
                return True
            delay_ms = min(base_ms * (2 ** max(job.attempts - 1, 0)), cap_ms)
            return job.last_error_at + timedelta(milliseconds=delay_ms) <= now
        return False

    async def claim_next_runnable(
        self,
        stale_lease_seconds: int,
        retry_delay_base_ms: int,
        retry_delay_cap_ms: int,
        job_types: Optional[List[str]] = None,
        conn=None,
    ) -> Optional[JobRun]:
        now = self.store.now()
        candidates = [
            j for j in self.store.jobs.values()
            if (not job_types or j.job_type in job_types)
            and self._claimable(j, now, stale_lease_seconds, retry_delay_base_ms, retry_delay_cap_ms)
        ]
        if not candidates:
            return None
        job = min(candidates, key=lambda j: (j.created_at, self.store.insert_order[j.id]))

        claimed = job.model_copy(deep=True)
        if claimed.status == JobRunStatus.FAILED:
            claimed.error = ""
        claimed.status = JobRunStatus.RUNNING
        claimed.attempts += 1
        claimed.locked_at = now
        claimed.heartbeat_at = now
        claimed.run_after = None
        claimed.updated_at = now
        self.store.jobs[job.id] = claimed
        return _copy(claimed)

    async def heartbeat(self, job_id: UUID, conn=None) -> bool:
        job = self.store.jobs.get(job_id)
        if job is None or job.status != JobRunStatus.RUNNING:
            return False
        job.heartbeat_at = self.store.now()
        return True

    async def expire_stale_leases(self, stale_lease_seconds: int, conn=None) -> List[JobRun]:
        now = self.store.now()
        expired = []
        for job in list(self.store.jobs.values()):
            if job.status != JobRunStatus.RUNNING or job.attempts < job.max_attempts:
                continue
            lease = job.heartbeat_at or job.locked_at or job.updated_at
            if lease >= now - timedelta(seconds=stale_lease_seconds):
                continue
            job.status = JobRunStatus.FAILED
            job.retryable = False
            job.error = f"lease expired after {job.attempts} attempts"
            job.last_error_at = now
            job.locked_at = None
            job.updated_at = now
            expired.append(_copy(job))
        return expired

    async def has_runnable_for_entity(self, owner_user_id, entity_type, entity_id, job_type, conn=None) -> bool:
        return any(
            j.owner_user_id == owner_user_id
            and j.entity_type == entity_type
            and j.entity_id == entity_id
            and j.job_type == job_type
            and j.is_runnable
            for j in self.store.jobs.values()
        )

    async def get_latest_by_entity(self, owner_user_id, entity_type, entity_id, job_type, conn=None):
        rows = [
            j for j in self.store.jobs.values()
            if j.owner_user_id == owner_user_id
            and j.entity_type == entity_type
            and j.entity_id == entity_id
            and j.job_type == job_type
            and j.deleted_at is None
        ]
        if not rows:
            return None
        return _copy(max(rows, key=lambda j: (j.created_at, self.store.insert_order[j.id])))

    async def cancel_many(self, job_ids: List[UUID], owner_user_id: UUID, conn=None) -> List[JobRun]:
        canceled = []
        for job_id in job_ids:
            job = self.store.jobs.get(job_id)
            if job is None or job.owner_user_id != owner_user_id:
                continue
            if job.status.is_active():
                job.status = JobRunStatus.CANCELED
            elif job.retry_pending:
                job.retryable = False
            else:
                continue
            job.message = "Canceled"
            job.locked_at = None
            job.heartbeat_at = self.store.now()
            job.updated_at = self.store.now()
            canceled.append(_copy(job))
        return canceled

    # Test helpers

    def age_lease(self, job_id: UUID, seconds: float) -> None:
        """Pretend the row's last heartbeat was `seconds` ago."""
        job = self.store.jobs[job_id]
        past = self.store.now() - timedelta(seconds=seconds)
        job.heartbeat_at = past
        job.locked_at = past


class FakeIdempotencyRepository:
    def __init__(self, store: FakeStore):
        self.store = store

    async def reserve(self, record: IdempotencyRecord, conn=None) -> UUID:
        key = (record.owner_user_id, record.operation, record.entity_key, record.idem_key)
        table = self.store.tables["idempotency"]
        if key not in table:
            table[key] = record.target_id
        return table[key]


# ============================================================================
# SAGA
# ============================================================================

class FakeSagaRunRepository:
    def __init__(self, store: FakeStore):
        self.store = store

    async def create(self, saga: SagaRun, conn=None) -> Optional[SagaRun]:
        if any(s.root_job_id == saga.root_job_id for s in self.store.sagas.values()):
            return None
        self.store.sagas[saga.id] = _copy(saga)
        return _copy(saga)

    async def get(self, saga_id: UUID, conn=None) -> Optional[SagaRun]:
        return _copy(self.store.sagas.get(saga_id))

    async def get_by_root_job(self, root_job_id: UUID, owner_user_id: Optional[UUID] = None, conn=None):
        for saga in self.store.sagas.values():
            if saga.root_job_id == root_job_id and (owner_user_id is None or saga.owner_user_id == owner_user_id):
                return _copy(saga)
        return None

    async def lock_by_id(self, saga_id: UUID, conn) -> Optional[SagaRun]:
        return await self.get(saga_id)

    async def update_status(self, saga_id: UUID, status: SagaStatus, expected_status=None, conn=None):
        saga = self.store.sagas.get(saga_id)
        if saga is None:
            return None
        if expected_status is not None and saga.status not in list(expected_status):
            return None
        saga.status = status
        saga.updated_at = self.store.now()
        return _copy(saga)


class FakeSagaActionRepository:
    def __init__(self, store: FakeStore):
        self.store = store

    async def get_max_seq(self, saga_id: UUID, conn) -> int:
        return max((a.seq for a in self.store.actions.values() if a.saga_id == saga_id), default=0)

    async def create(self, action: SagaAction, conn) -> SagaAction:
        for existing in self.store.actions.values():
            if existing.saga_id == action.saga_id and existing.seq == action.seq:
                raise Conflict("saga action seq already taken", operation="saga_action.create")
        self.store.actions[action.id] = _copy(action)
        return _copy(action)

    async def list_by_saga_desc(self, saga_id: UUID, conn=None) -> List[SagaAction]:
        rows = [a for a in self.store.actions.values() if a.saga_id == saga_id]
        return [_copy(a) for a in sorted(rows, key=lambda a: a.seq, reverse=True)]

    async def update_status(self, action_id: UUID, status: SagaActionStatus, error: str = "", conn=None) -> bool:
        action = self.store.actions.get(action_id)
        if action is None:
            return False
        action.status = status
        action.error = error
        action.updated_at = self.store.now()
        return True

    def for_saga(self, saga_id: UUID) -> List[SagaAction]:
        rows = [a for a in self.store.actions.values() if a.saga_id == saga_id]
        return sorted(rows, key=lambda a: a.seq)


# ============================================================================
# CHAT
# ============================================================================

class FakeChatThreadRepository:
    def __init__(self, store: FakeStore):
        self.store = store

    async def create(self, thread: ChatThread, conn=None) -> ChatThread:
        self.store.threads[thread.id] = _copy(thread)
        return _copy(thread)

    async def get(self, thread_id: UUID, owner_user_id: UUID, conn=None) -> Optional[ChatThread]:
        thread = self.store.threads.get(thread_id)
        if thread is None or thread.owner_user_id != owner_user_id or thread.deleted_at is not None:
            return None
        return _copy(thread)

    async def lock(self, thread_id: UUID, owner_user_id: UUID, conn) -> Optional[ChatThread]:
        return await self.get(thread_id, owner_user_id)

    async def advance_seq(self, thread_id: UUID, next_seq: int, last_message_at, conn) -> None:
        thread = self.store.threads[thread_id]
        thread.next_seq = max(thread.next_seq, next_seq)
        thread.last_message_at = last_message_at
        thread.updated_at = self.store.now()


class FakeChatMessageRepository:
    def __init__(self, store: FakeStore):
        self.store = store

    async def create(self, message: ChatMessage, conn=None) -> ChatMessage:
        for existing in self.store.messages.values():
            if existing.thread_id != message.thread_id:
                continue
            if existing.seq == message.seq:
                raise Conflict("message seq already taken", operation="chat_message.create")
            if (
                message.role == MessageRole.USER
                and message.idempotency_key
                and existing.role == MessageRole.USER
                and existing.idempotency_key == message.idempotency_key
                and existing.owner_user_id == message.owner_user_id
                and existing.deleted_at is None
            ):
                raise Conflict("idempotency key already used", operation="chat_message.create")
        self.store.messages[message.id] = _copy(message)
        return _copy(message)

    def _visible(self, thread_id: UUID, owner_user_id: UUID) -> List[ChatMessage]:
        return [
            m for m in self.store.messages.values()
            if m.thread_id == thread_id and m.owner_user_id == owner_user_id and m.deleted_at is None
        ]

    async def get(self, message_id: UUID, owner_user_id: UUID, conn=None) -> Optional[ChatMessage]:
        message = self.store.messages.get(message_id)
        if message is None or message.owner_user_id != owner_user_id or message.deleted_at is not None:
            return None
        return _copy(message)

    async def get_user_by_idempotency_key(self, thread_id, owner_user_id, idempotency_key, conn=None):
        for message in self._visible(thread_id, owner_user_id):
            if message.role == MessageRole.USER and message.idempotency_key == idempotency_key:
                return _copy(message)
        return None

    async def get_by_seq(self, thread_id, owner_user_id, seq, conn=None):
        for message in self._visible(thread_id, owner_user_id):
            if message.seq == seq:
                return _copy(message)
        return None

    async def list_by_thread(self, thread_id, owner_user_id, conn=None) -> List[ChatMessage]:
        return [_copy(m) for m in sorted(self._visible(thread_id, owner_user_id), key=lambda m: m.seq)]

    async def update_user_content(self, message_id, thread_id, owner_user_id, content, conn=None):
        message = self.store.messages.get(message_id)
        if (
            message is None
            or message.thread_id != thread_id
            or message.owner_user_id != owner_user_id
            or message.role != MessageRole.USER
            or message.deleted_at is not None
        ):
            return None
        message.content = content
        message.updated_at = self.store.now()
        return _copy(message)

    async def soft_delete_user(self, message_id, thread_id, owner_user_id, conn=None) -> bool:
        message = self.store.messages.get(message_id)
        if (
            message is None
            or message.thread_id != thread_id
            or message.owner_user_id != owner_user_id
            or message.role != MessageRole.USER
            or message.deleted_at is not None
        ):
            return False
        message.deleted_at = self.store.now()
        message.updated_at = self.store.now()
        return True

    async def update_status(self, message_id, status: MessageStatus, content=None, metadata=None, conn=None):
        message = self.store.messages.get(message_id)
        if message is None:
            return None
        message.status = status
        if content is not None:
            message.content = content
        if metadata is not None:
            message.metadata = dict(metadata)
        message.updated_at = self.store.now()
        return _copy(message)


class FakeChatTurnRepository:
    def __init__(self, store: FakeStore):
        self.store = store

    async def create(self, turn: ChatTurn, conn=None) -> ChatTurn:
        if any(t.user_message_id == turn.user_message_id for t in self.store.turns.values()):
            raise Conflict("turn already exists for message", operation="chat_turn.create")
        self.store.turns[turn.id] = _copy(turn)
        return _copy(turn)

    async def get(self, turn_id: UUID, owner_user_id: UUID, conn=None) -> Optional[ChatTurn]:
        turn = self.store.turns.get(turn_id)
        if turn is None or turn.owner_user_id != owner_user_id:
            return None
        return _copy(turn)

    async def get_by_user_message(self, user_message_id: UUID, owner_user_id: UUID, conn=None):
        for turn in self.store.turns.values():
            if turn.user_message_id == user_message_id and turn.owner_user_id == owner_user_id:
                return _copy(turn)
        return None

    async def update_status(self, turn_id: UUID, status: TurnStatus, error: str = "", conn=None):
        turn = self.store.turns.get(turn_id)
        if turn is None or turn.status not in (TurnStatus.QUEUED, TurnStatus.RUNNING):
            return None
        turn.status = status
        turn.error = error[:2000]
        if status.is_terminal():
            turn.completed_at = self.store.now()
        turn.updated_at = self.store.now()
        return _copy(turn)


# ============================================================================
# WIRING
# ============================================================================

class RecordingChannel:
    """NotificationChannel that keeps every published event."""

    def __init__(self, fail: bool = False):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = fail

    async def publish(self, channel_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.events.append((channel_id, event_kind, payload))

    def kinds(self, job_id: Optional[UUID] = None) -> List[str]:
        return [
            kind for _, kind, payload in self.events
            if job_id is None or payload.get("job_id") == str(job_id)
        ]


def fast_defaults(**worker_overrides) -> Defaults:
    """Tiny delays so retries and yields resolve within a test."""
    worker = dict(
        worker_count=1,
        lease_heartbeat_seconds=0.05,
        poll_interval_seconds=0.01,
        cancel_grace_seconds=0.1,
        shutdown_timeout_seconds=1.0,
        stale_sweep_interval_seconds=0.05,
    )
    worker.update(worker_overrides)
    return Defaults(
        queue=QueueDefaults(
            max_attempts=3,
            retry_delay_base_ms=1,
            retry_delay_cap_ms=2,
            stale_lease_seconds=60,
            claim_timeout_seconds=1.0,
        ),
        worker=WorkerDefaults(**worker),
        orchestrator=OrchestratorDefaults(
            stage_max_attempts=3,
            min_poll_seconds=0.005,
            max_poll_seconds=0.02,
            backoff_jitter=0.0,
        ),
        notifier=NotifierDefaults(publish_timeout_seconds=0.5),
    )


def install_fakes(services, store: FakeStore) -> None:
    """Point every repository of a CoreServices at the fake store."""
    job_repo = FakeJobRunRepository(store)
    services.job_service.job_repo = job_repo
    services.job_service.idempotency_repo = FakeIdempotencyRepository(store)
    services.saga_service.saga_repo = FakeSagaRunRepository(store)
    services.saga_service.action_repo = FakeSagaActionRepository(store)
    services.waitpoint_service.job_repo = job_repo
    services.chat_service.thread_repo = FakeChatThreadRepository(store)
    services.chat_service.message_repo = FakeChatMessageRepository(store)
    services.chat_service.turn_repo = FakeChatTurnRepository(store)
    services.chat_service.job_repo = job_repo
    if services.orchestrator is not None:
        services.orchestrator.job_repo = job_repo


def build_services(store: FakeStore, adapters=None, channel=None, defaults=None, seed: int = 7):
    """CoreServices on the fake store."""
    from services import CoreServices

    services = CoreServices.build(
        FakePool(store),
        defaults=defaults or fast_defaults(),
        adapters=adapters,
        channel=channel,
        rng=random.Random(seed),
    )
    install_fakes(services, store)
    return services


def make_worker(store: FakeStore, services, worker_id: str = "test-worker"):
    from worker.runtime import JobWorker

    worker = JobWorker(
        services.pool,
        worker_id,
        services=services,
        defaults=services.defaults,
        rng=random.Random(3),
    )
    worker.job_repo = FakeJobRunRepository(store)
    return worker


async def drain(worker, max_rounds: int = 200, idle_sleep: float = 0.01) -> int:
    """
    Claim and process until nothing is runnable three times in a row.

    Returns:
        Number of claims processed
    """
    import asyncio

    processed = 0
    idle = 0
    for _ in range(max_rounds):
        if await worker.run_once():
            processed += 1
            idle = 0
            continue
        idle += 1
        if idle >= 3:
            break
        await asyncio.sleep(idle_sleep)
    return processed
