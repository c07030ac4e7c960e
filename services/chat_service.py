# ============================================================================
# CHAT SERVICE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Chat turn coordination
# PURPOSE: Serialize one in-flight chat_respond per thread
# CREATED: 12 OCT 2026
# ============================================================================
"""
Chat Service

send_message() runs in one transaction under the thread row lock:

    1. idempotent replay (same user key) returns the original turn
    2. a runnable chat_respond on the thread -> ThreadBusy
    3. user message (seq n+1) + assistant placeholder (seq n+2, streaming)
    4. thread.next_seq advanced to n+2
    5. chat_respond job enqueued, ChatTurn binds the three

Notifications go out after commit. Edits and deletes are user-only and
trigger a debounced chat_rebuild job.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from core.config import Defaults, get_defaults
from core.contracts import (
    ENTITY_CHAT_THREAD,
    JOB_TYPE_CHAT_REBUILD,
    JOB_TYPE_CHAT_RESPOND,
    MessageRole,
    MessageStatus,
    TurnStatus,
    utc_now,
)
from core.errors import Conflict, InvalidArgument, NotFound, ThreadBusy
from core.models import ChatMessage, ChatThread, ChatTurn, JobRun
from repositories import (
    ChatMessageRepository,
    ChatThreadRepository,
    ChatTurnRepository,
    JobRunRepository,
    transaction,
)
from .job_service import JobService
from .notifier import JobNotifier

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Outcome of send_message; replayed=True for an idempotent repeat."""
    user_message: ChatMessage
    assistant_message: Optional[ChatMessage]
    job: Optional[JobRun]
    turn: Optional[ChatTurn]
    replayed: bool = False


class ChatService:
    """Service for chat threads and turns."""

    def __init__(
        self,
        pool: AsyncConnectionPool,
        job_service: JobService,
        notifier: Optional[JobNotifier] = None,
        defaults: Optional[Defaults] = None,
    ):
        """
        Initialize chat service.

        Args:
            pool: Database connection pool
            job_service: Used to create chat_respond / chat_rebuild jobs
            notifier: Post-commit notifier
            defaults: Configuration, falls back to get_defaults()
        """
        self.pool = pool
        self.job_service = job_service
        self.notifier = notifier or job_service.notifier
        self.limits = (defaults or get_defaults()).chat
        self.thread_repo = ChatThreadRepository(pool)
        self.message_repo = ChatMessageRepository(pool)
        self.turn_repo = ChatTurnRepository(pool)
        self.job_repo = JobRunRepository(pool)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _clean_content(self, content: Optional[str], operation: str) -> str:
        content = (content or "").strip()
        if not content:
            raise InvalidArgument("missing content", operation=operation)
        if len(content) > self.limits.max_content_chars:
            raise InvalidArgument("message too large", operation=operation)
        return content

    def _clean_key(self, key: Optional[str]) -> str:
        key = (key or "").strip()
        if len(key) > self.limits.max_idempotency_key_chars:
            raise InvalidArgument("idempotency key too long", operation="chat.send")
        return key

    # =========================================================================
    # THREADS
    # =========================================================================

    async def create_thread(
        self,
        owner_user_id: UUID,
        title: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatThread:
        if owner_user_id is None:
            raise InvalidArgument("owner_user_id is required", operation="chat.create_thread")
        thread = ChatThread(
            owner_user_id=owner_user_id,
            title=(title or "New chat").strip()[:200],
            metadata=metadata or {},
        )
        return await self.thread_repo.create(thread)

    async def get_thread(self, owner_user_id: UUID, thread_id: UUID) -> ChatThread:
        thread = await self.thread_repo.get(thread_id, owner_user_id)
        if thread is None:
            raise NotFound("thread not found", operation="chat.get_thread", entity_id=thread_id)
        return thread

    async def list_messages(self, owner_user_id: UUID, thread_id: UUID):
        await self.get_thread(owner_user_id, thread_id)
        return await self.message_repo.list_by_thread(thread_id, owner_user_id)

    # =========================================================================
    # SEND
    # =========================================================================

    async def _replay(
        self,
        owner_user_id: UUID,
        thread_id: UUID,
        key: str,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[SendResult]:
        existing = await self.message_repo.get_user_by_idempotency_key(thread_id, owner_user_id, key, conn=conn)
        if existing is None:
            return None

        assistant = await self.message_repo.get_by_seq(thread_id, owner_user_id, existing.seq + 1, conn=conn)
        if assistant is not None and assistant.role != MessageRole.ASSISTANT:
            assistant = None
        turn = await self.turn_repo.get_by_user_message(existing.id, owner_user_id, conn=conn)
        job = None
        if turn is not None and turn.job_id is not None:
            job = await self.job_repo.get(turn.job_id, owner_user_id=owner_user_id, conn=conn)

        logger.info(f"Idempotent send replay on thread {thread_id} -> message {existing.id}")
        return SendResult(existing, assistant, job, turn, replayed=True)

    async def send_message(
        self,
        owner_user_id: UUID,
        thread_id: UUID,
        content: str,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        """
        Post a user message and enqueue the assistant reply.

        Raises:
            InvalidArgument: empty or oversized content, oversized key
            NotFound: thread missing or not owned
            ThreadBusy: a chat_respond job is already runnable on the thread
        """
        if owner_user_id is None or thread_id is None:
            raise InvalidArgument("owner and thread are required", operation="chat.send")
        content = self._clean_content(content, "chat.send")
        key = self._clean_key(idempotency_key)

        # Fast path, no lock: lets clients retry while the reply is running
        if key:
            replay = await self._replay(owner_user_id, thread_id, key)
            if replay is not None:
                return replay

        if await self.job_repo.has_runnable_for_entity(
            owner_user_id, ENTITY_CHAT_THREAD, thread_id, JOB_TYPE_CHAT_RESPOND
        ):
            raise ThreadBusy(thread_id, operation="chat.send")

        try:
            async with transaction(self.pool) as conn:
                thread = await self.thread_repo.lock(thread_id, owner_user_id, conn)
                if thread is None:
                    raise NotFound("thread not found", operation="chat.send", entity_id=thread_id)

                if key:
                    replay = await self._replay(owner_user_id, thread_id, key, conn=conn)
                    if replay is not None:
                        return replay

                if await self.job_repo.has_runnable_for_entity(
                    owner_user_id, ENTITY_CHAT_THREAD, thread_id, JOB_TYPE_CHAT_RESPOND, conn=conn
                ):
                    raise ThreadBusy(thread_id, operation="chat.send")

                result = await self._create_turn(conn, thread, content, key)
        except ThreadBusy:
            raise
        except Conflict as e:
            # Singleton index caught a concurrent enqueue
            raise ThreadBusy(thread_id, operation="chat.send") from e

        await self.notifier.message_created(result.user_message)
        await self.notifier.message_created(result.assistant_message)
        await self.notifier.job_created(result.job)
        return result

    async def _create_turn(
        self,
        conn: AsyncConnection,
        thread: ChatThread,
        content: str,
        key: str,
    ) -> SendResult:
        now = utc_now()
        owner = thread.owner_user_id
        seq_user = thread.next_seq + 1
        seq_assistant = seq_user + 1

        user_msg = await self.message_repo.create(
            ChatMessage(
                thread_id=thread.id,
                owner_user_id=owner,
                seq=seq_user,
                role=MessageRole.USER,
                status=MessageStatus.SENT,
                content=content,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            ),
            conn=conn,
        )
        assistant_msg = await self.message_repo.create(
            ChatMessage(
                thread_id=thread.id,
                owner_user_id=owner,
                seq=seq_assistant,
                role=MessageRole.ASSISTANT,
                status=MessageStatus.STREAMING,
                content="",
                created_at=now,
                updated_at=now,
            ),
            conn=conn,
        )
        await self.thread_repo.advance_seq(thread.id, seq_assistant, now, conn)

        turn = ChatTurn(
            owner_user_id=owner,
            thread_id=thread.id,
            user_message_id=user_msg.id,
            assistant_message_id=assistant_msg.id,
        )
        job = await self.job_service.create_job(
            conn,
            owner,
            JOB_TYPE_CHAT_RESPOND,
            ENTITY_CHAT_THREAD,
            thread.id,
            payload={
                "thread_id": str(thread.id),
                "user_message_id": str(user_msg.id),
                "assistant_message_id": str(assistant_msg.id),
                "turn_id": str(turn.id),
            },
        )
        turn.job_id = job.id
        turn = await self.turn_repo.create(turn, conn=conn)

        # Client convenience only; the turn row is authoritative
        assistant_msg = await self.message_repo.update_status(
            assistant_msg.id,
            MessageStatus.STREAMING,
            metadata={"job_id": str(job.id), "turn_id": str(turn.id)},
            conn=conn,
        )

        logger.info(
            f"Thread {thread.id}: turn {turn.id} seq {seq_user}/{seq_assistant} job {job.id}"
        )
        return SendResult(user_msg, assistant_msg, job, turn)

    # =========================================================================
    # EDIT / DELETE / REBUILD
    # =========================================================================

    async def rebuild_thread(self, owner_user_id: UUID, thread_id: UUID) -> JobRun:
        """
        Enqueue a debounced chat_rebuild job.

        Returns the already-runnable rebuild job if there is one.

        Raises:
            NotFound: thread missing or not owned
            ThreadBusy: a reply is in flight
        """
        async with transaction(self.pool) as conn:
            job, created = await self._enqueue_rebuild(conn, owner_user_id, thread_id)
        if created:
            await self.notifier.job_created(job)
        return job

    async def _enqueue_rebuild(self, conn: AsyncConnection, owner_user_id: UUID, thread_id: UUID):
        thread = await self.thread_repo.get(thread_id, owner_user_id, conn=conn)
        if thread is None:
            raise NotFound("thread not found", operation="chat.rebuild", entity_id=thread_id)

        if await self.job_repo.has_runnable_for_entity(
            owner_user_id, ENTITY_CHAT_THREAD, thread_id, JOB_TYPE_CHAT_RESPOND, conn=conn
        ):
            raise ThreadBusy(thread_id, operation="chat.rebuild")

        if await self.job_repo.has_runnable_for_entity(
            owner_user_id, ENTITY_CHAT_THREAD, thread_id, JOB_TYPE_CHAT_REBUILD, conn=conn
        ):
            latest = await self.job_repo.get_latest_by_entity(
                owner_user_id, ENTITY_CHAT_THREAD, thread_id, JOB_TYPE_CHAT_REBUILD, conn=conn
            )
            if latest is not None:
                logger.debug(f"Rebuild of thread {thread_id} already queued as {latest.id}")
                return latest, False

        job = await self.job_service.create_job(
            conn,
            owner_user_id,
            JOB_TYPE_CHAT_REBUILD,
            ENTITY_CHAT_THREAD,
            thread_id,
            payload={"thread_id": str(thread_id)},
        )
        return job, True

    async def update_message(
        self,
        owner_user_id: UUID,
        thread_id: UUID,
        message_id: UUID,
        content: str,
    ) -> JobRun:
        """
        Edit a user message and rebuild the thread.

        Raises:
            InvalidArgument: bad content, or the message is not a user message
            NotFound: message missing or not owned
            ThreadBusy: a reply is in flight
        """
        content = self._clean_content(content, "chat.update_message")
        async with transaction(self.pool) as conn:
            await self._require_user_message(owner_user_id, thread_id, message_id, conn)
            job, created = await self._enqueue_rebuild(conn, owner_user_id, thread_id)
            await self.message_repo.update_user_content(message_id, thread_id, owner_user_id, content, conn=conn)
        if created:
            await self.notifier.job_created(job)
        return job

    async def delete_message(self, owner_user_id: UUID, thread_id: UUID, message_id: UUID) -> JobRun:
        """Soft-delete a user message and rebuild the thread."""
        async with transaction(self.pool) as conn:
            await self._require_user_message(owner_user_id, thread_id, message_id, conn)
            job, created = await self._enqueue_rebuild(conn, owner_user_id, thread_id)
            await self.message_repo.soft_delete_user(message_id, thread_id, owner_user_id, conn=conn)
        if created:
            await self.notifier.job_created(job)
        return job

    async def _require_user_message(
        self,
        owner_user_id: UUID,
        thread_id: UUID,
        message_id: UUID,
        conn: AsyncConnection,
    ) -> ChatMessage:
        message = await self.message_repo.get(message_id, owner_user_id, conn=conn)
        if message is None or message.thread_id != thread_id:
            raise NotFound("message not found", operation="chat.edit", entity_id=message_id)
        if message.role != MessageRole.USER:
            raise InvalidArgument("only user messages can be edited or deleted", operation="chat.edit")
        return message

    # =========================================================================
    # TURNS
    # =========================================================================

    async def get_turn(self, owner_user_id: UUID, turn_id: UUID) -> ChatTurn:
        turn = await self.turn_repo.get(turn_id, owner_user_id)
        if turn is None:
            raise NotFound("turn not found", operation="chat.get_turn", entity_id=turn_id)
        return turn

    async def complete_turn(self, owner_user_id: UUID, turn_id: UUID, content: str) -> ChatMessage:
        """Fill the assistant placeholder and close the turn (called by chat_respond)."""
        async with transaction(self.pool) as conn:
            turn = await self.turn_repo.get(turn_id, owner_user_id, conn=conn)
            if turn is None:
                raise NotFound("turn not found", operation="chat.complete_turn", entity_id=turn_id)
            message = await self.message_repo.update_status(
                turn.assistant_message_id, MessageStatus.DONE, content=content, conn=conn
            )
            await self.turn_repo.update_status(turn_id, TurnStatus.DONE, conn=conn)

        await self.notifier.message_created(message)
        return message

    async def mark_turn_failed(self, owner_user_id: UUID, turn_id: UUID, error: str) -> Optional[ChatTurn]:
        """Mark the turn and its placeholder as errored; no-op if already closed."""
        async with transaction(self.pool) as conn:
            turn = await self.turn_repo.update_status(turn_id, TurnStatus.ERROR, error=error, conn=conn)
            if turn is None:
                return None
            await self.message_repo.update_status(turn.assistant_message_id, MessageStatus.ERROR, conn=conn)

        logger.warning(f"Turn {turn_id} failed: {error}")
        await self.notifier.turn_failed(turn)
        return turn


__all__ = ["ChatService", "SendResult"]
