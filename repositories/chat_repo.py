# ============================================================================
# CHAT REPOSITORIES
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Chat thread, message and turn persistence
# PURPOSE: Database access for chat_thread, chat_message and chat_turn
# CREATED: 12 OCT 2026
# ============================================================================
"""
Chat Repositories

Sequence allocation is done by the caller under lock_thread(); these
repositories only read and write rows.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from psycopg import AsyncConnection, sql
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool

from core.contracts import MessageRole, MessageStatus, TurnStatus
from core.models import ChatMessage, ChatThread, ChatTurn
from .database import TABLE_CHAT_MESSAGE, TABLE_CHAT_THREAD, TABLE_CHAT_TURN, use_connection

logger = logging.getLogger(__name__)


# ============================================================================
# THREADS
# ============================================================================

class ChatThreadRepository:
    """Repository for ChatThread rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def create(self, thread: ChatThread, conn: Optional[AsyncConnection] = None) -> ChatThread:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                INSERT INTO {} (id, owner_user_id, title, next_seq, metadata, last_message_at,
                                created_at, updated_at)
                VALUES (%(id)s, %(owner)s, %(title)s, %(next_seq)s, %(metadata)s, %(last_message_at)s,
                        %(created_at)s, %(updated_at)s)
                RETURNING *
                """).format(TABLE_CHAT_THREAD),
                {
                    "id": thread.id,
                    "owner": thread.owner_user_id,
                    "title": thread.title,
                    "next_seq": thread.next_seq,
                    "metadata": Json(thread.metadata),
                    "last_message_at": thread.last_message_at,
                    "created_at": thread.created_at,
                    "updated_at": thread.updated_at,
                },
            )
            row = await result.fetchone()
        logger.info(f"Created chat thread {thread.id}")
        return self._row_to_thread(row)

    async def get(
        self,
        thread_id: UUID,
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatThread]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE id = %s AND owner_user_id = %s AND deleted_at IS NULL
                """).format(TABLE_CHAT_THREAD),
                (thread_id, owner_user_id),
            )
            row = await result.fetchone()
        return self._row_to_thread(row) if row else None

    async def lock(self, thread_id: UUID, owner_user_id: UUID, conn: AsyncConnection) -> Optional[ChatThread]:
        """SELECT ... FOR UPDATE; serializes sends on one thread."""
        result = await conn.execute(
            sql.SQL("""
            SELECT * FROM {}
            WHERE id = %s AND owner_user_id = %s AND deleted_at IS NULL
            FOR UPDATE
            """).format(TABLE_CHAT_THREAD),
            (thread_id, owner_user_id),
        )
        row = await result.fetchone()
        return self._row_to_thread(row) if row else None

    async def advance_seq(
        self,
        thread_id: UUID,
        next_seq: int,
        last_message_at: datetime,
        conn: AsyncConnection,
    ) -> None:
        """Record the last allocated seq; never moves backwards."""
        await conn.execute(
            sql.SQL("""
            UPDATE {} SET
                next_seq = GREATEST(next_seq, %(next_seq)s),
                last_message_at = %(at)s,
                updated_at = NOW()
            WHERE id = %(id)s
            """).format(TABLE_CHAT_THREAD),
            {"id": thread_id, "next_seq": next_seq, "at": last_message_at},
        )

    def _row_to_thread(self, row: Dict[str, Any]) -> ChatThread:
        return ChatThread(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            title=row.get("title") or "",
            next_seq=row.get("next_seq") or 0,
            metadata=row.get("metadata") or {},
            last_message_at=row.get("last_message_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )


# ============================================================================
# MESSAGES
# ============================================================================

class ChatMessageRepository:
    """Repository for ChatMessage rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def create(self, message: ChatMessage, conn: Optional[AsyncConnection] = None) -> ChatMessage:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                INSERT INTO {} (id, thread_id, owner_user_id, seq, role, status, content,
                                idempotency_key, metadata, created_at, updated_at)
                VALUES (%(id)s, %(thread_id)s, %(owner)s, %(seq)s, %(role)s, %(status)s, %(content)s,
                        %(key)s, %(metadata)s, %(created_at)s, %(updated_at)s)
                RETURNING *
                """).format(TABLE_CHAT_MESSAGE),
                {
                    "id": message.id,
                    "thread_id": message.thread_id,
                    "owner": message.owner_user_id,
                    "seq": message.seq,
                    "role": message.role.value,
                    "status": message.status.value,
                    "content": message.content,
                    "key": message.idempotency_key,
                    "metadata": Json(message.metadata),
                    "created_at": message.created_at,
                    "updated_at": message.updated_at,
                },
            )
            row = await result.fetchone()
        return self._row_to_message(row)

    async def get(
        self,
        message_id: UUID,
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatMessage]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {} WHERE id = %s AND owner_user_id = %s AND deleted_at IS NULL
                """).format(TABLE_CHAT_MESSAGE),
                (message_id, owner_user_id),
            )
            row = await result.fetchone()
        return self._row_to_message(row) if row else None

    async def get_user_by_idempotency_key(
        self,
        thread_id: UUID,
        owner_user_id: UUID,
        idempotency_key: str,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatMessage]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE thread_id = %(thread)s
                  AND owner_user_id = %(owner)s
                  AND role = 'user'
                  AND idempotency_key = %(key)s
                  AND deleted_at IS NULL
                """).format(TABLE_CHAT_MESSAGE),
                {"thread": thread_id, "owner": owner_user_id, "key": idempotency_key},
            )
            row = await result.fetchone()
        return self._row_to_message(row) if row else None

    async def get_by_seq(
        self,
        thread_id: UUID,
        owner_user_id: UUID,
        seq: int,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatMessage]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE thread_id = %s AND owner_user_id = %s AND seq = %s AND deleted_at IS NULL
                """).format(TABLE_CHAT_MESSAGE),
                (thread_id, owner_user_id, seq),
            )
            row = await result.fetchone()
        return self._row_to_message(row) if row else None

    async def list_by_thread(
        self,
        thread_id: UUID,
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> List[ChatMessage]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {}
                WHERE thread_id = %s AND owner_user_id = %s AND deleted_at IS NULL
                ORDER BY seq ASC
                """).format(TABLE_CHAT_MESSAGE),
                (thread_id, owner_user_id),
            )
            rows = await result.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def update_user_content(
        self,
        message_id: UUID,
        thread_id: UUID,
        owner_user_id: UUID,
        content: str,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatMessage]:
        """Edit a user message; assistant rows never match."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET content = %(content)s, updated_at = NOW()
                WHERE id = %(id)s AND thread_id = %(thread)s AND owner_user_id = %(owner)s
                  AND role = 'user' AND deleted_at IS NULL
                RETURNING *
                """).format(TABLE_CHAT_MESSAGE),
                {"id": message_id, "thread": thread_id, "owner": owner_user_id, "content": content},
            )
            row = await result.fetchone()
        return self._row_to_message(row) if row else None

    async def soft_delete_user(
        self,
        message_id: UUID,
        thread_id: UUID,
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> bool:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET deleted_at = NOW(), updated_at = NOW()
                WHERE id = %(id)s AND thread_id = %(thread)s AND owner_user_id = %(owner)s
                  AND role = 'user' AND deleted_at IS NULL
                """).format(TABLE_CHAT_MESSAGE),
                {"id": message_id, "thread": thread_id, "owner": owner_user_id},
            )
            return result.rowcount > 0

    async def update_status(
        self,
        message_id: UUID,
        status: MessageStatus,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatMessage]:
        """Set status; content and metadata are replaced only when given."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET
                    status = %(status)s,
                    content = COALESCE(%(content)s, content),
                    metadata = COALESCE(%(metadata)s, metadata),
                    updated_at = NOW()
                WHERE id = %(id)s
                RETURNING *
                """).format(TABLE_CHAT_MESSAGE),
                {
                    "id": message_id,
                    "status": status.value,
                    "content": content,
                    "metadata": Json(metadata) if metadata is not None else None,
                },
            )
            row = await result.fetchone()
        return self._row_to_message(row) if row else None

    def _row_to_message(self, row: Dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            id=row["id"],
            thread_id=row["thread_id"],
            owner_user_id=row["owner_user_id"],
            seq=row["seq"],
            role=MessageRole(row["role"]),
            status=MessageStatus(row["status"]),
            content=row.get("content") or "",
            idempotency_key=row.get("idempotency_key") or "",
            metadata=row.get("metadata") or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )


# ============================================================================
# TURNS
# ============================================================================

class ChatTurnRepository:
    """Repository for ChatTurn rows."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def create(self, turn: ChatTurn, conn: Optional[AsyncConnection] = None) -> ChatTurn:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                INSERT INTO {} (id, owner_user_id, thread_id, user_message_id, assistant_message_id,
                                job_id, status, attempt, error, created_at, updated_at)
                VALUES (%(id)s, %(owner)s, %(thread)s, %(user_msg)s, %(asst_msg)s,
                        %(job_id)s, %(status)s, %(attempt)s, %(error)s, %(created_at)s, %(updated_at)s)
                RETURNING *
                """).format(TABLE_CHAT_TURN),
                {
                    "id": turn.id,
                    "owner": turn.owner_user_id,
                    "thread": turn.thread_id,
                    "user_msg": turn.user_message_id,
                    "asst_msg": turn.assistant_message_id,
                    "job_id": turn.job_id,
                    "status": turn.status.value,
                    "attempt": turn.attempt,
                    "error": turn.error,
                    "created_at": turn.created_at,
                    "updated_at": turn.updated_at,
                },
            )
            row = await result.fetchone()
        return self._row_to_turn(row)

    async def get(
        self,
        turn_id: UUID,
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatTurn]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("SELECT * FROM {} WHERE id = %s AND owner_user_id = %s").format(TABLE_CHAT_TURN),
                (turn_id, owner_user_id),
            )
            row = await result.fetchone()
        return self._row_to_turn(row) if row else None

    async def get_by_user_message(
        self,
        user_message_id: UUID,
        owner_user_id: UUID,
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatTurn]:
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                SELECT * FROM {} WHERE user_message_id = %s AND owner_user_id = %s
                """).format(TABLE_CHAT_TURN),
                (user_message_id, owner_user_id),
            )
            row = await result.fetchone()
        return self._row_to_turn(row) if row else None

    async def update_status(
        self,
        turn_id: UUID,
        status: TurnStatus,
        error: str = "",
        conn: Optional[AsyncConnection] = None,
    ) -> Optional[ChatTurn]:
        """Finish or fail a turn that is not already terminal."""
        async with use_connection(self.pool, conn) as c:
            result = await c.execute(
                sql.SQL("""
                UPDATE {} SET
                    status = %(status)s,
                    error = %(error)s,
                    completed_at = CASE WHEN %(terminal)s THEN NOW() ELSE completed_at END,
                    updated_at = NOW()
                WHERE id = %(id)s AND status IN ('queued', 'running')
                RETURNING *
                """).format(TABLE_CHAT_TURN),
                {"id": turn_id, "status": status.value, "error": error[:2000], "terminal": status.is_terminal()},
            )
            row = await result.fetchone()
        return self._row_to_turn(row) if row else None

    def _row_to_turn(self, row: Dict[str, Any]) -> ChatTurn:
        return ChatTurn(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            thread_id=row["thread_id"],
            user_message_id=row["user_message_id"],
            assistant_message_id=row["assistant_message_id"],
            job_id=row.get("job_id"),
            status=TurnStatus(row["status"]),
            attempt=row.get("attempt") or 0,
            error=row.get("error") or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
        )


__all__ = ["ChatThreadRepository", "ChatMessageRepository", "ChatTurnRepository"]
