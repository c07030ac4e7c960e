# ============================================================================
# CHAT MODELS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core model - Threads, messages and turns
# PURPOSE: Persisted chat state serialized by the turn coordinator
# CREATED: 12 OCT 2026
# ============================================================================
"""
Chat Models

A ChatTurn binds one user message, the assistant placeholder that answers it
(seq = user seq + 1) and the chat_respond job that fills the placeholder.
ChatThread.next_seq is the last allocated sequence number; it only grows.
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from core.contracts import MessageRole, MessageStatus, TurnStatus, utc_now


class ChatThread(BaseModel):
    """
    Maps to: jobcore.chat_thread table
    """

    __sql_table__: ClassVar[str] = "chat_thread"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["id"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {}
    __sql_indexes__: ClassVar[List[tuple]] = [
        ("idx_chat_thread_owner", ["owner_user_id", "last_message_at"], "deleted_at IS NULL"),
    ]

    id: UUID = Field(default_factory=uuid4)
    owner_user_id: UUID
    title: str = Field(default="", max_length=200)
    next_seq: int = Field(default=0, ge=0, description="Last allocated message seq")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class ChatMessage(BaseModel):
    """
    Maps to: jobcore.chat_message table

    idempotency_key is only set on user messages; the partial unique index
    makes a replayed send land on the original row.
    """

    __sql_table__: ClassVar[str] = "chat_message"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["id"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {
        "thread_id": "jobcore.chat_thread(id)",
    }
    __sql_indexes__: ClassVar[List[Any]] = [
        {"name": "idx_chat_message_seq", "columns": ["thread_id", "seq"], "unique": True},
        {
            "name": "idx_chat_message_idempotency",
            "columns": ["thread_id", "owner_user_id", "idempotency_key"],
            "unique": True,
            "partial_where": "role = 'user' AND idempotency_key <> '' AND deleted_at IS NULL",
        },
    ]

    id: UUID = Field(default_factory=uuid4)
    thread_id: UUID
    owner_user_id: UUID
    seq: int = Field(..., ge=1)
    role: MessageRole
    status: MessageStatus = Field(default=MessageStatus.SENT)
    content: str = Field(default="")
    idempotency_key: str = Field(default="", max_length=200)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None


class ChatTurn(BaseModel):
    """
    Maps to: jobcore.chat_turn table
    """

    __sql_table__: ClassVar[str] = "chat_turn"
    __sql_schema__: ClassVar[str] = "jobcore"
    __sql_primary_key__: ClassVar[List[str]] = ["id"]
    __sql_foreign_keys__: ClassVar[Dict[str, str]] = {
        "thread_id": "jobcore.chat_thread(id)",
        "user_message_id": "jobcore.chat_message(id)",
        "assistant_message_id": "jobcore.chat_message(id)",
    }
    __sql_indexes__: ClassVar[List[Any]] = [
        {"name": "idx_chat_turn_user_message", "columns": ["user_message_id"], "unique": True},
        ("idx_chat_turn_job", ["job_id"]),
    ]

    id: UUID = Field(default_factory=uuid4)
    owner_user_id: UUID
    thread_id: UUID
    user_message_id: UUID
    assistant_message_id: UUID
    job_id: Optional[UUID] = None
    status: TurnStatus = Field(default=TurnStatus.QUEUED)
    attempt: int = Field(default=0, ge=0)
    error: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


__all__ = ["ChatThread", "ChatMessage", "ChatTurn"]
