# ============================================================================
# CHAT HANDLERS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Handlers - Chat reply and rebuild jobs
# PURPOSE: Fill assistant placeholders and rebuild thread-derived state
# CREATED: 12 OCT 2026
# ============================================================================
"""
Chat Handlers

chat_respond runs once per turn. It reads the thread transcript up to the
turn's user message, asks the LLM adapter for a reply, and completes the
turn. Once the job has failed for good (fatal error, budget spent, timeout
on the last attempt, expired lease) the worker calls fail_turn, which marks
the turn and its placeholder as errored so the client stops waiting.

chat_rebuild recomputes the thread summary after an edit or delete.
"""

import logging
from typing import List
from uuid import UUID

from core.contracts import JOB_TYPE_CHAT_REBUILD, JOB_TYPE_CHAT_RESPOND, MessageRole, MessageStatus
from core.errors import ConfigError
from core.models import ChatMessage, JobRun
from handlers.registry import HandlerContext, HandlerResult, register_handler

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 40


def build_prompt(messages: List[ChatMessage], upto_seq: int) -> str:
    """Plain transcript of the last TRANSCRIPT_LIMIT messages up to upto_seq."""
    lines = []
    usable = [
        m for m in messages
        if m.seq <= upto_seq and m.content and m.status != MessageStatus.ERROR
    ]
    for message in usable[-TRANSCRIPT_LIMIT:]:
        speaker = "User" if message.role == MessageRole.USER else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    lines.append("Assistant:")
    return "\n".join(lines)


async def fail_turn(services, job: JobRun) -> None:
    """Close the turn of a chat_respond job that failed for good."""
    turn_id = UUID(job.payload["turn_id"])
    await services.chat_service.mark_turn_failed(
        job.owner_user_id, turn_id, job.error or "reply generation failed"
    )


@register_handler(
    JOB_TYPE_CHAT_RESPOND,
    description="Generates the assistant reply for one chat turn",
    timeout_seconds=300,
    on_final_failure=fail_turn,
)
async def chat_respond_handler(ctx: HandlerContext) -> HandlerResult:
    chat = ctx.services.chat_service
    turn_id = UUID(ctx.payload["turn_id"])

    turn = await chat.get_turn(ctx.owner_user_id, turn_id)
    if turn.status.is_terminal():
        logger.info(f"Turn {turn_id} already {turn.status.value}; nothing to do")
        return HandlerResult.success_result({"turn_id": str(turn_id), "skipped": True})

    llm = ctx.adapters.llm if ctx.adapters else None
    if llm is None:
        raise ConfigError("llm adapter is not configured", operation="chat_respond")

    messages = await chat.list_messages(ctx.owner_user_id, turn.thread_id)
    user_message = next((m for m in messages if m.id == turn.user_message_id), None)
    if user_message is None:
        raise ConfigError("turn's user message is gone", operation="chat_respond", entity_id=turn_id)

    await ctx.report_progress("generate", 10, "Thinking")
    ctx.raise_if_cancelled()
    reply = await llm.generate_text(build_prompt(messages, user_message.seq))
    ctx.raise_if_cancelled()

    message = await chat.complete_turn(ctx.owner_user_id, turn_id, reply)
    return HandlerResult.success_result(
        {"turn_id": str(turn_id), "assistant_message_id": str(message.id), "chars": len(reply)}
    )


@register_handler(
    JOB_TYPE_CHAT_REBUILD,
    description="Recomputes thread-derived state after an edit or delete",
    timeout_seconds=300,
)
async def chat_rebuild_handler(ctx: HandlerContext) -> HandlerResult:
    chat = ctx.services.chat_service
    thread_id = UUID(ctx.payload["thread_id"])

    messages = await chat.list_messages(ctx.owner_user_id, thread_id)
    visible = [m for m in messages if m.status in (MessageStatus.SENT, MessageStatus.DONE)]

    summary = None
    llm = ctx.adapters.llm if ctx.adapters else None
    if llm is not None and visible:
        ctx.raise_if_cancelled()
        summary = await llm.generate_text(
            "Summarize this conversation in two sentences.\n\n"
            + build_prompt(visible, visible[-1].seq)
        )

    return HandlerResult.success_result({
        "thread_id": str(thread_id),
        "message_count": len(visible),
        "last_seq": visible[-1].seq if visible else 0,
        "summary": summary,
    })


__all__ = ["chat_respond_handler", "chat_rebuild_handler", "build_prompt", "fail_turn"]
