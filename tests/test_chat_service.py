# ============================================================================
# CHAT SERVICE TESTS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Tests - Chat turn coordination
# PURPOSE: Threads, sends, replays, busy threads, edits and turn handlers
# CREATED: 12 OCT 2026
# ============================================================================
"""
Chat Service Tests

Covers:
1. create_thread / get_thread / list_messages ownership
2. send_message: seq allocation, placeholder, turn binding, notifications
3. Idempotent replay and ThreadBusy while a reply is runnable
4. rebuild_thread debounce; edit and delete are user-only
5. complete_turn / mark_turn_failed
6. chat_respond and chat_rebuild handlers through the worker
7. build_prompt transcript rules

Run with:
    pytest tests/test_chat_service.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from core.contracts import (
    ENTITY_CHAT_THREAD,
    JOB_TYPE_CHAT_REBUILD,
    JOB_TYPE_CHAT_RESPOND,
    JobRunStatus,
    MessageRole,
    MessageStatus,
    TurnStatus,
)
from core.errors import InvalidArgument, NotFound, ThreadBusy, TransientError
from core.models import ChatMessage
from handlers.chat import TRANSCRIPT_LIMIT, build_prompt, chat_rebuild_handler, chat_respond_handler, fail_turn
from handlers.registry import clear_handlers, register_handler
from infrastructure.adapters import Adapters
from tests.fakes import FakeStore, RecordingChannel, build_services, drain, make_worker


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def llm():
    llm = MagicMock()
    llm.generate_text = AsyncMock(return_value="Hello there!")
    return llm


@pytest.fixture
def services(store, channel, llm):
    return build_services(store, adapters=Adapters(llm=llm), channel=channel)


@pytest.fixture
def chat(services):
    return services.chat_service


@pytest.fixture
def owner():
    return uuid4()


@pytest.fixture
def thread(chat, owner):
    return asyncio.run(chat.create_thread(owner, "Physics"))


@pytest.fixture
def chat_handlers():
    clear_handlers()
    register_handler(JOB_TYPE_CHAT_RESPOND, timeout_seconds=300, on_final_failure=fail_turn)(chat_respond_handler)
    register_handler(JOB_TYPE_CHAT_REBUILD, timeout_seconds=300)(chat_rebuild_handler)
    yield
    clear_handlers()


def finish_job(store, job_id, status=JobRunStatus.SUCCEEDED):
    store.jobs[job_id].status = status


# ============================================================================
# THREADS
# ============================================================================

class TestThreads:

    def test_create_defaults(self, chat, owner):
        thread = asyncio.run(chat.create_thread(owner))
        assert thread.title == "New chat"
        assert thread.next_seq == 0
        assert thread.owner_user_id == owner

    def test_create_requires_owner(self, chat):
        with pytest.raises(InvalidArgument):
            asyncio.run(chat.create_thread(None, "x"))

    def test_get_thread_is_owner_scoped(self, chat, thread, owner):
        assert asyncio.run(chat.get_thread(owner, thread.id)).title == "Physics"
        with pytest.raises(NotFound):
            asyncio.run(chat.get_thread(uuid4(), thread.id))

    def test_list_messages_requires_thread(self, chat, owner):
        with pytest.raises(NotFound):
            asyncio.run(chat.list_messages(owner, uuid4()))


# ============================================================================
# SEND
# ============================================================================

class TestSendMessage:

    def test_creates_turn(self, chat, thread, owner, store, channel):
        result = asyncio.run(chat.send_message(owner, thread.id, "  What is inertia?  "))

        user, assistant, job, turn = result.user_message, result.assistant_message, result.job, result.turn
        assert result.replayed is False
        assert (user.seq, assistant.seq) == (1, 2)
        assert user.role == MessageRole.USER
        assert user.status == MessageStatus.SENT
        assert user.content == "What is inertia?"
        assert assistant.role == MessageRole.ASSISTANT
        assert assistant.status == MessageStatus.STREAMING
        assert assistant.content == ""
        assert assistant.metadata == {"job_id": str(job.id), "turn_id": str(turn.id)}

        assert job.job_type == JOB_TYPE_CHAT_RESPOND
        assert job.entity_type == ENTITY_CHAT_THREAD
        assert job.entity_id == thread.id
        assert job.payload["turn_id"] == str(turn.id)
        assert turn.status == TurnStatus.QUEUED
        assert turn.job_id == job.id
        assert turn.user_message_id == user.id
        assert turn.assistant_message_id == assistant.id

        assert store.threads[thread.id].next_seq == 2
        assert channel.kinds() == ["message_created", "message_created", "job_created"]

    def test_seq_continues_after_reply(self, chat, thread, owner, store):
        first = asyncio.run(chat.send_message(owner, thread.id, "one"))
        finish_job(store, first.job.id)
        second = asyncio.run(chat.send_message(owner, thread.id, "two"))
        assert (second.user_message.seq, second.assistant_message.seq) == (3, 4)

    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_missing_content(self, chat, thread, owner, content):
        with pytest.raises(InvalidArgument, match="missing content"):
            asyncio.run(chat.send_message(owner, thread.id, content))

    def test_content_too_large(self, chat, thread, owner):
        with pytest.raises(InvalidArgument, match="too large"):
            asyncio.run(chat.send_message(owner, thread.id, "x" * 20001))

    def test_key_too_long(self, chat, thread, owner):
        with pytest.raises(InvalidArgument):
            asyncio.run(chat.send_message(owner, thread.id, "hi", idempotency_key="k" * 201))

    def test_unknown_thread(self, chat, owner):
        with pytest.raises(NotFound):
            asyncio.run(chat.send_message(owner, uuid4(), "hi"))

    def test_other_owner(self, chat, thread):
        with pytest.raises(NotFound):
            asyncio.run(chat.send_message(uuid4(), thread.id, "hi"))

    def test_busy_while_reply_runnable(self, chat, thread, owner, store):
        asyncio.run(chat.send_message(owner, thread.id, "first"))
        with pytest.raises(ThreadBusy):
            asyncio.run(chat.send_message(owner, thread.id, "second"))
        assert len(store.messages) == 2

    def test_busy_while_reply_retry_pending(self, chat, thread, owner, store):
        first = asyncio.run(chat.send_message(owner, thread.id, "first"))
        row = store.jobs[first.job.id]
        row.status = JobRunStatus.FAILED
        row.attempts = 1
        row.retryable = True
        with pytest.raises(ThreadBusy):
            asyncio.run(chat.send_message(owner, thread.id, "second"))

    def test_failed_reply_frees_thread(self, chat, thread, owner, store):
        first = asyncio.run(chat.send_message(owner, thread.id, "first"))
        store.jobs[first.job.id].status = JobRunStatus.FAILED
        store.jobs[first.job.id].retryable = False
        asyncio.run(chat.send_message(owner, thread.id, "second"))

    def test_replay_returns_original_turn(self, chat, thread, owner, store, channel):
        first = asyncio.run(chat.send_message(owner, thread.id, "hello", idempotency_key="abc"))
        events = len(channel.events)
        again = asyncio.run(chat.send_message(owner, thread.id, "hello", idempotency_key="abc"))

        assert again.replayed is True
        assert again.user_message.id == first.user_message.id
        assert again.assistant_message.id == first.assistant_message.id
        assert again.turn.id == first.turn.id
        assert again.job.id == first.job.id
        assert len(store.messages) == 2
        assert len(channel.events) == events

    def test_replay_after_reply_finished(self, chat, thread, owner, store):
        first = asyncio.run(chat.send_message(owner, thread.id, "hello", idempotency_key="abc"))
        finish_job(store, first.job.id)
        again = asyncio.run(chat.send_message(owner, thread.id, "hello", idempotency_key="abc"))
        assert again.replayed and again.job.status == JobRunStatus.SUCCEEDED


# ============================================================================
# REBUILD / EDIT / DELETE
# ============================================================================

class TestEditAndRebuild:

    def _settled_turn(self, chat, thread, owner, store):
        result = asyncio.run(chat.send_message(owner, thread.id, "original"))
        finish_job(store, result.job.id)
        return result

    def test_rebuild_is_debounced(self, chat, thread, owner, store, channel):
        first = asyncio.run(chat.rebuild_thread(owner, thread.id))
        second = asyncio.run(chat.rebuild_thread(owner, thread.id))

        assert first.id == second.id
        assert first.job_type == JOB_TYPE_CHAT_REBUILD
        assert len(store.jobs_of_type(JOB_TYPE_CHAT_REBUILD)) == 1
        assert channel.kinds(first.id) == ["job_created"]

    def test_rebuild_busy_while_reply_runnable(self, chat, thread, owner):
        asyncio.run(chat.send_message(owner, thread.id, "hi"))
        with pytest.raises(ThreadBusy):
            asyncio.run(chat.rebuild_thread(owner, thread.id))

    def test_rebuild_unknown_thread(self, chat, owner):
        with pytest.raises(NotFound):
            asyncio.run(chat.rebuild_thread(owner, uuid4()))

    def test_edit_user_message(self, chat, thread, owner, store):
        turn = self._settled_turn(chat, thread, owner, store)
        job = asyncio.run(chat.update_message(owner, thread.id, turn.user_message.id, "edited"))

        assert store.messages[turn.user_message.id].content == "edited"
        assert job.job_type == JOB_TYPE_CHAT_REBUILD

    def test_assistant_message_cannot_be_edited(self, chat, thread, owner, store):
        turn = self._settled_turn(chat, thread, owner, store)
        with pytest.raises(InvalidArgument):
            asyncio.run(chat.update_message(owner, thread.id, turn.assistant_message.id, "nope"))
        with pytest.raises(InvalidArgument):
            asyncio.run(chat.delete_message(owner, thread.id, turn.assistant_message.id))

    def test_edit_in_other_thread_is_not_found(self, chat, thread, owner, store):
        turn = self._settled_turn(chat, thread, owner, store)
        other = asyncio.run(chat.create_thread(owner, "Other"))
        with pytest.raises(NotFound):
            asyncio.run(chat.update_message(owner, other.id, turn.user_message.id, "x"))

    def test_edit_blocked_while_reply_runnable(self, chat, thread, owner, store):
        turn = asyncio.run(chat.send_message(owner, thread.id, "original"))
        with pytest.raises(ThreadBusy):
            asyncio.run(chat.update_message(owner, thread.id, turn.user_message.id, "edited"))
        assert store.messages[turn.user_message.id].content == "original"

    def test_delete_hides_message(self, chat, thread, owner, store):
        turn = self._settled_turn(chat, thread, owner, store)
        asyncio.run(chat.delete_message(owner, thread.id, turn.user_message.id))

        remaining = asyncio.run(chat.list_messages(owner, thread.id))
        assert [m.seq for m in remaining] == [2]
        with pytest.raises(NotFound):
            asyncio.run(chat.delete_message(owner, thread.id, turn.user_message.id))

    def test_edit_and_delete_share_one_rebuild(self, chat, thread, owner, store):
        turn = self._settled_turn(chat, thread, owner, store)
        a = asyncio.run(chat.update_message(owner, thread.id, turn.user_message.id, "edited"))
        b = asyncio.run(chat.delete_message(owner, thread.id, turn.user_message.id))
        assert a.id == b.id


# ============================================================================
# TURNS
# ============================================================================

class TestTurns:

    def test_complete_turn(self, chat, thread, owner, store, channel):
        sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
        message = asyncio.run(chat.complete_turn(owner, sent.turn.id, "Hello!"))

        assert message.status == MessageStatus.DONE
        assert message.content == "Hello!"
        turn = asyncio.run(chat.get_turn(owner, sent.turn.id))
        assert turn.status == TurnStatus.DONE
        assert turn.completed_at is not None
        assert channel.kinds()[-1] == "message_created"

    def test_mark_turn_failed(self, chat, thread, owner, store, channel):
        sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
        turn = asyncio.run(chat.mark_turn_failed(owner, sent.turn.id, "model overloaded"))

        assert turn.status == TurnStatus.ERROR
        assert turn.error == "model overloaded"
        assert store.messages[sent.assistant_message.id].status == MessageStatus.ERROR
        assert channel.kinds()[-1] == "turn_failed"

        assert asyncio.run(chat.mark_turn_failed(owner, sent.turn.id, "again")) is None

    def test_get_turn_not_found(self, chat, owner):
        with pytest.raises(NotFound):
            asyncio.run(chat.get_turn(owner, uuid4()))

    def test_complete_unknown_turn(self, chat, owner):
        with pytest.raises(NotFound):
            asyncio.run(chat.complete_turn(owner, uuid4(), "x"))


# ============================================================================
# HANDLERS
# ============================================================================

class TestChatHandlers:

    def test_respond_completes_turn(self, services, chat, thread, owner, store, llm, chat_handlers):
        worker = make_worker(store, services)
        sent = asyncio.run(chat.send_message(owner, thread.id, "What is inertia?"))
        asyncio.run(drain(worker))

        job = store.jobs[sent.job.id]
        assert job.status == JobRunStatus.SUCCEEDED
        assert job.result["chars"] == len("Hello there!")
        assistant = store.messages[sent.assistant_message.id]
        assert assistant.status == MessageStatus.DONE
        assert assistant.content == "Hello there!"
        assert store.turns[sent.turn.id].status == TurnStatus.DONE

        prompt = llm.generate_text.await_args.args[0]
        assert prompt == "User: What is inertia?\nAssistant:"

        # Thread is free again
        asyncio.run(chat.send_message(owner, thread.id, "And momentum?"))

    def test_respond_transient_failure_retries_then_marks_turn(self, services, chat, thread, owner, store, llm, chat_handlers):
        llm.generate_text.side_effect = TransientError("model overloaded")
        worker = make_worker(store, services)
        sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
        asyncio.run(drain(worker))

        job = store.jobs[sent.job.id]
        assert job.status == JobRunStatus.FAILED
        assert job.attempts == job.max_attempts
        assert llm.generate_text.await_count == job.max_attempts
        turn = store.turns[sent.turn.id]
        assert turn.status == TurnStatus.ERROR
        assert "model overloaded" in turn.error
        assert store.messages[sent.assistant_message.id].status == MessageStatus.ERROR

    def test_respond_without_llm_fails_turn_at_once(self, store, channel, owner, chat_handlers):
        services = build_services(store, adapters=Adapters(), channel=channel)
        chat = services.chat_service
        thread = asyncio.run(chat.create_thread(owner))
        worker = make_worker(store, services)
        sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
        asyncio.run(drain(worker))

        job = store.jobs[sent.job.id]
        assert job.retryable is False
        assert job.attempts == 1
        assert store.turns[sent.turn.id].status == TurnStatus.ERROR
        assert "turn_failed" in channel.kinds()

    def test_respond_timeout_on_last_attempt_fails_turn(self, services, chat, thread, owner, store, channel, llm):
        clear_handlers()
        register_handler(
            JOB_TYPE_CHAT_RESPOND, timeout_seconds=0.05, max_attempts=1, on_final_failure=fail_turn,
        )(chat_respond_handler)

        async def hang(prompt):
            await asyncio.sleep(5)

        llm.generate_text.side_effect = hang
        try:
            worker = make_worker(store, services)
            sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
            asyncio.run(drain(worker))
        finally:
            clear_handlers()

        job = store.jobs[sent.job.id]
        assert job.status == JobRunStatus.FAILED
        assert job.attempts == 1
        assert "timed out" in job.error
        turn = store.turns[sent.turn.id]
        assert turn.status == TurnStatus.ERROR
        assert "timed out" in turn.error
        assert store.messages[sent.assistant_message.id].status == MessageStatus.ERROR
        assert "turn_failed" in channel.kinds()

    def test_respond_skips_closed_turn(self, services, chat, thread, owner, store, llm, chat_handlers):
        worker = make_worker(store, services)
        sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
        asyncio.run(chat.complete_turn(owner, sent.turn.id, "answered elsewhere"))
        asyncio.run(drain(worker))

        assert store.jobs[sent.job.id].result["skipped"] is True
        llm.generate_text.assert_not_awaited()

    def test_rebuild_summarizes_visible_messages(self, services, chat, thread, owner, store, llm, chat_handlers):
        worker = make_worker(store, services)
        sent = asyncio.run(chat.send_message(owner, thread.id, "hi"))
        asyncio.run(drain(worker))
        llm.generate_text.reset_mock()
        llm.generate_text.return_value = "A greeting."

        job = asyncio.run(chat.update_message(owner, thread.id, sent.user_message.id, "hello"))
        asyncio.run(drain(worker))

        result = store.jobs[job.id].result
        assert result["message_count"] == 2
        assert result["last_seq"] == 2
        assert result["summary"] == "A greeting."
        prompt = llm.generate_text.await_args.args[0]
        assert "User: hello" in prompt


class TestBuildPrompt:

    def _msg(self, seq, role, content, status=MessageStatus.DONE):
        return ChatMessage(
            thread_id=uuid4(), owner_user_id=uuid4(), seq=seq, role=role, status=status, content=content
        )

    def test_stops_at_seq_and_skips_errors(self):
        messages = [
            self._msg(1, MessageRole.USER, "a"),
            self._msg(2, MessageRole.ASSISTANT, "broken", MessageStatus.ERROR),
            self._msg(3, MessageRole.USER, "b"),
            self._msg(4, MessageRole.ASSISTANT, ""),
            self._msg(5, MessageRole.USER, "later"),
        ]
        assert build_prompt(messages, 4) == "User: a\nUser: b\nAssistant:"

    def test_keeps_last_messages(self):
        messages = [self._msg(i, MessageRole.USER, f"m{i}") for i in range(1, TRANSCRIPT_LIMIT + 11)]
        lines = build_prompt(messages, TRANSCRIPT_LIMIT + 10).splitlines()
        assert len(lines) == TRANSCRIPT_LIMIT + 1
        assert lines[0] == "User: m11"
