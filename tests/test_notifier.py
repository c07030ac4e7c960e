# ============================================================================
# NOTIFIER TESTS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Tests - Post-commit notifications
# PURPOSE: Fire-and-forget delivery, payload shape, Service Bus publisher
# CREATED: 12 OCT 2026
# ============================================================================
"""
Notifier Tests

Covers:
1. JobNotifier never raises: missing channel, failing channel, slow channel
2. Job and chat payloads and channel ids
3. NotificationPublisher message envelope (sender mocked)
4. MessagingConfig.from_env

Run with:
    pytest tests/test_notifier.py -v
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from core.config import Defaults, NotifierDefaults
from core.contracts import JobRunStatus, MessageRole, MessageStatus, NotifyEvent
from core.models import ChatMessage, ChatTurn, JobRun
from messaging import MessagingConfig, NotificationPublisher
from services.notifier import JobNotifier, job_payload
from tests.fakes import RecordingChannel


def make_job(**overrides):
    fields = dict(owner_user_id=uuid4(), job_type="echo", entity_type="material", entity_id=uuid4())
    fields.update(overrides)
    return JobRun(**fields)


def defaults(timeout=5.0):
    return Defaults(notifier=NotifierDefaults(publish_timeout_seconds=timeout))


class SlowChannel:
    async def publish(self, channel_id, event_kind, payload):
        await asyncio.sleep(1)


# ============================================================================
# JOB NOTIFIER
# ============================================================================

class TestJobNotifier:

    def test_publishes_to_owner_channel(self):
        channel = RecordingChannel()
        notifier = JobNotifier(channel, defaults())
        job = make_job()

        assert asyncio.run(notifier.job_created(job)) is True

        channel_id, kind, payload = channel.events[0]
        assert channel_id == f"user:{job.owner_user_id}"
        assert kind == "job_created"
        assert payload["job_id"] == str(job.id)
        assert payload["status"] == "queued"

    def test_no_channel_drops_event(self):
        assert asyncio.run(JobNotifier(None, defaults()).job_done(make_job())) is False

    def test_failing_channel_is_swallowed(self):
        notifier = JobNotifier(RecordingChannel(fail=True), defaults())
        assert asyncio.run(notifier.job_failed(make_job())) is False

    def test_slow_channel_is_cut_off(self):
        notifier = JobNotifier(SlowChannel(), defaults(timeout=0.01))
        assert asyncio.run(notifier.job_progress(make_job())) is False

    @pytest.mark.parametrize("method, kind", [
        ("job_created", "job_created"),
        ("job_progress", "job_progress"),
        ("job_failed", "job_failed"),
        ("job_done", "job_done"),
        ("job_canceled", "job_canceled"),
        ("job_restarted", "job_restarted"),
    ])
    def test_event_kinds(self, method, kind):
        channel = RecordingChannel()
        asyncio.run(getattr(JobNotifier(channel, defaults()), method)(make_job()))
        assert channel.kinds() == [kind]

    def test_job_payload_hides_retry_classification(self):
        job = make_job(status=JobRunStatus.FAILED, retryable=False, error="boom", entity_id=None)
        payload = job_payload(job)

        assert "retryable" not in payload
        assert payload["entity_id"] is None
        assert payload["error"] == "boom"
        assert payload["updated_at"] == job.updated_at.isoformat()

    def test_chat_events(self):
        channel = RecordingChannel()
        notifier = JobNotifier(channel, defaults())
        owner, thread = uuid4(), uuid4()
        message = ChatMessage(
            thread_id=thread, owner_user_id=owner, seq=2,
            role=MessageRole.ASSISTANT, status=MessageStatus.DONE, content="hi",
        )
        turn = ChatTurn(
            owner_user_id=owner, thread_id=thread,
            user_message_id=uuid4(), assistant_message_id=message.id,
            error="model overloaded",
        )

        asyncio.run(notifier.message_created(message))
        asyncio.run(notifier.turn_failed(turn))

        (c1, k1, p1), (c2, k2, p2) = channel.events
        assert c1 == c2 == f"user:{owner}"
        assert (k1, k2) == (NotifyEvent.MESSAGE_CREATED.value, NotifyEvent.TURN_FAILED.value)
        assert p1["seq"] == 2 and p1["role"] == "assistant"
        assert p2["job_id"] is None
        assert p2["error"] == "model overloaded"


# ============================================================================
# SERVICE BUS PUBLISHER
# ============================================================================

class TestNotificationPublisher:

    def test_envelope(self):
        publisher = NotificationPublisher(MessagingConfig(notify_topic="jobcore-events", message_ttl_seconds=60))
        publisher._sender = MagicMock()
        publisher._sender.send_messages = AsyncMock()
        job_id = uuid4()

        with patch("messaging.publisher.ServiceBusMessage") as message_cls:
            asyncio.run(publisher.publish("user:1", "job_done", {"job_id": str(job_id), "progress": 100}))

        kwargs = message_cls.call_args.kwargs
        assert json.loads(kwargs["body"]) == {
            "channel_id": "user:1",
            "event": "job_done",
            "payload": {"job_id": str(job_id), "progress": 100},
        }
        assert kwargs["subject"] == "job_done"
        assert kwargs["application_properties"] == {
            "channel_id": "user:1", "event": "job_done", "job_id": str(job_id),
        }
        message = message_cls.return_value
        assert message.time_to_live == timedelta(seconds=60)
        publisher._sender.send_messages.assert_awaited_once_with(message)

    def test_send_errors_propagate(self):
        publisher = NotificationPublisher(MessagingConfig(notify_topic="jobcore-events"))
        publisher._sender = MagicMock()
        publisher._sender.send_messages = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(ConnectionError):
            asyncio.run(publisher.publish("user:1", "job_done", {}))


class TestMessagingConfig:

    def test_topic_required(self, monkeypatch):
        monkeypatch.delenv("JOBCORE_NOTIFY_TOPIC", raising=False)
        with pytest.raises(ValueError):
            MessagingConfig.from_env()

    def test_connection_string(self, monkeypatch):
        monkeypatch.setenv("JOBCORE_NOTIFY_TOPIC", "events")
        monkeypatch.delenv("USE_MANAGED_IDENTITY", raising=False)
        monkeypatch.setenv("JOBCORE_SERVICEBUS_CONNECTION_STRING", "Endpoint=sb://x/")
        config = MessagingConfig.from_env()
        assert config.connection_string == "Endpoint=sb://x/"
        assert config.message_ttl_seconds == 300

    def test_managed_identity_needs_namespace(self, monkeypatch):
        monkeypatch.setenv("JOBCORE_NOTIFY_TOPIC", "events")
        monkeypatch.setenv("USE_MANAGED_IDENTITY", "true")
        monkeypatch.delenv("JOBCORE_SERVICEBUS_FQDN", raising=False)
        with pytest.raises(ValueError):
            MessagingConfig.from_env()
