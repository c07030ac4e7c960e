# ============================================================================
# JOB NOTIFIER
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Post-commit lifecycle notifications
# PURPOSE: Fire-and-forget events to the notification channel
# CREATED: 12 OCT 2026
# ============================================================================
"""
Job Notifier

Publishes lifecycle events after the mutating transaction has committed.
Events are fire-and-forget - failures are logged but don't propagate, and a
slow channel is cut off after publish_timeout_seconds.

Payloads are built from the committed row, so a subscriber can always
re-read state by job_id. Delivery is at-least-once; consumers dedupe on
(job_id, status, updated_at).
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from core.config import Defaults, get_defaults
from core.contracts import NotifyEvent
from core.models import ChatMessage, ChatTurn, JobRun

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Anything with publish(); messaging.NotificationPublisher in production."""

    async def publish(self, channel_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        ...


def job_payload(job: JobRun) -> Dict[str, Any]:
    """Client-visible view of a job row; no internal error classification."""
    return {
        "job_id": str(job.id),
        "job_type": job.job_type,
        "entity_type": job.entity_type,
        "entity_id": str(job.entity_id) if job.entity_id else None,
        "status": job.status.value,
        "stage": job.stage,
        "progress": job.progress,
        "message": job.message,
        "error": job.error,
        "attempts": job.attempts,
        "updated_at": job.updated_at.isoformat(),
    }


def message_payload(message: ChatMessage) -> Dict[str, Any]:
    return {
        "message_id": str(message.id),
        "thread_id": str(message.thread_id),
        "seq": message.seq,
        "role": message.role.value,
        "status": message.status.value,
        "content": message.content,
    }


class JobNotifier:
    """Post-commit notifier for job and chat lifecycle events."""

    def __init__(
        self,
        channel: Optional[NotificationChannel] = None,
        defaults: Optional[Defaults] = None,
    ):
        """
        Initialize notifier.

        Args:
            channel: Publisher; None drops events (logged at debug)
            defaults: Configuration, falls back to get_defaults()
        """
        self.channel = channel
        self.timeout = (defaults or get_defaults()).notifier.publish_timeout_seconds

    # =========================================================================
    # CORE NOTIFY METHOD
    # =========================================================================

    async def notify(self, channel_id: str, event_kind: NotifyEvent, payload: Dict[str, Any]) -> bool:
        """
        Publish one event. Fire-and-forget - logs errors but doesn't raise.

        Returns:
            True if the channel accepted the event
        """
        if self.channel is None:
            logger.debug(f"No notification channel; dropped {event_kind.value} for {channel_id}")
            return False

        try:
            await asyncio.wait_for(
                self.channel.publish(channel_id, event_kind.value, payload),
                timeout=self.timeout,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Fire-and-forget - log but don't raise
            logger.warning(f"Failed to publish {event_kind.value} to {channel_id}: {e}")
            return False

    # =========================================================================
    # JOB LIFECYCLE EVENTS
    # =========================================================================

    async def job_event(self, event_kind: NotifyEvent, job: JobRun) -> bool:
        return await self.notify(job.channel_id(), event_kind, job_payload(job))

    async def job_created(self, job: JobRun) -> bool:
        return await self.job_event(NotifyEvent.JOB_CREATED, job)

    async def job_progress(self, job: JobRun) -> bool:
        return await self.job_event(NotifyEvent.JOB_PROGRESS, job)

    async def job_failed(self, job: JobRun) -> bool:
        return await self.job_event(NotifyEvent.JOB_FAILED, job)

    async def job_done(self, job: JobRun) -> bool:
        return await self.job_event(NotifyEvent.JOB_DONE, job)

    async def job_canceled(self, job: JobRun) -> bool:
        return await self.job_event(NotifyEvent.JOB_CANCELED, job)

    async def job_restarted(self, job: JobRun) -> bool:
        return await self.job_event(NotifyEvent.JOB_RESTARTED, job)

    # =========================================================================
    # CHAT EVENTS
    # =========================================================================

    async def message_created(self, message: ChatMessage) -> bool:
        return await self.notify(
            f"user:{message.owner_user_id}",
            NotifyEvent.MESSAGE_CREATED,
            message_payload(message),
        )

    async def turn_failed(self, turn: ChatTurn) -> bool:
        return await self.notify(
            f"user:{turn.owner_user_id}",
            NotifyEvent.TURN_FAILED,
            {
                "turn_id": str(turn.id),
                "thread_id": str(turn.thread_id),
                "job_id": str(turn.job_id) if turn.job_id else None,
                "assistant_message_id": str(turn.assistant_message_id),
                "error": turn.error,
            },
        )


__all__ = ["JobNotifier", "NotificationChannel", "job_payload", "message_payload"]
