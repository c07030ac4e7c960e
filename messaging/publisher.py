# ============================================================================
# NOTIFICATION PUBLISHER
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Service Bus notification channel
# PURPOSE: Publish lifecycle events to a Service Bus topic
# CREATED: 12 OCT 2026
# ============================================================================
"""
Notification Publisher

Sends lifecycle events (job_created, job_done, message_created, ...) to an
Azure Service Bus topic. Subscribers filter on the channel_id application
property.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from azure.servicebus import ServiceBusMessage
from azure.servicebus.aio import ServiceBusClient, ServiceBusSender

from .config import MessagingConfig

logger = logging.getLogger(__name__)

# Global publisher instance
_publisher: Optional["NotificationPublisher"] = None


class NotificationPublisher:
    """Publisher for lifecycle notifications on a Service Bus topic."""

    def __init__(self, config: MessagingConfig):
        """
        Initialize notification publisher.

        Args:
            config: Messaging configuration
        """
        self.config = config
        self._client: Optional[ServiceBusClient] = None
        self._sender: Optional[ServiceBusSender] = None

    async def connect(self) -> None:
        """Establish connection to Service Bus."""
        if self._client is not None:
            return

        if self.config.use_managed_identity:
            from azure.identity.aio import ManagedIdentityCredential

            if self.config.managed_identity_client_id:
                credential = ManagedIdentityCredential(
                    client_id=self.config.managed_identity_client_id
                )
            else:
                credential = ManagedIdentityCredential()

            self._client = ServiceBusClient(
                fully_qualified_namespace=self.config.fully_qualified_namespace,
                credential=credential,
            )
            logger.info(
                f"Connecting to Service Bus via managed identity: "
                f"{self.config.fully_qualified_namespace}"
            )
        else:
            self._client = ServiceBusClient.from_connection_string(
                self.config.connection_string
            )
            logger.info("Connecting to Service Bus via connection string")

        self._sender = self._client.get_topic_sender(topic_name=self.config.notify_topic)
        logger.info(f"Connected to Service Bus topic: {self.config.notify_topic}")

    async def close(self) -> None:
        """Close connection to Service Bus."""
        if self._sender:
            await self._sender.close()
            self._sender = None

        if self._client:
            await self._client.close()
            self._client = None

        logger.info("Service Bus connection closed")

    async def publish(self, channel_id: str, event_kind: str, payload: Dict[str, Any]) -> None:
        """
        Publish one event.

        Raises whatever the Service Bus client raises; JobNotifier is the
        layer that makes delivery best-effort.
        """
        if self._sender is None:
            await self.connect()

        message = ServiceBusMessage(
            body=json.dumps(
                {"channel_id": channel_id, "event": event_kind, "payload": payload},
                default=str,
            ),
            message_id=str(uuid4()),
            subject=event_kind,
            content_type="application/json",
            application_properties={
                "channel_id": channel_id,
                "event": event_kind,
                "job_id": str(payload.get("job_id", "")),
            },
        )
        message.time_to_live = timedelta(seconds=self.config.message_ttl_seconds)

        await self._sender.send_messages(message)
        logger.debug(f"Published {event_kind} to {channel_id}")

    async def __aenter__(self) -> "NotificationPublisher":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def get_publisher() -> NotificationPublisher:
    """
    Get the global NotificationPublisher instance.

    Returns:
        NotificationPublisher instance (connected)
    """
    global _publisher

    if _publisher is None:
        config = MessagingConfig.from_env()
        _publisher = NotificationPublisher(config)
        await _publisher.connect()

    return _publisher


async def close_publisher() -> None:
    """Close the global NotificationPublisher instance."""
    global _publisher

    if _publisher is not None:
        await _publisher.close()
        _publisher = None


__all__ = ["NotificationPublisher", "get_publisher", "close_publisher"]
