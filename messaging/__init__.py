# ============================================================================
# MESSAGING MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Azure Service Bus integration
# PURPOSE: Notification channel for lifecycle events
# CREATED: 12 OCT 2026
# ============================================================================
"""
Messaging Module

Azure Service Bus topic publisher backing the notifier channel.

Usage:
    from messaging import get_publisher

    publisher = await get_publisher()
    await publisher.publish("user:<id>", "job_done", {...})
"""

from .publisher import NotificationPublisher, get_publisher, close_publisher
from .config import MessagingConfig

__all__ = [
    "NotificationPublisher",
    "get_publisher",
    "close_publisher",
    "MessagingConfig",
]
