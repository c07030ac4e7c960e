# ============================================================================
# MESSAGING CONFIGURATION
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Service Bus configuration
# PURPOSE: Centralize notification channel configuration
# CREATED: 12 OCT 2026
# ============================================================================
"""
Messaging Configuration

Configuration for the Azure Service Bus topic that carries lifecycle
notifications. Supports both connection string and managed identity
authentication.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class MessagingConfig:
    """
    Configuration for Azure Service Bus notifications.

    Loaded from environment variables.
    Supports both connection string and managed identity authentication.
    """
    # Connection - either connection_string OR fully_qualified_namespace
    connection_string: Optional[str] = None
    fully_qualified_namespace: Optional[str] = None

    # Managed identity settings
    use_managed_identity: bool = False
    managed_identity_client_id: Optional[str] = None

    # Topic that subscribers (SSE fan-out, audit) listen on
    notify_topic: str = ""

    # Timeouts
    send_timeout_seconds: int = 5

    # Notifications older than this are useless to subscribers
    message_ttl_seconds: int = 300

    @classmethod
    def from_env(cls) -> "MessagingConfig":
        """
        Load configuration from environment variables.

        For connection string auth:
            JOBCORE_SERVICEBUS_CONNECTION_STRING: Service Bus connection string

        For managed identity auth:
            USE_MANAGED_IDENTITY: Set to "true" to use managed identity
            JOBCORE_SERVICEBUS_FQDN: Fully qualified namespace
            AZURE_CLIENT_ID: Optional client ID for user-assigned managed identity

        Common:
            JOBCORE_NOTIFY_TOPIC: Notification topic (REQUIRED)
            JOBCORE_NOTIFY_TTL_SECONDS: Message time-to-live (default 300)
        """
        topic = os.environ.get("JOBCORE_NOTIFY_TOPIC")
        if not topic:
            raise ValueError("JOBCORE_NOTIFY_TOPIC environment variable is required")

        ttl = int(os.environ.get("JOBCORE_NOTIFY_TTL_SECONDS", "300"))
        use_mi = os.environ.get("USE_MANAGED_IDENTITY", "").lower() == "true"

        if use_mi:
            fqdn = os.environ.get("JOBCORE_SERVICEBUS_FQDN")
            if not fqdn:
                raise ValueError(
                    "JOBCORE_SERVICEBUS_FQDN required when USE_MANAGED_IDENTITY=true"
                )
            return cls(
                use_managed_identity=True,
                fully_qualified_namespace=fqdn,
                managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID"),
                notify_topic=topic,
                message_ttl_seconds=ttl,
            )

        connection_string = os.environ.get("JOBCORE_SERVICEBUS_CONNECTION_STRING")
        if not connection_string:
            raise ValueError(
                "JOBCORE_SERVICEBUS_CONNECTION_STRING required (or set USE_MANAGED_IDENTITY=true)"
            )
        return cls(
            connection_string=connection_string,
            notify_topic=topic,
            message_ttl_seconds=ttl,
        )
