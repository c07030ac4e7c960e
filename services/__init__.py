# ============================================================================
# SERVICES MODULE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Business logic layer
# PURPOSE: Job, saga, waitpoint, chat and pipeline services
# CREATED: 12 OCT 2026
# ============================================================================
"""
Services Module

Business logic for the job core.
Services coordinate between repositories and the notifier; every state
change commits first and notifies after.

Usage:
    from services import CoreServices

    services = CoreServices.build(pool, adapters=adapters, channel=publisher)
    job = await services.job_service.enqueue(owner, "material_ingest", "material", material_id)
"""

from .notifier import JobNotifier, NotificationChannel
from .job_service import JobService
from .saga_service import SagaService, CompensationExecutor, CompensationReport
from .waitpoint_service import WaitpointService
from .chat_service import ChatService, SendResult
from .pipeline_service import PipelineService
from .container import CoreServices

__all__ = [
    "JobNotifier",
    "NotificationChannel",
    "JobService",
    "SagaService",
    "CompensationExecutor",
    "CompensationReport",
    "WaitpointService",
    "ChatService",
    "SendResult",
    "PipelineService",
    "CoreServices",
]
