# ============================================================================
# SERVICE CONTAINER
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Service wiring
# PURPOSE: Build every service once and hand them to handlers
# CREATED: 12 OCT 2026
# ============================================================================
"""
Service Container

CoreServices bundles the services a process needs. Handlers reach them via
HandlerContext.services; the pipeline job handler finds the orchestrator
there.

Usage:
    services = CoreServices.build(pool, adapters=adapters, channel=publisher)
"""

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from psycopg_pool import AsyncConnectionPool

from core.config import Defaults, get_defaults
from infrastructure.adapters import Adapters
from .chat_service import ChatService
from .job_service import JobService
from .notifier import JobNotifier, NotificationChannel
from .pipeline_service import PipelineService
from .saga_service import SagaService
from .waitpoint_service import WaitpointService

if TYPE_CHECKING:
    from orchestrator import Orchestrator


@dataclass
class CoreServices:
    pool: AsyncConnectionPool
    defaults: Defaults
    adapters: Adapters
    notifier: JobNotifier
    job_service: JobService
    saga_service: SagaService
    waitpoint_service: WaitpointService
    chat_service: ChatService
    pipeline_service: PipelineService
    orchestrator: Optional["Orchestrator"] = None

    @classmethod
    def build(
        cls,
        pool: AsyncConnectionPool,
        defaults: Optional[Defaults] = None,
        adapters: Optional[Adapters] = None,
        channel: Optional[NotificationChannel] = None,
        pipelines_dir: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ) -> "CoreServices":
        """Wire the services; rng seeds orchestrator backoff jitter."""
        from orchestrator import Orchestrator

        defaults = defaults or get_defaults()
        adapters = adapters or Adapters()
        notifier = JobNotifier(channel, defaults=defaults)
        job_service = JobService(pool, notifier=notifier, defaults=defaults)

        services = cls(
            pool=pool,
            defaults=defaults,
            adapters=adapters,
            notifier=notifier,
            job_service=job_service,
            saga_service=SagaService(pool, adapters=adapters),
            waitpoint_service=WaitpointService(pool, notifier=notifier),
            chat_service=ChatService(pool, job_service, notifier=notifier, defaults=defaults),
            pipeline_service=PipelineService(pipelines_dir),
        )
        services.orchestrator = Orchestrator(pool, services, defaults=defaults, rng=rng)
        return services


__all__ = ["CoreServices"]
