# ============================================================================
# WORKER MAIN ENTRY POINT
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Worker process entry point
# PURPOSE: Start a worker pool in standalone mode
# CREATED: 12 OCT 2026
# ============================================================================
"""
Worker Main Entry Point

Starts a job core worker process that:
1. Loads handler modules and pipeline definitions
2. Opens the PostgreSQL pool and the configured adapters
3. Claims and runs jobs until SIGTERM / SIGINT

Usage:
    python -m worker.main

Environment Variables:
    DATABASE_URL or POSTGRES_*: PostgreSQL connection
    WORKER_CONCURRENCY: Number of concurrent workers (default 4)
    WORKER_JOB_TYPES: Comma-separated job types to claim (default all)
    HANDLER_MODULES: Comma-separated list of extra handler modules to load
    JOBCORE_PIPELINES_DIR: Pipeline YAML directory (default ./pipelines)
    JOBCORE_NOTIFY_TOPIC: Enables Service Bus notifications
    JOBCORE_STORAGE_ACCOUNT / _CONNECTION_STRING: Enables the object store
    JOBCORE_VECTOR_INDEX_URL: Enables the vector store
    JOBCORE_LOG_LEVEL / JOBCORE_LOG_FORMAT: Logging
    PORT: Health server port (default 8000, 0 disables)
"""

import asyncio
import importlib
import os
import signal
import sys
from typing import List, Optional

from aiohttp import web

from core.config import Defaults
from core.errors import ConfigError
from core.logging import configure_logging, get_logger
from infrastructure.auth import get_postgres_token_status
from __version__ import __version__, BUILD_DATE

configure_logging(
    level=os.environ.get("JOBCORE_LOG_LEVEL", "INFO"),
    json_output=os.environ.get("JOBCORE_LOG_FORMAT", "").lower() == "json",
)
logger = get_logger(__name__)

DEFAULT_HANDLER_MODULES = ["handlers.examples", "handlers.chat"]

# Worker state for health checks
_worker_status = "starting"
_worker_pool = None


# ============================================================================
# HEALTH SERVER
# ============================================================================

async def health_handler(request):
    """Version, status and pool counters."""
    healthy = _worker_status == "running"
    response_data = {
        "status": "healthy" if healthy else "unhealthy",
        "worker_status": _worker_status,
        "version": __version__,
        "build_date": BUILD_DATE,
        "database_auth": get_postgres_token_status(),
    }
    if _worker_pool is not None:
        response_data["stats"] = _worker_pool.get_stats()

    return web.json_response(response_data, status=200 if healthy else 503, dumps=_dumps)


def _dumps(data) -> str:
    import json
    return json.dumps(data, default=str)


async def start_health_server(port: int):
    """Start minimal HTTP server for health probes."""
    app = web.Application()
    app.router.add_get("/", health_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/livez", health_handler)
    app.router.add_get("/readyz", health_handler)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"Health server started on port {port}")
    return runner


# ============================================================================
# HANDLER LOADING
# ============================================================================

def load_handlers(modules: Optional[List[str]] = None) -> int:
    """
    Import handler modules so their decorators register.

    Returns:
        Number of modules loaded
    """
    if modules is None:
        modules = list(DEFAULT_HANDLER_MODULES)
        extra = os.getenv("HANDLER_MODULES", "")
        if extra:
            modules.extend(m.strip() for m in extra.split(",") if m.strip())

    loaded = 0
    for module_name in modules:
        try:
            importlib.import_module(module_name)
            logger.info(f"Loaded handler module: {module_name}")
            loaded += 1
        except ImportError as e:
            logger.warning(f"Failed to load handler module {module_name}: {e}")

    from handlers.registry import list_handlers
    handlers = list_handlers()
    logger.info(f"Registered {len(handlers)} handlers: {[h['job_type'] for h in handlers]}")
    return loaded


async def build_adapters():
    """Adapters whose configuration is present; the rest stay None."""
    from infrastructure import Adapters, ObjectStore, StorageConfig, VectorStore, VectorStoreConfig

    adapters = Adapters()
    if os.environ.get("JOBCORE_STORAGE_ACCOUNT") or os.environ.get("JOBCORE_STORAGE_CONNECTION_STRING"):
        adapters.objects = ObjectStore(StorageConfig.from_env())
        logger.info("Object store adapter enabled")
    if os.environ.get("JOBCORE_VECTOR_INDEX_URL"):
        adapters.vectors = VectorStore(VectorStoreConfig.from_env())
        logger.info("Vector store adapter enabled")
    return adapters


# ============================================================================
# MAIN
# ============================================================================

async def main() -> None:
    """Main entry point."""
    global _worker_status, _worker_pool

    from messaging import close_publisher, get_publisher
    from repositories import close_pool, init_pool
    from services import CoreServices
    from worker.runtime import WorkerPool

    logger.info("=" * 60)
    logger.info(f"Job Core Worker Starting v{__version__}")
    logger.info("=" * 60)

    defaults = Defaults.from_env()
    logger.info(f"Workers: {defaults.worker.worker_count}, job types: {list(defaults.worker.job_types) or 'all'}")

    health_port = int(os.environ.get("PORT", "8000"))
    health_runner = await start_health_server(health_port) if health_port else None

    load_handlers()

    channel = None
    if os.environ.get("JOBCORE_NOTIFY_TOPIC"):
        channel = await get_publisher()
    else:
        logger.warning("JOBCORE_NOTIFY_TOPIC not set; notifications are dropped")

    db_pool = await init_pool(max_size=defaults.worker.worker_count + 2)
    adapters = await build_adapters()
    services = CoreServices.build(
        db_pool,
        defaults=defaults,
        adapters=adapters,
        channel=channel,
        pipelines_dir=os.environ.get("JOBCORE_PIPELINES_DIR"),
    )

    try:
        installed = services.pipeline_service.install()
        logger.info(f"Installed pipelines: {installed}")
    except ConfigError as e:
        logger.error(f"Pipeline configuration invalid: {e}")
        _worker_status = "bad_config"
        await close_pool()
        sys.exit(1)

    _worker_pool = WorkerPool(db_pool, services, defaults=defaults)

    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(_worker_pool.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await _worker_pool.start()
        _worker_status = "running"
        await _worker_pool.wait()
    except Exception as e:
        logger.exception(f"Worker failed: {e}")
        _worker_status = f"error: {str(e)[:100]}"
        raise
    finally:
        _worker_status = "stopping"
        await _worker_pool.stop()
        await adapters.close()
        await close_publisher()
        await close_pool()
        if health_runner is not None:
            await health_runner.cleanup()

    logger.info("Job Core Worker stopped")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
