# ============================================================================
# HANDLER REGISTRY
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Handler registration and lookup
# PURPOSE: Register and discover job, stage and pipeline handlers
# CREATED: 12 OCT 2026
# ============================================================================
"""
Handler Registry

Provides a decorator-based registration system for job handlers.
Handler modules are imported by the worker (HANDLER_MODULES), not here,
so importing the registry has no side effects.

Usage:
    from handlers import register_handler, HandlerContext, HandlerResult

    @register_handler("my_job")
    async def my_job(ctx: HandlerContext) -> HandlerResult:
        return HandlerResult.success_result({"key": "value"})
"""

from handlers.registry import (
    register_handler,
    get_handler,
    get_handler_or_raise,
    list_handlers,
    max_attempts_for,
    register_stage,
    register_pipeline,
    get_pipeline,
    clear_handlers,
    HandlerFunc,
    HandlerContext,
    HandlerResult,
    StageResult,
    Outcome,
    HandlerError,
    DuplicateHandlerError,
)

__all__ = [
    "register_handler",
    "get_handler",
    "get_handler_or_raise",
    "list_handlers",
    "max_attempts_for",
    "register_stage",
    "register_pipeline",
    "get_pipeline",
    "clear_handlers",
    "HandlerFunc",
    "HandlerContext",
    "HandlerResult",
    "StageResult",
    "Outcome",
    "HandlerError",
    "DuplicateHandlerError",
]
