# ============================================================================
# STRUCTURED LOGGING
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Structured logging with context
# PURPOSE: Consistent, queryable logging across all components
# CREATED: 12 OCT 2026
# ============================================================================
"""
Structured Logging

Provides structured, JSON-formatted logging for the job core.

Features:
- Component-based loggers
- Contextual fields (job_id, job_type, stage, saga_id, thread_id, worker_id)
- JSON output for log aggregation
- Named checkpoints for tracing a job through claim, stages and compensation

The context stack lives in a ContextVar, so each asyncio worker task sees
only its own job's fields.

Usage:
    from core.logging import get_logger, log_context

    logger = get_logger("worker.runtime")

    with log_context(job_id=str(job.id), worker_id="worker-1"):
        logger.info("Claimed job")
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union
from enum import Enum


class ComponentType(str, Enum):
    """Component types for logging categorization."""
    STORE = "store"
    CLAIMER = "claimer"
    NOTIFIER = "notifier"
    JOB_SERVICE = "job_service"
    ORCHESTRATOR = "orchestrator"
    SAGA = "saga"
    WAITPOINT = "waitpoint"
    CHAT = "chat"
    WORKER = "worker"
    HANDLER = "handler"
    MESSAGING = "messaging"
    INFRASTRUCTURE = "infrastructure"


@dataclass
class LogContext:
    """Contextual fields attached to every record logged inside log_context()."""
    job_id: Optional[str] = None
    job_type: Optional[str] = None
    stage: Optional[str] = None
    saga_id: Optional[str] = None
    thread_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    worker_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None and key != "extra":
                result[key] = value
        if self.extra:
            result.update(self.extra)
        return result


_CONTEXT_FIELDS = (
    "job_id", "job_type", "stage", "saga_id", "thread_id",
    "owner_user_id", "worker_id", "component", "operation",
)

_context_stack: ContextVar[Tuple[LogContext, ...]] = ContextVar("jobcore_log_context", default=())


def get_current_context() -> LogContext:
    """Get current logging context."""
    stack = _context_stack.get()
    if stack:
        return stack[-1]
    return LogContext()


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding logging context.

    Values are stringified (UUIDs, enums) and merged over the parent context.

    Example:
        with log_context(job_id=job.id, stage="embed"):
            logger.info("Stage started")
    """
    parent = get_current_context()
    values = {}
    for name in _CONTEXT_FIELDS:
        value = kwargs.get(name, getattr(parent, name))
        values[name] = str(value) if value is not None else None
    new_context = LogContext(**values, extra={**parent.extra, **kwargs.get("extra", {})})

    token = _context_stack.set(_context_stack.get() + (new_context,))
    try:
        yield new_context
    finally:
        _context_stack.reset(token)


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON for easy parsing by log aggregators.
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_level: bool = True,
        include_logger: bool = True,
        include_context: bool = True,
        include_source: bool = True,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_logger = include_logger
        self.include_context = include_context
        self.include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = _utc_stamp()

        if self.include_level:
            log_data["level"] = record.levelname

        if self.include_logger:
            log_data["logger"] = record.name

        log_data["message"] = record.getMessage()

        if self.include_context:
            context_dict = get_current_context().to_dict()
            if context_dict:
                log_data["context"] = context_dict

        if hasattr(record, "extra") and record.extra:
            log_data["data"] = record.extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_source:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class HumanFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Includes context fields inline for easy reading.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human reading."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)

        context = get_current_context()
        context_parts = []
        if context.worker_id:
            context_parts.append(f"worker={context.worker_id}")
        if context.job_id:
            context_parts.append(f"job={context.job_id[:8]}")
        if context.stage:
            context_parts.append(f"stage={context.stage}")
        if context.saga_id:
            context_parts.append(f"saga={context.saga_id[:8]}")
        if context.thread_id:
            context_parts.append(f"thread={context.thread_id[:8]}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = record.getMessage()

        extra_str = ""
        if hasattr(record, "extra") and record.extra:
            extra_str = f" {record.extra}"

        result = f"{timestamp} {level} {record.name}{context_str}: {message}{extra_str}"

        if record.exc_info:
            result += f"\n{self.formatException(record.exc_info)}"

        return result


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that includes context in log records.

    Automatically includes the current log_context() fields.
    """

    def process(self, msg, kwargs):
        """Process log record to include context."""
        context = get_current_context()

        extra = dict(kwargs.get("extra", {}))
        extra.update(context.to_dict())
        if self.extra and self.extra.get("component") and "component" not in extra:
            extra["component"] = str(self.extra["component"].value)

        kwargs["extra"] = {"extra": extra}

        return msg, kwargs


def get_logger(
    name: str,
    component: Optional[ComponentType] = None,
) -> ContextLogger:
    """
    Get a context-aware logger.

    Args:
        name: Logger name (e.g., "worker.runtime")
        component: Optional component type for categorization
    """
    base_logger = logging.getLogger(name)
    return ContextLogger(base_logger, {"component": component})


def configure_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = False,
    include_source: bool = True,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format (for production); LOG_FORMAT=json also enables it
        include_source: Include source file/line info in JSON output
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_output or os.getenv("LOG_FORMAT", "").lower() == "json":
        formatter = StructuredFormatter(include_context=True, include_source=include_source)
    else:
        formatter = HumanFormatter()

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Azure SDK request logging is noisy at INFO
    logging.getLogger("azure").setLevel(max(level, logging.WARNING))


# ============================================================================
# CHECKPOINT LOGGING
# ============================================================================

def log_checkpoint(
    name: str,
    data: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    Log a named checkpoint.

    Checkpoints are named markers ("job_claimed", "stage_succeeded",
    "saga_compensated") that can be queried to reconstruct execution flow.
    """
    if logger is None:
        logger = logging.getLogger("checkpoint")

    checkpoint_data = {
        "checkpoint": name,
        "timestamp": _utc_stamp(),
    }
    checkpoint_data.update(get_current_context().to_dict())

    if data:
        checkpoint_data["data"] = data

    logger.info(f"CHECKPOINT: {name}", extra={"extra": checkpoint_data})


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ComponentType",
    "LogContext",
    "StructuredFormatter",
    "HumanFormatter",
    "ContextLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_context",
    "log_checkpoint",
]
