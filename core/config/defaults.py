# ============================================================================
# CONFIGURATION DEFAULTS
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Core - Default configuration values
# PURPOSE: Retry, lease, worker, orchestrator and chat settings
# CREATED: 12 OCT 2026
# ============================================================================
"""
Configuration Defaults

Every tunable of the job core lives here. Components take a Defaults
instance in their constructor and fall back to get_defaults().

Design:
- Immutable dataclasses for defaults
- Environment variable overrides
- Type-safe access
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Tuple


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class QueueDefaults:
    """
    Claim and retry settings.

    retry_delay_for(attempts) = min(base * 2^(attempts-1), cap)
    """
    max_attempts: int = 5
    retry_delay_base_ms: int = 750
    retry_delay_cap_ms: int = 10_000
    stale_lease_seconds: int = 120
    claim_timeout_seconds: float = 10.0

    def retry_delay_for(self, attempts: int) -> timedelta:
        """Backoff that must elapse after last_error_at before a retry claim."""
        exponent = max(attempts - 1, 0)
        delay_ms = min(self.retry_delay_base_ms * (2 ** exponent), self.retry_delay_cap_ms)
        return timedelta(milliseconds=delay_ms)

    @property
    def stale_lease(self) -> timedelta:
        return timedelta(seconds=self.stale_lease_seconds)

    @classmethod
    def from_env(cls) -> "QueueDefaults":
        """Create from environment variables."""
        return cls(
            max_attempts=int(os.getenv("JOB_MAX_ATTEMPTS", 5)),
            retry_delay_base_ms=int(os.getenv("JOB_RETRY_DELAY_BASE_MS", 750)),
            retry_delay_cap_ms=int(os.getenv("JOB_RETRY_DELAY_CAP_MS", 10_000)),
            stale_lease_seconds=int(os.getenv("JOB_STALE_LEASE_SECONDS", 120)),
            claim_timeout_seconds=float(os.getenv("JOB_CLAIM_TIMEOUT_SECONDS", 10.0)),
        )


@dataclass(frozen=True)
class WorkerDefaults:
    """
    Worker runtime settings.

    lease_heartbeat_seconds=None means stale_lease / 4.
    """
    worker_count: int = 4
    lease_heartbeat_seconds: Optional[float] = None
    poll_interval_seconds: float = 1.0
    cancel_grace_seconds: float = 5.0
    shutdown_timeout_seconds: float = 30.0
    stale_sweep_interval_seconds: float = 60.0
    job_types: Tuple[str, ...] = ()

    def heartbeat_period(self, queue: QueueDefaults) -> float:
        if self.lease_heartbeat_seconds is not None:
            return self.lease_heartbeat_seconds
        return queue.stale_lease_seconds / 4

    @classmethod
    def from_env(cls) -> "WorkerDefaults":
        """Create from environment variables."""
        heartbeat = os.getenv("WORKER_LEASE_HEARTBEAT_SECONDS")
        job_types = os.getenv("WORKER_JOB_TYPES", "")
        return cls(
            worker_count=max(1, int(os.getenv("WORKER_CONCURRENCY", 4))),
            lease_heartbeat_seconds=float(heartbeat) if heartbeat else None,
            poll_interval_seconds=float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", 1.0)),
            cancel_grace_seconds=float(os.getenv("WORKER_CANCEL_GRACE_SECONDS", 5.0)),
            shutdown_timeout_seconds=float(os.getenv("WORKER_SHUTDOWN_TIMEOUT_SECONDS", 30.0)),
            stale_sweep_interval_seconds=float(os.getenv("WORKER_STALE_SWEEP_SECONDS", 60.0)),
            job_types=tuple(t.strip() for t in job_types.split(",") if t.strip()),
        )


@dataclass(frozen=True)
class OrchestratorDefaults:
    """
    Stage pipeline settings.

    Child stages are polled between min and max poll seconds; the root job
    yields its worker in between.
    """
    compensation_on_fatal: bool = True
    stage_max_attempts: int = 3
    min_poll_seconds: float = 2.0
    max_poll_seconds: float = 10.0
    backoff_jitter: float = 0.2

    def clamp_poll(self, seconds: float) -> float:
        return min(max(seconds, self.min_poll_seconds), self.max_poll_seconds)

    @classmethod
    def from_env(cls) -> "OrchestratorDefaults":
        """Create from environment variables."""
        return cls(
            compensation_on_fatal=_env_bool("ORCH_COMPENSATION_ON_FATAL", True),
            stage_max_attempts=int(os.getenv("ORCH_STAGE_MAX_ATTEMPTS", 3)),
            min_poll_seconds=float(os.getenv("ORCH_MIN_POLL_SECONDS", 2.0)),
            max_poll_seconds=float(os.getenv("ORCH_MAX_POLL_SECONDS", 10.0)),
            backoff_jitter=float(os.getenv("ORCH_BACKOFF_JITTER", 0.2)),
        )


@dataclass(frozen=True)
class ChatDefaults:
    """Chat turn limits."""
    max_content_chars: int = 20_000
    max_idempotency_key_chars: int = 200

    @classmethod
    def from_env(cls) -> "ChatDefaults":
        """Create from environment variables."""
        return cls(
            max_content_chars=int(os.getenv("CHAT_MAX_CONTENT_CHARS", 20_000)),
            max_idempotency_key_chars=int(os.getenv("CHAT_MAX_IDEMPOTENCY_KEY_CHARS", 200)),
        )


@dataclass(frozen=True)
class NotifierDefaults:
    publish_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "NotifierDefaults":
        return cls(publish_timeout_seconds=float(os.getenv("NOTIFY_PUBLISH_TIMEOUT_SECONDS", 5.0)))


# ============================================================================
# GLOBAL DEFAULTS INSTANCE
# ============================================================================

@dataclass
class Defaults:
    """Container for all default configurations."""
    queue: QueueDefaults = field(default_factory=QueueDefaults)
    worker: WorkerDefaults = field(default_factory=WorkerDefaults)
    orchestrator: OrchestratorDefaults = field(default_factory=OrchestratorDefaults)
    chat: ChatDefaults = field(default_factory=ChatDefaults)
    notifier: NotifierDefaults = field(default_factory=NotifierDefaults)

    @classmethod
    def from_env(cls) -> "Defaults":
        """Create all defaults from environment variables."""
        return cls(
            queue=QueueDefaults.from_env(),
            worker=WorkerDefaults.from_env(),
            orchestrator=OrchestratorDefaults.from_env(),
            chat=ChatDefaults.from_env(),
            notifier=NotifierDefaults.from_env(),
        )


_defaults: Optional[Defaults] = None


def get_defaults() -> Defaults:
    """Get global defaults instance."""
    global _defaults
    if _defaults is None:
        _defaults = Defaults.from_env()
    return _defaults


def reset_defaults() -> None:
    """Reset defaults (for testing)."""
    global _defaults
    _defaults = None


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "QueueDefaults",
    "WorkerDefaults",
    "OrchestratorDefaults",
    "ChatDefaults",
    "NotifierDefaults",
    "Defaults",
    "get_defaults",
    "reset_defaults",
]
