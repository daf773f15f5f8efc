"""Core data models shared across orchestrator components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from asyncio.subprocess import Process


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Priority(int, Enum):
    CRITICAL = 1
    IMPORTANT = 2
    NORMAL = 3


class WorkerStatus(str, Enum):
    """Lifecycle states for a worker managed by the orchestrator."""

    REGISTERED = "registered"
    BOOTING = "booting"
    READY = "ready"
    RUNNING = "running"
    DEGRADED = "degraded"
    ERROR = "error"
    TIMEOUT = "timeout"
    MISSING = "missing"
    DISABLED = "disabled"
    DISABLED_BY_FAILURE = "disabled_by_failure"
    DISABLED_BY_MEMORY = "disabled_by_memory"

    @property
    def is_healthy(self) -> bool:
        return self in HEALTHY_STATUSES

    @property
    def blocks_dependents(self) -> bool:
        return self in UNHEALTHY_DEPENDENCY_STATUSES

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses are only left through a manual re-arm."""
        return self in (WorkerStatus.DISABLED_BY_FAILURE, WorkerStatus.DISABLED_BY_MEMORY)


HEALTHY_STATUSES = frozenset({WorkerStatus.READY, WorkerStatus.RUNNING})

UNHEALTHY_DEPENDENCY_STATUSES = frozenset(
    {
        WorkerStatus.DISABLED_BY_FAILURE,
        WorkerStatus.DISABLED_BY_MEMORY,
        WorkerStatus.ERROR,
        WorkerStatus.TIMEOUT,
        WorkerStatus.MISSING,
    }
)

ERRORED_STATUSES = frozenset(
    {WorkerStatus.ERROR, WorkerStatus.TIMEOUT, WorkerStatus.DISABLED_BY_FAILURE}
)


@dataclass(slots=True)
class WorkerConfig:
    """Registry entry describing how and when a worker runs."""

    name: str
    file: str
    enabled: bool = True
    schedule: Optional[str] = None
    priority: int = Priority.NORMAL.value
    dependencies: List[str] = field(default_factory=list)
    timeout_ms: int = 300_000
    max_restarts: int = 3
    department: str = "general"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WorkerConfig":
        """Build a config from a registry record (camelCase or snake_case keys)."""
        return cls(
            name=raw["name"],
            file=raw["file"],
            enabled=bool(raw.get("enabled", True)),
            schedule=raw.get("schedule"),
            priority=int(raw.get("priority") or Priority.NORMAL.value),
            dependencies=list(raw.get("dependencies") or []),
            timeout_ms=int(raw.get("timeoutMs", raw.get("timeout_ms")) or 300_000),
            max_restarts=int(raw.get("maxRestarts", raw.get("max_restarts", 3))),
            department=raw.get("department") or "general",
        )


@dataclass(slots=True)
class WorkerState:
    """Mutable runtime record owned by the orchestrator for each worker."""

    config: WorkerConfig
    status: WorkerStatus = WorkerStatus.REGISTERED
    restart_count: int = 0
    last_error: Optional[str] = None
    booted_at: Optional[str] = None
    last_health_check: Optional[str] = None
    process: Optional["Process"] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None


@dataclass(frozen=True, slots=True)
class Message:
    """Canonical message exchanged over the bus."""

    id: str
    sender: str
    topic: str
    payload: Any
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "topic": self.topic,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class RunRecord:
    timestamp: str
    success: bool
    duration_ms: float
    score: int


@dataclass(slots=True)
class PerformanceMetrics:
    """Rolling statistics kept per worker."""

    current_score: int = 50
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    avg_duration_ms: float = 0.0
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    execution_times: List[float] = field(default_factory=list)
    history: List[RunRecord] = field(default_factory=list)


@dataclass(slots=True)
class QueueEntry:
    name: str
    priority: int
    dependency_depth: int
    queued_at: float

    @property
    def sort_key(self) -> tuple:
        return (self.priority, self.dependency_depth)


@dataclass(slots=True)
class DeadLetterEntry:
    """Terminal record for a worker that exhausted its restart budget."""

    agent_name: str
    error: str
    timestamp: str
    restart_count: int
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "error": self.error,
            "timestamp": self.timestamp,
            "restart_count": self.restart_count,
            "context": dict(self.context),
        }


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of a single supervised worker execution."""

    name: str
    success: bool
    duration_ms: float
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    timed_out: bool = False
    error: Optional[str] = None
