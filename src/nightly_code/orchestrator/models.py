"""Domain models for session orchestration."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

RESOURCE_USAGE_CAPACITY = 100


def utc_now() -> datetime:
    """Return timezone-aware current UTC timestamp."""

    return datetime.now(tz=UTC)


def generate_session_id(now: datetime | None = None) -> str:
    """Build a time-derived session id: ``session-YYYY-MM-DD-HHMMSS``."""

    moment = now or utc_now()
    return f"session-{moment:%Y-%m-%d-%H%M%S}"


class TaskType(str, Enum):
    """Kinds of work a task may request."""

    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    TEST = "test"
    DOCS = "docs"


class ErrorCategory(str, Enum):
    """Retry-relevant failure categories."""

    USAGE_LIMIT = "USAGE_LIMIT"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    FATAL = "FATAL"
    TRANSIENT = "TRANSIENT"


class Severity(str, Enum):
    """Severity attached to a failure classification."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SessionPhase(str, Enum):
    """States of the session state machine."""

    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    VALIDATING_COMPLETION = "validating_completion"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    FINALIZING = "finalizing"
    TERMINAL = "terminal"


class SessionStatus(str, Enum):
    """Terminal session status."""

    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"


class StopReason(str, Enum):
    """Why the task loop ended."""

    ALL_ATTEMPTED = "all_attempted"
    BUDGET_EXHAUSTED = "budget_exhausted"
    SESSION_ENDING_FAILURE = "session_ending_failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class CustomValidation:
    """Per-task validation script run after the agent finishes."""

    script: str
    timeout_seconds: int = 300


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of requested work, immutable for the session lifetime."""

    id: str
    title: str
    type: TaskType
    requirements: str
    priority: int = 5
    acceptance_criteria: tuple[str, ...] = ()
    estimated_duration: int = 60
    dependencies: tuple[str, ...] = ()
    files_to_modify: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    enabled: bool = True
    custom_validation: CustomValidation | None = None

    @property
    def timeout_seconds(self) -> int:
        """Per-task execution timeout derived from the estimate."""

        return self.estimated_duration * 60


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    """Retry-relevant classification of one delegated-work failure."""

    category: ErrorCategory
    retryable: bool
    severity: Severity
    matched_pattern: str | None = None


@dataclass(frozen=True, slots=True)
class CompletedOutcome:
    """Task finished, validated, and committed."""

    task_id: str
    duration_seconds: float
    files_changed: tuple[str, ...]
    started_at: datetime
    completed_at: datetime


@dataclass(frozen=True, slots=True)
class FailedOutcome:
    """Task failed irrecoverably and was rolled back."""

    task_id: str
    error: str
    failed_at: datetime
    category: ErrorCategory | None = None


TaskOutcome = CompletedOutcome | FailedOutcome


@dataclass(frozen=True, slots=True)
class ResourceSample:
    """One resource-usage observation of the orchestrator process tree."""

    timestamp: datetime
    cpu_percent: float
    memory_bytes: int

    def to_payload(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "cpu_percent": self.cpu_percent,
            "memory_bytes": self.memory_bytes,
        }


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Point-in-time snapshot of session progress."""

    timestamp: datetime
    session_id: str
    current_task_id: str | None
    completed_task_ids: tuple[str, ...]
    failed_task_ids: tuple[str, ...]
    elapsed_seconds: float
    resource_usage: ResourceSample | None = None


@dataclass(slots=True)
class SessionState:
    """Mutable root of a running session.

    Only the session runner mutates it; periodic jobs read snapshots. Ids
    carried over from a resumed checkpoint stay listed ahead of new outcomes.
    """

    session_id: str
    start_time: datetime
    budget_seconds: float
    current_task_id: str | None = None
    completed: list[CompletedOutcome] = field(default_factory=list)
    failed: list[FailedOutcome] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    elapsed_offset_seconds: float = 0.0
    resumed_completed_ids: tuple[str, ...] = ()
    resumed_failed_ids: tuple[str, ...] = ()
    phase: SessionPhase = SessionPhase.IDLE
    resource_usage: deque[ResourceSample] = field(
        default_factory=lambda: deque(maxlen=RESOURCE_USAGE_CAPACITY),
    )

    @property
    def completed_task_ids(self) -> tuple[str, ...]:
        return (*self.resumed_completed_ids, *(outcome.task_id for outcome in self.completed))

    @property
    def failed_task_ids(self) -> tuple[str, ...]:
        return (*self.resumed_failed_ids, *(outcome.task_id for outcome in self.failed))


@dataclass(slots=True)
class SessionResult:
    """Final, always-produced summary of one session."""

    session_id: str
    status: SessionStatus
    stop_reason: StopReason
    completed: list[str]
    failed: list[str]
    skipped: list[str]
    failure_messages: list[str]
    duration_seconds: float
    checkpoints_written: int
    warnings: list[str] = field(default_factory=list)
    resource_usage: list[ResourceSample] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_payload(self) -> dict[str, object]:
        """Serialize for the JSON session report."""

        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "success": self.success,
            "stop_reason": self.stop_reason.value,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "failure_messages": list(self.failure_messages),
            "duration_seconds": round(self.duration_seconds, 3),
            "checkpoints_written": self.checkpoints_written,
            "warnings": list(self.warnings),
            "resource_usage": [sample.to_payload() for sample in self.resource_usage],
        }
