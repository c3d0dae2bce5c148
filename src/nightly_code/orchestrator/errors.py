"""Domain errors raised by the session orchestrator."""

from __future__ import annotations

from collections.abc import Sequence

from nightly_code.orchestrator.models import ErrorCategory, ErrorClassification


class NightlyCodeError(RuntimeError):
    """Base class for orchestrator errors."""


class TaskFileError(NightlyCodeError):
    """Task file is missing, unreadable, or fails validation."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class ResolutionError(NightlyCodeError):
    """Task set cannot be ordered (cycle or duplicate ids)."""

    def __init__(self, message: str, *, cycle_path: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.cycle_path = tuple(cycle_path)


class SessionEnvironmentError(NightlyCodeError):
    """Pre-flight environment check failed; no task was started."""


class DelegatedWorkError(NightlyCodeError):
    """Delegated agent run failed.

    ``classification`` is filled in by the retry controller once the error
    has been classified; backends may leave it empty.
    """

    def __init__(
        self,
        message: str,
        *,
        classification: ErrorClassification | None = None,
        exit_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.classification = classification
        self.exit_code = exit_code
        self.attempts = attempts

    @property
    def category(self) -> ErrorCategory | None:
        if self.classification is None:
            return None
        return self.classification.category


class RetryExhaustedError(DelegatedWorkError):
    """Retry budget ran out for a retryable failure."""


class WorkspaceError(NightlyCodeError):
    """Commit or rollback against the working tree failed."""


class TaskValidationError(NightlyCodeError):
    """Completion validation rejected the agent's work."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        errors: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.errors = tuple(errors)


class CheckpointIOError(NightlyCodeError):
    """Checkpoint could not be written or read back."""


class SessionCancelledError(NightlyCodeError):
    """Stop was requested (signal or session timeout) while work was in flight."""
