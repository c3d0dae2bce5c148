"""Delegated-work boundary used by the session runner."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class DelegatedWorkRequest:
    """Inputs required to execute one agent attempt for a task."""

    task_id: str
    prompt: str
    working_dir: Path
    timeout_seconds: int
    log_dir: Path
    model: str = ""
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class DelegatedWorkResult:
    """Outcome of one successful agent attempt."""

    exit_code: int
    output: str
    duration_seconds: float
    stdout_path: Path
    stderr_path: Path
    files_changed: list[str] = field(default_factory=list)


class DelegatedWorkBackend(Protocol):
    """Protocol implemented by delegated-work runners.

    ``execute`` raises ``DelegatedWorkError`` on failure (a timeout message
    contains "timed out") and ``SessionCancelledError`` when shutdown was
    requested mid-run.
    """

    def probe(self) -> str | None:
        """Return an error message if the agent cannot be started, else None."""

    def execute(self, request: DelegatedWorkRequest) -> DelegatedWorkResult:
        """Run one attempt and return execution metadata."""

    def terminate(self) -> None:
        """Stop any in-flight subprocess; safe to call when idle."""
