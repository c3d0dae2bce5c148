"""Session state machine: drives ordered tasks under a wall-clock budget."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from nightly_code.orchestrator.backend.base import (
    DelegatedWorkBackend,
    DelegatedWorkRequest,
    DelegatedWorkResult,
)
from nightly_code.orchestrator.checkpoints import CheckpointStore, build_checkpoint
from nightly_code.orchestrator.errors import (
    CheckpointIOError,
    DelegatedWorkError,
    SessionCancelledError,
    SessionEnvironmentError,
    TaskValidationError,
    WorkspaceError,
)
from nightly_code.orchestrator.models import (
    Checkpoint,
    CompletedOutcome,
    ErrorCategory,
    FailedOutcome,
    SessionPhase,
    SessionResult,
    SessionState,
    SessionStatus,
    StopReason,
    Task,
    generate_session_id,
    utc_now,
)
from nightly_code.orchestrator.prompts import render_task_prompt
from nightly_code.orchestrator.report import SessionReporter
from nightly_code.orchestrator.resolver import filter_remaining
from nightly_code.orchestrator.retry import RetryController, RetryPolicy, Waiter
from nightly_code.orchestrator.timers import PeriodicJob, ResourceSampler
from nightly_code.orchestrator.validator import CompletionValidator
from nightly_code.orchestrator.workspace import Workspace

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_SECONDS = 28_800
DEFAULT_CHECKPOINT_INTERVAL_SECONDS = 300
DEFAULT_RESOURCE_SAMPLE_INTERVAL_SECONDS = 30

SESSION_ENDING_PATTERNS: tuple[str, ...] = (
    "no space left",
    "enospc",
    "out of memory",
    "enomem",
    "repository not found",
    "authentication failed",
)

EnvironmentProbe = Callable[[], str | None]


def is_session_ending(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in SESSION_ENDING_PATTERNS)


class EnvironmentCheck:
    """Pre-flight checks; any problem aborts before the first task."""

    def __init__(
        self,
        *,
        backend: DelegatedWorkBackend,
        workspace: Workspace,
        working_dir: Path,
        extra_probes: Sequence[EnvironmentProbe] = (),
    ) -> None:
        self.backend = backend
        self.workspace = workspace
        self.working_dir = working_dir
        self.extra_probes = tuple(extra_probes)

    def run(self) -> None:
        problems: list[str] = []
        if not self.working_dir.is_dir():
            problems.append(f"Working directory does not exist: {self.working_dir}")
        for probe in (self.backend.probe, self.workspace.check, *self.extra_probes):
            problem = probe()
            if problem:
                problems.append(problem)
        if problems:
            raise SessionEnvironmentError(
                "Environment validation failed: " + "; ".join(problems),
            )
        logger.info("Environment validation passed.")


@dataclass(slots=True)
class _LoopOutcome:
    stop_reason: StopReason = StopReason.ALL_ATTEMPTED
    skipped: list[str] = field(default_factory=list)


class SessionRunner:
    """Runs one session: one task at a time, attempt -> validate -> commit/rollback.

    ``run`` always produces a ``SessionResult``; only environment failures
    (raised before any task starts) propagate as exceptions. ``clock`` is a
    monotonic seconds source and ``waiter`` replaces the stop-aware backoff
    sleep, both mainly for tests.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: DelegatedWorkBackend,
        validator: CompletionValidator,
        workspace: Workspace,
        checkpoint_store: CheckpointStore,
        working_dir: Path,
        log_dir: Path,
        retry_policy: RetryPolicy | None = None,
        model: str = "",
        reporter: SessionReporter | None = None,
        environment_check: EnvironmentCheck | None = None,
        checkpoint_interval_seconds: float | None = DEFAULT_CHECKPOINT_INTERVAL_SECONDS,
        resource_sample_interval_seconds: float | None = DEFAULT_RESOURCE_SAMPLE_INTERVAL_SECONDS,
        graceful_shutdown_seconds: int = 0,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        waiter: Waiter | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.backend = backend
        self.validator = validator
        self.workspace = workspace
        self.checkpoint_store = checkpoint_store
        self.working_dir = working_dir
        self.log_dir = log_dir
        self.retry_policy = retry_policy or RetryPolicy()
        self.model = model
        self.reporter = reporter
        self.environment_check = environment_check or EnvironmentCheck(
            backend=backend,
            workspace=workspace,
            working_dir=working_dir,
        )
        self.checkpoint_interval_seconds = checkpoint_interval_seconds
        self.resource_sample_interval_seconds = resource_sample_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.session_id = session_id or generate_session_id()
        self.clock = clock
        self._waiter = waiter
        self._random = rng
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._resume_checkpoint: Checkpoint | None = None
        self._jobs: list[PeriodicJob] = []
        self._started_monotonic = 0.0
        self._budget_seconds = float(DEFAULT_BUDGET_SECONDS)
        self._checkpoints_written = 0
        self._warnings: list[str] = []
        self._failure_messages: list[str] = []
        self.state: SessionState | None = None

    def resume_from(self, checkpoint: Checkpoint) -> None:
        """Continue the checkpointed session instead of starting a new one."""

        self._resume_checkpoint = checkpoint
        self.session_id = checkpoint.session_id
        logger.info(
            "Resuming session %s: %d completed, %d failed, %.0fs elapsed.",
            checkpoint.session_id,
            len(checkpoint.completed_task_ids),
            len(checkpoint.failed_task_ids),
            checkpoint.elapsed_seconds,
        )

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if not self._stop_event.is_set():
            logger.warning("Stop requested%s.", f" ({signal_name})" if signal_name else "")
        self._stop_signal_name = signal_name
        self._stop_event.set()

    def elapsed(self) -> float:
        offset = self.state.elapsed_offset_seconds if self.state is not None else 0.0
        return offset + max(0.0, self.clock() - self._started_monotonic)

    def run(
        self,
        order: Sequence[Task],
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
    ) -> SessionResult:
        resume = self._resume_checkpoint
        tasks = filter_remaining(order, resume) if resume is not None else list(order)
        self._budget_seconds = float(budget_seconds)
        self._started_monotonic = self.clock()
        self.state = SessionState(
            session_id=self.session_id,
            start_time=utc_now(),
            budget_seconds=self._budget_seconds,
            elapsed_offset_seconds=resume.elapsed_seconds if resume else 0.0,
            resumed_completed_ids=resume.completed_task_ids if resume else (),
            resumed_failed_ids=resume.failed_task_ids if resume else (),
        )

        self._set_phase(SessionPhase.VALIDATING)
        self.environment_check.run()

        logger.info(
            "Session %s started: %d tasks, budget %.0fs.",
            self.session_id,
            len(tasks),
            self._budget_seconds,
        )
        outcome: _LoopOutcome | None = None
        try:
            self._start_jobs()
            with self._signal_handlers():
                outcome = self._run_loop(tasks)
        finally:
            result = self._finalize(outcome, tasks)
        return result

    def _run_loop(self, tasks: list[Task]) -> _LoopOutcome:
        outcome = _LoopOutcome()
        blocked: set[str] = set()
        for index, task in enumerate(tasks):
            stop_reason = self._pending_stop_reason()
            if stop_reason is not None:
                outcome.stop_reason = stop_reason
                outcome.skipped.extend(item.id for item in tasks[index:])
                break

            unmet = self._unmet_dependencies(task, blocked)
            if unmet:
                blocked.add(task.id)
                outcome.skipped.append(task.id)
                logger.warning(
                    "Task %s not attempted: dependency %s did not complete.",
                    task.id,
                    ", ".join(unmet),
                )
                self._warnings.append(
                    f"Task {task.id} not attempted: dependency {', '.join(unmet)} "
                    "did not complete.",
                )
                continue

            try:
                ended = self._run_task(task)
            except SessionCancelledError as error:
                logger.warning("Task %s interrupted: %s", task.id, error)
                self._warnings.append(
                    f"Task {task.id} was interrupted; the working tree may hold partial changes.",
                )
                with self._lock:
                    self._require_state().current_task_id = None
                outcome.stop_reason = self._pending_stop_reason() or StopReason.CANCELLED
                outcome.skipped.extend(item.id for item in tasks[index:])
                break

            if ended:
                outcome.stop_reason = StopReason.SESSION_ENDING_FAILURE
                outcome.skipped.extend(item.id for item in tasks[index + 1 :])
                logger.error("Session-ending failure in task %s; stopping.", task.id)
                break

        if outcome.skipped:
            logger.warning(
                "Tasks not attempted (%s): %s",
                outcome.stop_reason.value,
                ", ".join(outcome.skipped),
            )
        return outcome

    def _unmet_dependencies(self, task: Task, blocked: set[str]) -> list[str]:
        failed = set(self._require_state().failed_task_ids) | blocked
        return [dep_id for dep_id in task.dependencies if dep_id in failed]

    def _run_task(self, task: Task) -> bool:
        """Run one task to a recorded outcome; True means end the session."""

        state = self._require_state()
        with self._lock:
            state.current_task_id = task.id
            state.phase = SessionPhase.RUNNING
        started_at = utc_now()
        started = self.clock()
        logger.info("Task %s started: %s", task.id, task.title)

        error_message: str | None = None
        category: ErrorCategory | None = None
        result: DelegatedWorkResult | None = None
        try:
            result = self._controller().run(
                lambda: self.backend.execute(self._request_for(task)),
                label=f"task {task.id}",
            )
        except DelegatedWorkError as error:
            error_message = str(error)
            category = error.category

        if result is not None:
            self._set_phase(SessionPhase.VALIDATING_COMPLETION)
            try:
                report = self.validator.validate(task, result)
                self._warnings.extend(f"Task {task.id}: {warning}" for warning in report.warnings)
                report.raise_for_errors(task.id)
            except TaskValidationError as error:
                error_message = str(error)
            except OSError as error:
                error_message = f"Validation could not run: {error}"

        if error_message is None and result is not None:
            self._record_success(task, result, started_at=started_at, started=started)
            ended = False
        else:
            message = error_message or "Unknown failure"
            self._record_failure(task, message, category=category)
            ended = is_session_ending(message)

        with self._lock:
            state.current_task_id = None
        self._checkpoint_best_effort()
        return ended

    def _record_success(
        self,
        task: Task,
        result: DelegatedWorkResult,
        *,
        started_at: datetime,
        started: float,
    ) -> None:
        state = self._require_state()
        outcome = CompletedOutcome(
            task_id=task.id,
            duration_seconds=max(0.0, self.clock() - started),
            files_changed=tuple(result.files_changed),
            started_at=started_at,
            completed_at=utc_now(),
        )
        with self._lock:
            state.completed.append(outcome)
            state.phase = SessionPhase.COMMITTING
        logger.info("Task %s completed in %.1fs.", task.id, outcome.duration_seconds)
        try:
            self.workspace.commit(task, result)
        except WorkspaceError as error:
            logger.error("Commit failed for task %s: %s", task.id, error)
            self._warnings.append(f"Commit failed for task {task.id}: {error}")

    def _record_failure(
        self,
        task: Task,
        message: str,
        *,
        category: ErrorCategory | None,
    ) -> None:
        state = self._require_state()
        outcome = FailedOutcome(
            task_id=task.id,
            error=message,
            failed_at=utc_now(),
            category=category,
        )
        with self._lock:
            state.failed.append(outcome)
            state.phase = SessionPhase.ROLLING_BACK
        self._failure_messages.append(f"{task.id}: {message}")
        logger.error("Task %s failed: %s", task.id, message)
        try:
            self.workspace.rollback(task)
        except WorkspaceError as error:
            logger.error("Rollback failed for task %s: %s", task.id, error)
            self._warnings.append(f"Rollback failed for task {task.id}: {error}")

    def _finalize(self, outcome: _LoopOutcome | None, tasks: list[Task]) -> SessionResult:
        state = self._require_state()
        self._set_phase(SessionPhase.FINALIZING)
        for job in self._jobs:
            job.stop()
        self._jobs = []
        self.backend.terminate()

        if self._stop_signal_name:
            self._warnings.append(f"Session stopped by {self._stop_signal_name}.")
        if outcome is None:
            # The loop raised; report everything not yet recorded as skipped.
            done = set(state.completed_task_ids) | set(state.failed_task_ids)
            outcome = _LoopOutcome(
                stop_reason=StopReason.CANCELLED,
                skipped=[task.id for task in tasks if task.id not in done],
            )

        try:
            self._write_checkpoint()
        except CheckpointIOError as error:
            logger.error("Final checkpoint failed: %s", error)
            self._warnings.append(f"Final checkpoint failed: {error}")

        result = SessionResult(
            session_id=state.session_id,
            status=SessionStatus.PARTIALLY_FAILED
            if state.failed_task_ids
            else SessionStatus.SUCCEEDED,
            stop_reason=outcome.stop_reason,
            completed=list(state.completed_task_ids),
            failed=list(state.failed_task_ids),
            skipped=outcome.skipped,
            failure_messages=list(self._failure_messages),
            duration_seconds=max(0.0, self.clock() - self._started_monotonic),
            checkpoints_written=self._checkpoints_written,
            warnings=list(self._warnings),
            resource_usage=list(state.resource_usage),
        )
        if self.reporter is not None:
            try:
                self.reporter.write(result)
            except OSError as error:
                logger.error("Session report could not be written: %s", error)
                result.warnings.append(f"Session report could not be written: {error}")
        self._set_phase(SessionPhase.TERMINAL)
        logger.info(
            "Session %s finished: %s (completed=%d failed=%d skipped=%d).",
            result.session_id,
            result.status.value,
            len(result.completed),
            len(result.failed),
            len(result.skipped),
        )
        return result

    def _controller(self) -> RetryController:
        return RetryController(
            policy=self.retry_policy,
            waiter=self._waiter or self._wait_for_retry,
            on_keepalive=self._checkpoint_best_effort,
            stop_requested=lambda: self._pending_stop_reason() is not None,
            rng=self._random,
        )

    def _request_for(self, task: Task) -> DelegatedWorkRequest:
        return DelegatedWorkRequest(
            task_id=task.id,
            prompt=render_task_prompt(task, working_dir=self.working_dir),
            working_dir=self.working_dir,
            timeout_seconds=task.timeout_seconds,
            log_dir=self.log_dir,
            model=self.model,
            shutdown_requested=lambda: self._pending_stop_reason() is not None,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )

    def _pending_stop_reason(self) -> StopReason | None:
        if self._stop_event.is_set():
            return StopReason.CANCELLED
        if self.elapsed() >= self._budget_seconds:
            return StopReason.BUDGET_EXHAUSTED
        return None

    def _wait_for_retry(self, seconds: float) -> bool:
        remaining_budget = self._budget_seconds - self.elapsed()
        if remaining_budget <= 0:
            return False
        if seconds > remaining_budget:
            self._stop_event.wait(remaining_budget)
            return False
        return not self._stop_event.wait(seconds)

    def _start_jobs(self) -> None:
        state = self._require_state()
        if self.checkpoint_interval_seconds:
            self._jobs.append(
                PeriodicJob(
                    name="checkpoint",
                    interval_seconds=self.checkpoint_interval_seconds,
                    action=self._checkpoint_best_effort,
                ),
            )
        if self.resource_sample_interval_seconds:
            sampler = ResourceSampler(state.resource_usage)
            self._jobs.append(
                PeriodicJob(
                    name="resource-sampler",
                    interval_seconds=self.resource_sample_interval_seconds,
                    action=sampler.sample,
                ),
            )
        for job in self._jobs:
            job.start()

    def _checkpoint_best_effort(self) -> None:
        try:
            self._write_checkpoint()
        except CheckpointIOError as error:
            logger.warning("Checkpoint failed (continuing): %s", error)

    def _write_checkpoint(self) -> Path:
        state = self._require_state()
        with self._lock:
            checkpoint = build_checkpoint(state, elapsed_seconds=self.elapsed())
        path = self.checkpoint_store.write(checkpoint)
        with self._lock:
            state.checkpoints.append(checkpoint)
            self._checkpoints_written += 1
        return path

    def _set_phase(self, phase: SessionPhase) -> None:
        with self._lock:
            self._require_state().phase = phase

    def _require_state(self) -> SessionState:
        if self.state is None:
            raise RuntimeError("Session has not been started.")
        return self.state

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
