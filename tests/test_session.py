from __future__ import annotations

import dataclasses
import json
import shlex
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from nightly_code.orchestrator.backend.base import DelegatedWorkRequest
from nightly_code.orchestrator.checkpoints import CheckpointStore
from nightly_code.orchestrator.errors import (
    DelegatedWorkError,
    SessionCancelledError,
    SessionEnvironmentError,
    WorkspaceError,
)
from nightly_code.orchestrator.models import (
    Checkpoint,
    CustomValidation,
    SessionPhase,
    SessionStatus,
    StopReason,
)
from nightly_code.orchestrator.report import SessionReporter
from nightly_code.orchestrator.retry import RetryPolicy
from nightly_code.orchestrator.session import SessionRunner, is_session_ending
from nightly_code.orchestrator.validator import CompletionValidator

pytestmark = [
    allure.epic("Session Orchestration"),
    allure.feature("Session Runner"),
]

SESSION_ID = "session-2026-03-01-020000"


@pytest.fixture()
def make_runner(
    tmp_path: Path,
    project_dir: Path,
    fake_clock,
    scripted_backend,
    recording_workspace,
) -> Callable[..., SessionRunner]:
    def _make(**overrides: object) -> SessionRunner:
        options: dict[str, object] = {
            "backend": scripted_backend,
            "validator": CompletionValidator(project_dir),
            "workspace": recording_workspace,
            "checkpoint_store": CheckpointStore(tmp_path / "checkpoints"),
            "working_dir": project_dir,
            "log_dir": tmp_path / "logs",
            "retry_policy": RetryPolicy(max_retries=1, base_delay_seconds=1.0, jitter=False),
            "checkpoint_interval_seconds": None,
            "resource_sample_interval_seconds": None,
            "session_id": SESSION_ID,
            "clock": fake_clock,
            "waiter": lambda seconds: True,
        }
        options.update(overrides)
        return SessionRunner(**options)  # type: ignore[arg-type]

    return _make


def _raise(message: str) -> Callable[[DelegatedWorkRequest], None]:
    def _behavior(request: DelegatedWorkRequest) -> None:
        raise DelegatedWorkError(message)

    return _behavior


def test_rate_limited_task_fails_after_retries_and_others_complete(
    make_runner,
    make_task,
    scripted_backend,
    recording_workspace,
) -> None:
    tasks = [
        make_task("A"),
        make_task("B", dependencies=("A",)),
        make_task("C", dependencies=("B",)),
    ]
    scripted_backend.behaviors["C"] = _raise("HTTP 429: rate limit exceeded")
    runner = make_runner()

    result = runner.run(tasks)

    assert result.completed == ["A", "B"]
    assert result.failed == ["C"]
    assert result.skipped == []
    assert scripted_backend.calls["C"] == 2
    assert result.status == SessionStatus.PARTIALLY_FAILED
    assert result.success is False
    assert result.stop_reason == StopReason.ALL_ATTEMPTED
    assert recording_workspace.commits == ["A", "B"]
    assert recording_workspace.rollbacks == ["C"]
    assert result.failure_messages[0].startswith("C: Rate limit exceeded after 1 retries")
    assert runner.state is not None
    assert runner.state.phase == SessionPhase.TERMINAL
    assert scripted_backend.terminate_calls == 1


def test_checkpoint_after_every_task_and_at_finalize(make_runner, make_task, tmp_path) -> None:
    runner = make_runner()

    result = runner.run([make_task("A"), make_task("B")])

    store = CheckpointStore(tmp_path / "checkpoints")
    assert result.checkpoints_written == 3
    assert len(store.list_checkpoints(SESSION_ID)) == 3
    latest = store.load(store.latest(SESSION_ID))
    assert latest.completed_task_ids == ("A", "B")
    assert latest.current_task_id is None
    assert latest.elapsed_seconds == pytest.approx(1_200.0)


def test_budget_exhaustion_skips_remaining_tasks(make_runner, make_task, scripted_backend) -> None:
    tasks = [make_task(task_id, estimated_duration=60) for task_id in ("one", "two", "three")]

    result = make_runner().run(tasks, budget_seconds=5_400)

    assert result.completed == ["one", "two"]
    assert result.skipped == ["three"]
    assert result.stop_reason == StopReason.BUDGET_EXHAUSTED
    assert result.success is True
    assert "three" not in scripted_backend.calls


def test_session_ending_failure_stops_the_queue(
    make_runner,
    make_task,
    scripted_backend,
    recording_workspace,
) -> None:
    scripted_backend.behaviors["A"] = _raise("Agent exited with code 1: authentication failed")

    result = make_runner().run([make_task("A"), make_task("B"), make_task("C")])

    assert result.failed == ["A"]
    assert result.skipped == ["B", "C"]
    assert result.stop_reason == StopReason.SESSION_ENDING_FAILURE
    assert scripted_backend.calls["A"] == 1
    assert recording_workspace.rollbacks == ["A"]


def test_environment_failure_raises_before_any_task(
    make_runner,
    make_task,
    scripted_backend,
    tmp_path,
) -> None:
    scripted_backend.probe_error = "Agent command not found on PATH: claude"

    with pytest.raises(SessionEnvironmentError, match="Agent command not found"):
        make_runner().run([make_task("A")])

    assert scripted_backend.calls == {}
    assert not (tmp_path / "checkpoints").exists()


def test_workspace_check_failure_is_reported(make_runner, make_task, recording_workspace) -> None:
    recording_workspace.check_error = "Not a git repository"

    with pytest.raises(SessionEnvironmentError, match="Not a git repository"):
        make_runner().run([make_task("A")])


def test_stop_request_during_task_cancels_session(
    make_runner,
    make_task,
    scripted_backend,
    recording_workspace,
) -> None:
    runner = make_runner()

    def _interrupt(request: DelegatedWorkRequest) -> None:
        runner.request_stop(signal_name="SIGTERM")
        raise SessionCancelledError("Agent stopped on shutdown request.")

    scripted_backend.behaviors["B"] = _interrupt

    result = runner.run([make_task("A"), make_task("B"), make_task("C")])

    assert result.completed == ["A"]
    assert result.failed == []
    assert result.skipped == ["B", "C"]
    assert result.stop_reason == StopReason.CANCELLED
    assert recording_workspace.rollbacks == []
    assert "Session stopped by SIGTERM." in result.warnings
    assert any("Task B was interrupted" in warning for warning in result.warnings)


def test_stop_during_backoff_cancels_session(make_runner, make_task, scripted_backend) -> None:
    scripted_backend.behaviors["A"] = _raise("429 too many requests")

    result = make_runner(waiter=lambda seconds: False).run([make_task("A"), make_task("B")])

    assert scripted_backend.calls["A"] == 1
    assert result.failed == []
    assert result.skipped == ["A", "B"]
    assert result.stop_reason == StopReason.CANCELLED


def test_dependents_of_failed_task_are_skipped(
    make_runner,
    make_task,
    scripted_backend,
) -> None:
    scripted_backend.behaviors["A"] = _raise("Agent exited with code 2: compile error")
    tasks = [
        make_task("A"),
        make_task("B", dependencies=("A",)),
        make_task("C", dependencies=("B",)),
        make_task("D"),
    ]

    result = make_runner(retry_policy=RetryPolicy(max_retries=0)).run(tasks)

    assert result.failed == ["A"]
    assert result.skipped == ["B", "C"]
    assert result.completed == ["D"]
    assert result.stop_reason == StopReason.ALL_ATTEMPTED
    assert "B" not in scripted_backend.calls
    assert any("Task B not attempted" in warning for warning in result.warnings)


def test_custom_validation_failure_rolls_back(
    make_runner,
    make_task,
    recording_workspace,
) -> None:
    script = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(3)'"
    task = dataclasses.replace(make_task("A"), custom_validation=CustomValidation(script=script))

    result = make_runner().run([task])

    assert result.failed == ["A"]
    assert recording_workspace.commits == []
    assert recording_workspace.rollbacks == ["A"]
    assert result.failure_messages == [
        "A: Validation failed: Custom validation failed (exit 3): <no output>",
    ]


def test_malformed_validation_script_fails_task_and_session_continues(
    make_runner,
    make_task,
    scripted_backend,
    recording_workspace,
) -> None:
    task = dataclasses.replace(
        make_task("A"),
        custom_validation=CustomValidation(script="echo 'oops"),
    )

    result = make_runner().run([task, make_task("B")])

    assert result.failed == ["A"]
    assert result.completed == ["B"]
    assert recording_workspace.rollbacks == ["A"]
    assert recording_workspace.commits == ["B"]
    assert scripted_backend.calls["B"] == 1
    assert result.failure_messages == [
        "A: Validation failed: Custom validation command is malformed: No closing quotation",
    ]


def test_commit_failure_becomes_warning(make_runner, make_task, recording_workspace) -> None:
    def _failing_commit(task, result):
        raise WorkspaceError("git commit failed")

    recording_workspace.commit = _failing_commit

    result = make_runner().run([make_task("A")])

    assert result.completed == ["A"]
    assert result.warnings == ["Commit failed for task A: git commit failed"]


def test_resume_skips_recorded_tasks_and_keeps_elapsed(
    make_runner,
    make_task,
    scripted_backend,
) -> None:
    checkpoint = Checkpoint(
        timestamp=datetime(2026, 3, 1, 3, 0, tzinfo=UTC),
        session_id="session-2026-02-28-230000",
        current_task_id="B",
        completed_task_ids=("A",),
        failed_task_ids=(),
        elapsed_seconds=600.0,
    )
    runner = make_runner(session_id=None)
    runner.resume_from(checkpoint)

    result = runner.run([make_task("A"), make_task("B"), make_task("C")], budget_seconds=1_200)

    assert result.session_id == "session-2026-02-28-230000"
    assert scripted_backend.order == ["B"]
    assert result.completed == ["A", "B"]
    assert result.skipped == ["C"]
    assert result.stop_reason == StopReason.BUDGET_EXHAUSTED


def test_resumed_failures_keep_session_partially_failed(
    make_runner,
    make_task,
    scripted_backend,
) -> None:
    checkpoint = Checkpoint(
        timestamp=datetime(2026, 3, 1, 3, 0, tzinfo=UTC),
        session_id=SESSION_ID,
        current_task_id=None,
        completed_task_ids=(),
        failed_task_ids=("A",),
        elapsed_seconds=0.0,
    )
    runner = make_runner()
    runner.resume_from(checkpoint)

    result = runner.run([make_task("A"), make_task("B", dependencies=("A",)), make_task("C")])

    assert scripted_backend.order == ["C"]
    assert result.failed == ["A"]
    assert result.skipped == ["B"]
    assert result.status == SessionStatus.PARTIALLY_FAILED


def test_final_checkpoint_failure_becomes_warning(make_runner, make_task, tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")

    result = make_runner(checkpoint_store=CheckpointStore(blocker / "checkpoints")).run(
        [make_task("A")],
    )

    assert result.completed == ["A"]
    assert result.checkpoints_written == 0
    assert any(warning.startswith("Final checkpoint failed") for warning in result.warnings)


def test_report_written_when_reporter_configured(make_runner, make_task, tmp_path) -> None:
    reporter = SessionReporter(tmp_path / "reports")

    make_runner(reporter=reporter).run([make_task("A")])

    payload = json.loads((tmp_path / "reports" / f"{SESSION_ID}.json").read_text("utf-8"))
    assert payload["completed"] == ["A"]
    assert payload["status"] == "succeeded"
    assert payload["stop_reason"] == "all_attempted"


def test_empty_queue_finishes_immediately(make_runner) -> None:
    result = make_runner().run([])

    assert result.success is True
    assert result.completed == []
    assert result.stop_reason == StopReason.ALL_ATTEMPTED
    assert result.checkpoints_written == 1


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("write failed: No space left on device", True),
        ("fatal: repository not found", True),
        ("Authentication failed", True),
        ("Validation failed: Tests failed (exit 1)", False),
    ],
)
def test_session_ending_detection(message: str, expected: bool) -> None:
    assert is_session_ending(message) is expected
