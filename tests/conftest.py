"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections import Counter
from collections.abc import Callable
from pathlib import Path

import pytest

from nightly_code.orchestrator.backend.base import DelegatedWorkRequest, DelegatedWorkResult
from nightly_code.orchestrator.models import Task, TaskType

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m nightly_code.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

Behavior = Callable[[DelegatedWorkRequest], None]


class FakeClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedBackend:
    """Backend double: each call advances the clock by the task timeout.

    ``behaviors[task_id]`` runs before the attempt "finishes" and may raise
    to simulate an agent failure.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.behaviors: dict[str, Behavior] = {}
        self.calls: Counter[str] = Counter()
        self.order: list[str] = []
        self.terminate_calls = 0
        self.probe_error: str | None = None

    def probe(self) -> str | None:
        return self.probe_error

    def execute(self, request: DelegatedWorkRequest) -> DelegatedWorkResult:
        self.calls[request.task_id] += 1
        self.order.append(request.task_id)
        self.clock.advance(request.timeout_seconds)
        behavior = self.behaviors.get(request.task_id)
        if behavior is not None:
            behavior(request)
        return DelegatedWorkResult(
            exit_code=0,
            output=f"done {request.task_id}",
            duration_seconds=float(request.timeout_seconds),
            stdout_path=request.log_dir / f"{request.task_id}.out",
            stderr_path=request.log_dir / f"{request.task_id}.err",
            files_changed=[f"src/{request.task_id}.py"],
        )

    def terminate(self) -> None:
        self.terminate_calls += 1


class RecordingWorkspace:
    """Workspace double recording commit/rollback calls."""

    def __init__(self) -> None:
        self.commits: list[str] = []
        self.rollbacks: list[str] = []
        self.check_error: str | None = None

    def check(self) -> str | None:
        return self.check_error

    def changed_files(self) -> list[str]:
        return []

    def commit(self, task: Task, result: DelegatedWorkResult) -> str | None:
        self.commits.append(task.id)
        return f"rev-{task.id}"

    def rollback(self, task: Task) -> None:
        self.rollbacks.append(task.id)


def build_task(  # noqa: PLR0913
    task_id: str,
    *,
    dependencies: tuple[str, ...] = (),
    priority: int = 5,
    estimated_duration: int = 10,
    task_type: TaskType = TaskType.FEATURE,
    enabled: bool = True,
) -> Task:
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        type=task_type,
        requirements=f"Implement {task_id}",
        priority=priority,
        estimated_duration=estimated_duration,
        dependencies=dependencies,
        enabled=enabled,
    )


@pytest.fixture()
def make_task() -> Callable[..., Task]:
    return build_task


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scripted_backend(fake_clock: FakeClock) -> ScriptedBackend:
    return ScriptedBackend(fake_clock)


@pytest.fixture()
def recording_workspace() -> RecordingWorkspace:
    return RecordingWorkspace()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture()
def echo_agent_command() -> str:
    """Agent command template running the local echo agent module."""

    return ECHO_AGENT_COMMAND_TEMPLATE
