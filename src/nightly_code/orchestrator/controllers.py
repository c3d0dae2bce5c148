"""Controllers for session CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from nightly_code.config import Settings
from nightly_code.orchestrator.backend import CliAgentBackend, DryRunBackend
from nightly_code.orchestrator.checkpoints import CheckpointStore, checkpoint_to_payload
from nightly_code.orchestrator.contracts import estimate_session_duration, load_task_file
from nightly_code.orchestrator.errors import SessionEnvironmentError
from nightly_code.orchestrator.models import Task
from nightly_code.orchestrator.report import SessionReporter, render_summary_lines
from nightly_code.orchestrator.resolver import (
    find_missing_dependencies,
    resolve_execution_order,
)
from nightly_code.orchestrator.session import SessionRunner
from nightly_code.orchestrator.validator import CompletionValidator, ProjectCommand
from nightly_code.orchestrator.workspace import DryRunWorkspace, GitWorkspace

logger = logging.getLogger(__name__)

DEFAULT_TASKS_FILE = "nightly-tasks.yaml"


@dataclass(slots=True)
class RunSessionCommand:
    """CLI input for a session run."""

    tasks_path: Path | None
    working_dir: Path | None
    max_duration: int | None = None
    checkpoint_interval: int | None = None
    resume: Path | None = None
    dry_run: bool = False
    agent_command: str | None = None
    model: str | None = None
    max_retries: int | None = None
    base_delay: float | None = None
    retry_on_limits: bool | None = None


@dataclass(slots=True)
class PlanCommand:
    """CLI input for plan / estimate output."""

    tasks_path: Path | None
    working_dir: Path | None


@dataclass(slots=True)
class CheckpointListCommand:
    """CLI input for checkpoint listing."""

    working_dir: Path | None
    session_id: str | None
    limit: int = 20


@dataclass(slots=True)
class CheckpointShowCommand:
    """CLI input for checkpoint inspection."""

    path: Path


@dataclass(slots=True)
class RunSessionResult:
    """Printable lines plus session success flag."""

    lines: list[str]
    success: bool


class SessionCliController:
    """Coordinates task loading, planning, session runs, and checkpoint inspection."""

    def run_session(self, command: RunSessionCommand) -> RunSessionResult:
        settings = _settings_for(command)
        settings.validate()
        working_dir = settings.working_dir
        order = _resolved_tasks(_tasks_path(command.tasks_path, working_dir))

        if not working_dir.is_dir():
            raise SessionEnvironmentError(f"Working directory does not exist: {working_dir}")
        _prepare_state_dir(settings.session.state_dir)
        store = CheckpointStore(settings.session.checkpoint_dir)
        if command.dry_run:
            workspace = DryRunWorkspace(working_dir)
            backend = DryRunBackend()
        else:
            workspace = GitWorkspace(
                working_dir,
                author_name=settings.git.author_name,
                author_email=settings.git.author_email,
            )
            backend = CliAgentBackend(
                command_template=settings.agent.command_template,
                changed_files=workspace.changed_files,
            )
        validator = CompletionValidator(
            working_dir,
            project_commands=_project_commands(settings) if not command.dry_run else (),
            fail_on_no_changes=settings.validation.fail_on_no_changes and not command.dry_run,
        )
        runner = SessionRunner(
            backend=backend,
            validator=validator,
            workspace=workspace,
            checkpoint_store=store,
            working_dir=working_dir,
            log_dir=settings.session.log_dir,
            retry_policy=settings.retry.to_policy(),
            model=settings.agent.model,
            reporter=SessionReporter(settings.session.report_dir),
            checkpoint_interval_seconds=settings.session.checkpoint_interval_seconds,
            resource_sample_interval_seconds=settings.session.resource_sample_interval_seconds,
            graceful_shutdown_seconds=settings.session.graceful_shutdown_seconds,
        )
        if command.resume is not None:
            runner.resume_from(store.load(command.resume))

        result = runner.run(order, budget_seconds=settings.session.max_duration_seconds)
        lines = render_summary_lines(result)
        if command.dry_run:
            lines.insert(0, "[dry-run] No agent was started and no commits were made.")
        return RunSessionResult(lines=lines, success=result.success)

    def plan(self, command: PlanCommand) -> list[str]:
        working_dir = command.working_dir or Path.cwd()
        tasks = load_task_file(_tasks_path(command.tasks_path, working_dir)).tasks
        order = resolve_execution_order(tasks)
        lines = [f"Execution order ({len(order)} tasks):"]
        for position, task in enumerate(order, start=1):
            deps = ", ".join(task.dependencies) if task.dependencies else "-"
            lines.append(
                f"{position:>3}. {task.id} [{task.type.value}] priority={task.priority} "
                f"est={task.estimated_duration}m deps={deps} :: {task.title}",
            )
        disabled = [task.id for task in tasks if not task.enabled]
        if disabled:
            lines.append(f"Disabled: {', '.join(disabled)}")
        for task_id, missing in find_missing_dependencies(tasks).items():
            lines.append(
                f"Warning: task {task_id} depends on unknown task(s): {', '.join(missing)}",
            )
        return lines

    def estimate(self, command: PlanCommand) -> list[str]:
        working_dir = command.working_dir or Path.cwd()
        tasks = load_task_file(_tasks_path(command.tasks_path, working_dir)).tasks
        enabled = [task for task in tasks if task.enabled]
        estimate = estimate_session_duration(enabled)
        lines = [
            f"Tasks: {estimate.task_count}",
            f"Estimated duration: {estimate.total_minutes} minutes "
            f"({estimate.total_hours:.2f} hours, incl. {estimate.overhead_minutes}m overhead)",
            "By type:",
        ]
        lines.extend(
            f"  {task_type}: {minutes}m"
            for task_type, minutes in estimate.by_type.items()
            if minutes
        )
        settings = Settings.from_env(working_dir=working_dir)
        if estimate.total_minutes * 60 > settings.session.max_duration_seconds:
            lines.append(
                "Warning: estimate exceeds the session budget of "
                f"{settings.session.max_duration_seconds // 60} minutes; "
                "the tail of the queue will be skipped.",
            )
        return lines

    def list_checkpoints(self, command: CheckpointListCommand) -> list[str]:
        settings = Settings.from_env(working_dir=command.working_dir)
        store = CheckpointStore(settings.session.checkpoint_dir)
        paths = store.list_checkpoints(command.session_id)
        if not paths:
            return [f"No checkpoints found in {store.directory}"]
        lines = [f"Checkpoints in {store.directory}:"]
        for path in paths[-command.limit :]:
            checkpoint = store.load(path)
            lines.append(
                f"{path.name} completed={len(checkpoint.completed_task_ids)} "
                f"failed={len(checkpoint.failed_task_ids)} "
                f"elapsed={checkpoint.elapsed_seconds:.0f}s "
                f"current={checkpoint.current_task_id or '-'}",
            )
        return lines

    def show_checkpoint(self, command: CheckpointShowCommand) -> list[str]:
        checkpoint = CheckpointStore(command.path.parent).load(command.path)
        return json.dumps(checkpoint_to_payload(checkpoint), indent=2, sort_keys=True).splitlines()


def _settings_for(command: RunSessionCommand) -> Settings:
    settings = Settings.from_env(working_dir=command.working_dir)
    if command.max_duration is not None:
        settings.session.max_duration_seconds = command.max_duration
    if command.checkpoint_interval is not None:
        settings.session.checkpoint_interval_seconds = command.checkpoint_interval
    if command.agent_command is not None:
        settings.agent.command_template = command.agent_command
    if command.model is not None:
        settings.agent.model = command.model
    if command.max_retries is not None:
        settings.retry.max_retries = command.max_retries
    if command.base_delay is not None:
        settings.retry.base_delay_seconds = command.base_delay
    if command.retry_on_limits is not None:
        settings.retry.retry_on_usage_limit = command.retry_on_limits
        settings.retry.retry_on_rate_limit = command.retry_on_limits
    return settings


def _prepare_state_dir(state_dir: Path) -> None:
    """Create the state directory and keep git from tracking or cleaning it."""

    state_dir.mkdir(parents=True, exist_ok=True)
    ignore_file = state_dir / ".gitignore"
    if not ignore_file.exists():
        ignore_file.write_text("# created by nightly-code\n*\n", "utf-8")


def _tasks_path(tasks_path: Path | None, working_dir: Path) -> Path:
    return tasks_path or working_dir / DEFAULT_TASKS_FILE


def _resolved_tasks(tasks_path: Path) -> list[Task]:
    tasks = load_task_file(tasks_path).tasks
    for task_id, missing in find_missing_dependencies(tasks).items():
        logger.warning("Task %s depends on unknown task(s): %s", task_id, ", ".join(missing))
    return resolve_execution_order(tasks)


def _project_commands(settings: Settings) -> tuple[ProjectCommand, ...]:
    timeout = settings.validation.command_timeout_seconds
    candidates = (
        ("Tests", settings.validation.test_command),
        ("Lint", settings.validation.lint_command),
        ("Build", settings.validation.build_command),
    )
    return tuple(
        ProjectCommand(name=name, command=command, timeout_seconds=timeout)
        for name, command in candidates
        if command.strip()
    )
