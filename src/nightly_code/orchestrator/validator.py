"""Completion validation run after an agent attempt succeeds."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from nightly_code.orchestrator.backend.base import DelegatedWorkResult
from nightly_code.orchestrator.errors import TaskValidationError
from nightly_code.orchestrator.models import Task, TaskType

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 500


@dataclass(slots=True)
class ValidationReport:
    """Result of completion validation."""

    passed: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def raise_for_errors(self, task_id: str) -> None:
        """Raise ``TaskValidationError`` if any check failed."""

        if self.errors:
            raise TaskValidationError(
                "Validation failed: " + "; ".join(self.errors),
                task_id=task_id,
                errors=self.errors,
            )


@dataclass(slots=True)
class ProjectCommand:
    """A project-level check such as the test suite or linter."""

    name: str
    command: str
    timeout_seconds: int = 300


class CompletionValidator:
    """Checks the working tree after the agent reports success.

    Runs the task's custom validation script (if any) and then the configured
    project commands. An agent that changed no files is reported as a
    warning, or as an error when ``fail_on_no_changes`` is set. Documentation
    tasks are exempt from the no-change check.
    """

    def __init__(
        self,
        working_dir: Path,
        *,
        project_commands: tuple[ProjectCommand, ...] = (),
        fail_on_no_changes: bool = False,
    ) -> None:
        self.working_dir = working_dir
        self.project_commands = project_commands
        self.fail_on_no_changes = fail_on_no_changes

    def validate(self, task: Task, result: DelegatedWorkResult) -> ValidationReport:
        report = ValidationReport(passed=True)

        if not result.files_changed and task.type != TaskType.DOCS:
            message = f"No files were modified by task {task.id}."
            if self.fail_on_no_changes:
                report.errors.append(message)
            else:
                report.warnings.append(message)

        if task.custom_validation is not None:
            error = self._run_command(
                name="Custom validation",
                command=task.custom_validation.script,
                timeout_seconds=task.custom_validation.timeout_seconds,
            )
            if error is not None:
                report.errors.append(error)

        for project_command in self.project_commands:
            if not project_command.command.strip():
                continue
            error = self._run_command(
                name=project_command.name,
                command=project_command.command,
                timeout_seconds=project_command.timeout_seconds,
            )
            if error is not None:
                report.errors.append(error)

        report.passed = not report.errors
        for warning in report.warnings:
            logger.warning("Validation warning for task %s: %s", task.id, warning)
        if not report.passed:
            logger.error("Validation failed for task %s: %s", task.id, "; ".join(report.errors))
        return report

    def _run_command(self, *, name: str, command: str, timeout_seconds: int) -> str | None:
        try:
            argv = shlex.split(command)
        except ValueError as error:
            return f"{name} command is malformed: {error}"
        if not argv:
            return None
        logger.info("Running %s: %s", name.lower(), command)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return f"{name} command not found: {argv[0]}"
        except subprocess.TimeoutExpired:
            return f"{name} timed out after {timeout_seconds}s"
        if completed.returncode != 0:
            output = (completed.stderr.strip() or completed.stdout.strip())[-_OUTPUT_TAIL_CHARS:]
            return f"{name} failed (exit {completed.returncode}): {output or '<no output>'}"
        return None
