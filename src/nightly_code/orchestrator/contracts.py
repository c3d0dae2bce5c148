"""Task file contract: YAML/JSON loading, validation, and estimates."""

from __future__ import annotations

import json
import logging
import math
import re
import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from nightly_code.orchestrator.errors import TaskFileError
from nightly_code.orchestrator.models import CustomValidation, Task, TaskType

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
MAX_TITLE_LENGTH = 200
MIN_DURATION_MINUTES = 1
MAX_DURATION_MINUTES = 480
DEFAULT_DURATION_MINUTES = 60
LONG_DURATION_MINUTES = 240
MAX_CUSTOM_VALIDATION_TIMEOUT = 600
DEFAULT_CUSTOM_VALIDATION_TIMEOUT = 300
TASK_OVERHEAD_MINUTES = 5

_INVALID_PATH_CHARS = re.compile(r'[<>:"|]')
_UNSAFE_PATH_PATTERNS = (
    re.compile(r"\.\./"),
    re.compile(r"^/"),
    re.compile(r"~"),
)


@dataclass(slots=True)
class TaskFileValidation:
    """Validation outcome for a raw task file payload."""

    tasks: list[Task] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(slots=True)
class SessionEstimate:
    """Expected session length for a task list."""

    task_count: int
    total_minutes: int
    overhead_minutes: int
    by_type: dict[str, int]

    @property
    def total_hours(self) -> float:
        return self.total_minutes / 60


def read_task_payload(path: Path) -> Any:
    """Parse a task file as JSON (``.json``) or YAML (anything else)."""

    if not path.exists():
        raise TaskFileError(f"Tasks file not found: {path}")
    try:
        raw = path.read_text("utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise TaskFileError(f"Cannot read tasks file {path}: {error}") from error
    try:
        if path.suffix.lower() == ".json":
            return json.loads(raw)
        return yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as error:
        raise TaskFileError(f"Cannot parse tasks file {path}: {error}") from error


def load_task_file(path: Path) -> TaskFileValidation:
    """Load and validate tasks; raises ``TaskFileError`` listing every problem."""

    logger.info("Loading tasks from %s", path)
    validation = validate_task_payload(read_task_payload(path))
    for warning in validation.warnings:
        logger.warning("%s", warning)
    if not validation.valid:
        raise TaskFileError(
            "Task validation failed:\n" + "\n".join(f"- {error}" for error in validation.errors),
        )
    logger.info("Loaded %d tasks (%d enabled).", len(validation.tasks), _enabled(validation.tasks))
    return validation


def validate_task_payload(payload: Any) -> TaskFileValidation:
    """Validate a decoded ``{tasks: [...]}`` document.

    Every task is checked independently so one run reports all problems.
    """

    validation = TaskFileValidation()
    if not isinstance(payload, dict) or "tasks" not in payload:
        validation.errors.append("Tasks file must be a mapping with a 'tasks' list.")
        return validation
    raw_tasks = payload["tasks"]
    if raw_tasks is None:
        return validation
    if not isinstance(raw_tasks, list):
        validation.errors.append("'tasks' must be a list.")
        return validation

    seen_ids: set[str] = set()
    for index, raw_task in enumerate(raw_tasks):
        label = f"tasks[{index}]"
        if isinstance(raw_task, dict) and isinstance(raw_task.get("id"), str):
            label = f"task {raw_task['id']!r}"
        errors: list[str] = []
        task = _parse_task(raw_task, errors=errors, warnings=validation.warnings, label=label)
        if task is not None and task.id in seen_ids:
            errors.append(f"Duplicate task ID: {task.id}")
        validation.errors.extend(f"{label}: {error}" for error in errors)
        if task is not None and not errors:
            seen_ids.add(task.id)
            validation.tasks.append(task)
    return validation


def estimate_session_duration(tasks: Sequence[Task]) -> SessionEstimate:
    """Sum task estimates plus a fixed per-task overhead."""

    by_type = {task_type.value: 0 for task_type in TaskType}
    total = 0
    for task in tasks:
        total += task.estimated_duration
        by_type[task.type.value] += task.estimated_duration
    overhead = math.ceil(len(tasks) * TASK_OVERHEAD_MINUTES)
    return SessionEstimate(
        task_count=len(tasks),
        total_minutes=total + overhead,
        overhead_minutes=overhead,
        by_type=by_type,
    )


def is_safe_file_pattern(pattern: str) -> bool:
    if _INVALID_PATH_CHARS.search(pattern):
        return False
    return not any(unsafe.search(pattern) for unsafe in _UNSAFE_PATH_PATTERNS)


def _parse_task(  # noqa: C901, PLR0912
    raw: object,
    *,
    errors: list[str],
    warnings: list[str],
    label: str,
) -> Task | None:
    if not isinstance(raw, dict):
        errors.append("must be a mapping")
        return None

    task_id = raw.get("id")
    if not isinstance(task_id, str) or not task_id:
        errors.append("'id' is required")
    elif not TASK_ID_PATTERN.match(task_id):
        errors.append(f"'id' must match {TASK_ID_PATTERN.pattern}")

    raw_type = raw.get("type")
    task_type: TaskType | None = None
    try:
        task_type = TaskType(raw_type)
    except (TypeError, ValueError):
        allowed = ", ".join(item.value for item in TaskType)
        errors.append(f"'type' must be one of: {allowed}")

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        errors.append("'title' is required")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"'title' must be at most {MAX_TITLE_LENGTH} characters")

    requirements = raw.get("requirements")
    if not isinstance(requirements, str) or not requirements.strip():
        errors.append("'requirements' is required")

    priority = _int_in_range(
        raw.get("priority", DEFAULT_PRIORITY),
        name="priority",
        low=MIN_PRIORITY,
        high=MAX_PRIORITY,
        errors=errors,
    )
    duration = _int_in_range(
        raw.get("estimated_duration", DEFAULT_DURATION_MINUTES),
        name="estimated_duration",
        low=MIN_DURATION_MINUTES,
        high=MAX_DURATION_MINUTES,
        errors=errors,
    )
    if duration is not None and duration > LONG_DURATION_MINUTES:
        warnings.append(f"{label}: very long estimated duration ({duration} minutes)")

    acceptance = _string_tuple(raw.get("acceptance_criteria"), "acceptance_criteria", errors)
    dependencies = _string_tuple(raw.get("dependencies"), "dependencies", errors)
    tags = _string_tuple(raw.get("tags"), "tags", errors)
    files = _string_tuple(raw.get("files_to_modify"), "files_to_modify", errors)
    for pattern in files:
        if not is_safe_file_pattern(pattern):
            errors.append(f"Invalid file pattern: {pattern}")

    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        errors.append("'enabled' must be a boolean")

    custom_validation = _custom_validation(raw.get("custom_validation"), errors)

    if errors or task_type is None:
        return None
    return Task(
        id=str(task_id),
        title=str(title).strip(),
        type=task_type,
        requirements=str(requirements).strip(),
        priority=int(priority or DEFAULT_PRIORITY),
        acceptance_criteria=acceptance,
        estimated_duration=int(duration or DEFAULT_DURATION_MINUTES),
        dependencies=dependencies,
        files_to_modify=files,
        tags=tuple(dict.fromkeys(tags)),
        enabled=bool(enabled),
        custom_validation=custom_validation,
    )


def _int_in_range(
    value: object,
    *,
    name: str,
    low: int,
    high: int,
    errors: list[str],
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"'{name}' must be an integer")
        return None
    if not low <= value <= high:
        errors.append(f"'{name}' must be between {low} and {high}")
        return None
    return value


def _string_tuple(value: object, name: str, errors: list[str]) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        errors.append(f"'{name}' must be a list of strings")
        return ()
    return tuple(value)


def _custom_validation(value: object, errors: list[str]) -> CustomValidation | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        errors.append("'custom_validation' must be a mapping")
        return None
    script = value.get("script")
    if not isinstance(script, str) or not script.strip():
        errors.append("'custom_validation.script' is required")
        return None
    try:
        shlex.split(script)
    except ValueError as error:
        errors.append(f"'custom_validation.script' cannot be parsed: {error}")
        return None
    timeout = _int_in_range(
        value.get("timeout", DEFAULT_CUSTOM_VALIDATION_TIMEOUT),
        name="custom_validation.timeout",
        low=1,
        high=MAX_CUSTOM_VALIDATION_TIMEOUT,
        errors=errors,
    )
    if timeout is None:
        return None
    return CustomValidation(script=script.strip(), timeout_seconds=timeout)


def _enabled(tasks: Sequence[Task]) -> int:
    return sum(1 for task in tasks if task.enabled)
