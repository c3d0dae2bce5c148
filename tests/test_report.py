from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure

from nightly_code.orchestrator.models import (
    CustomValidation,
    ResourceSample,
    SessionResult,
    SessionStatus,
    StopReason,
)
from nightly_code.orchestrator.prompts import render_task_prompt
from nightly_code.orchestrator.report import SessionReporter, render_summary_lines

pytestmark = [
    allure.epic("Session Orchestration"),
    allure.feature("Reports And Prompts"),
]


def _result(**overrides: object) -> SessionResult:
    values: dict[str, object] = {
        "session_id": "session-2026-03-01-020000",
        "status": SessionStatus.PARTIALLY_FAILED,
        "stop_reason": StopReason.BUDGET_EXHAUSTED,
        "completed": ["a"],
        "failed": ["b"],
        "skipped": ["c"],
        "failure_messages": ["b: Agent exited with code 1: boom"],
        "duration_seconds": 3_725.0,
        "checkpoints_written": 4,
        "warnings": ["Task a: No files were modified by task a."],
    }
    values.update(overrides)
    return SessionResult(**values)  # type: ignore[arg-type]


def test_summary_lines_cover_every_outcome() -> None:
    lines = render_summary_lines(_result())

    assert lines[:5] == [
        "Session: session-2026-03-01-020000",
        "Status: partially_failed (stop reason: budget_exhausted)",
        "Duration: 1h 2m 5s",
        "Tasks: completed=1 failed=1 skipped=1",
        "Checkpoints written: 4",
    ]
    assert "Failed: b" in lines
    assert "  - b: Agent exited with code 1: boom" in lines
    assert "  - Task a: No files were modified by task a." in lines


def test_summary_reports_resource_peak() -> None:
    moment = datetime(2026, 3, 1, tzinfo=UTC)
    samples = [
        ResourceSample(timestamp=moment, cpu_percent=12.0, memory_bytes=50 * 1024 * 1024),
        ResourceSample(timestamp=moment, cpu_percent=80.5, memory_bytes=20 * 1024 * 1024),
    ]

    lines = render_summary_lines(_result(resource_usage=samples, duration_seconds=42.0))

    assert "Duration: 42s" in lines
    assert lines[-1] == "Resource peak: cpu=80.5% memory=50MB"


def test_reporter_writes_json_payload(tmp_path: Path) -> None:
    path = SessionReporter(tmp_path / "reports").write(_result())

    payload = json.loads(path.read_text("utf-8"))
    assert path.name == "session-2026-03-01-020000.json"
    assert payload["success"] is False
    assert payload["status"] == "partially_failed"
    assert payload["skipped"] == ["c"]
    assert payload["checkpoints_written"] == 4


def test_prompt_includes_task_details(make_task, project_dir: Path) -> None:
    task = make_task("add-auth")

    prompt = render_task_prompt(task, working_dir=project_dir)

    assert prompt.startswith("# Automated Coding Task\n")
    assert f"Working directory: {project_dir}" in prompt
    assert "**ID:** add-auth" in prompt
    assert "**Type:** feature" in prompt
    assert "Implement add-auth" in prompt
    assert "None specified" in prompt
    assert "Any relevant files" in prompt
    assert "Maximum time for this task: 10 minutes" in prompt


def test_prompt_lists_criteria_files_and_context(make_task, project_dir: Path) -> None:
    task = replace(
        make_task("api"),
        acceptance_criteria=("returns 200", "has tests"),
        files_to_modify=("src/api/*.py",),
        tags=("backend",),
        custom_validation=CustomValidation(script="pytest"),
    )

    prompt = render_task_prompt(task, working_dir=project_dir, project_context="Flask app")

    assert "- returns 200\n- has tests" in prompt
    assert "**Files to Modify:** src/api/*.py" in prompt
    assert "**Tags:** backend" in prompt
    assert "Flask app" in prompt
    assert "Working directory:" not in prompt
