"""Session report: JSON artifact and operator-facing summary lines."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from nightly_code.orchestrator.models import SessionResult

logger = logging.getLogger(__name__)


def render_summary_lines(result: SessionResult) -> list[str]:
    lines = [
        f"Session: {result.session_id}",
        f"Status: {result.status.value} (stop reason: {result.stop_reason.value})",
        f"Duration: {_format_duration(result.duration_seconds)}",
        "Tasks: "
        f"completed={len(result.completed)} failed={len(result.failed)} "
        f"skipped={len(result.skipped)}",
        f"Checkpoints written: {result.checkpoints_written}",
    ]
    if result.completed:
        lines.append(f"Completed: {', '.join(result.completed)}")
    if result.failed:
        lines.append(f"Failed: {', '.join(result.failed)}")
    if result.skipped:
        lines.append(f"Skipped: {', '.join(result.skipped)}")
    if result.failure_messages:
        lines.append("Failures:")
        lines.extend(f"  - {message}" for message in result.failure_messages)
    if result.warnings:
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in result.warnings)
    if result.resource_usage:
        peak_cpu = max(sample.cpu_percent for sample in result.resource_usage)
        peak_memory = max(sample.memory_bytes for sample in result.resource_usage)
        lines.append(
            f"Resource peak: cpu={peak_cpu:.1f}% memory={peak_memory // (1024 * 1024)}MB",
        )
    return lines


class SessionReporter:
    """Writes ``<session_id>.json`` into ``directory``."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def write(self, result: SessionResult) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{result.session_id}.json"
        path.write_text(
            json.dumps(result.to_payload(), indent=2, sort_keys=True),
            "utf-8",
        )
        logger.info("Session report written: %s", path)
        return path


def _format_duration(seconds: float) -> str:
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
