"""Durable, atomic checkpoint persistence for resumable sessions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from nightly_code.orchestrator.errors import CheckpointIOError
from nightly_code.orchestrator.models import (
    Checkpoint,
    ResourceSample,
    SessionState,
    utc_now,
)

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = ".json"


def build_checkpoint(
    state: SessionState,
    *,
    elapsed_seconds: float,
    timestamp: datetime | None = None,
) -> Checkpoint:
    """Snapshot the session state into an immutable checkpoint."""

    latest_sample = state.resource_usage[-1] if state.resource_usage else None
    return Checkpoint(
        timestamp=timestamp or utc_now(),
        session_id=state.session_id,
        current_task_id=state.current_task_id,
        completed_task_ids=state.completed_task_ids,
        failed_task_ids=state.failed_task_ids,
        elapsed_seconds=elapsed_seconds,
        resource_usage=latest_sample,
    )


class CheckpointStore:
    """Writes one JSON file per checkpoint event under ``directory``.

    File names are ``<session_id>-<epoch_ms>.json``. Each write lands in a
    temporary file in the same directory and is then renamed into place, so
    a reader never observes a partially written checkpoint. Writes are
    serialized, so the periodic job and the main loop never claim one name.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._write_lock = threading.Lock()

    def save(
        self,
        state: SessionState,
        *,
        elapsed_seconds: float,
        timestamp: datetime | None = None,
    ) -> Path:
        """Snapshot ``state`` and write it; see ``write``."""

        checkpoint = build_checkpoint(
            state,
            elapsed_seconds=elapsed_seconds,
            timestamp=timestamp,
        )
        return self.write(checkpoint)

    def write(self, checkpoint: Checkpoint) -> Path:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise CheckpointIOError(
                f"Cannot create checkpoint directory {self.directory}: {error}",
            ) from error

        payload = json.dumps(checkpoint_to_payload(checkpoint), indent=2, sort_keys=True)
        with self._write_lock:
            path = self._path_for(checkpoint)
            self._write_atomic(path, payload, session_id=checkpoint.session_id)

        logger.debug("Checkpoint written: %s", path)
        return path

    def _write_atomic(self, path: Path, payload: str, *, session_id: str) -> None:
        temp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.directory,
                prefix=f".{session_id}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_name = handle.name
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except OSError as error:
            if temp_name is not None:
                Path(temp_name).unlink(missing_ok=True)
            raise CheckpointIOError(f"Failed to write checkpoint {path}: {error}") from error

    def load(self, path: Path) -> Checkpoint:
        try:
            raw = path.read_text("utf-8")
        except OSError as error:
            raise CheckpointIOError(f"Cannot read checkpoint {path}: {error}") from error
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise CheckpointIOError(f"Checkpoint {path} is not valid JSON: {error}") from error
        return checkpoint_from_payload(payload, source=path)

    def list_checkpoints(self, session_id: str | None = None) -> list[Path]:
        """Checkpoint paths ordered oldest first."""

        if not self.directory.is_dir():
            return []
        prefix = f"{session_id}-" if session_id else ""
        paths = [
            path
            for path in self.directory.iterdir()
            if path.is_file()
            and path.suffix == CHECKPOINT_SUFFIX
            and not path.name.startswith(".")
            and path.name.startswith(prefix)
        ]
        return sorted(paths, key=_sort_key)

    def latest(self, session_id: str | None = None) -> Path | None:
        paths = self.list_checkpoints(session_id)
        return paths[-1] if paths else None

    def _path_for(self, checkpoint: Checkpoint) -> Path:
        epoch_ms = int(checkpoint.timestamp.timestamp() * 1000)
        path = self.directory / f"{checkpoint.session_id}-{epoch_ms}{CHECKPOINT_SUFFIX}"
        # Two events inside the same millisecond must not overwrite each other.
        bump = 0
        while path.exists():
            bump += 1
            path = self.directory / (
                f"{checkpoint.session_id}-{epoch_ms + bump}{CHECKPOINT_SUFFIX}"
            )
        return path


def checkpoint_to_payload(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "timestamp": checkpoint.timestamp.isoformat(),
        "session_id": checkpoint.session_id,
        "current_task_id": checkpoint.current_task_id,
        "completed_task_ids": list(checkpoint.completed_task_ids),
        "failed_task_ids": list(checkpoint.failed_task_ids),
        "elapsed_seconds": checkpoint.elapsed_seconds,
        "resource_usage": (
            checkpoint.resource_usage.to_payload() if checkpoint.resource_usage else None
        ),
    }


def checkpoint_from_payload(payload: object, *, source: Path | None = None) -> Checkpoint:
    """Rebuild a checkpoint from decoded JSON; raises ``CheckpointIOError``."""

    where = f" {source}" if source is not None else ""
    if not isinstance(payload, dict):
        raise CheckpointIOError(f"Checkpoint{where} must be a JSON object.")
    try:
        session_id = payload["session_id"]
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session_id must be a non-empty string")
        current_task_id = payload.get("current_task_id")
        if current_task_id is not None and not isinstance(current_task_id, str):
            raise ValueError("current_task_id must be a string or null")
        return Checkpoint(
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            session_id=session_id,
            current_task_id=current_task_id,
            completed_task_ids=_id_tuple(payload.get("completed_task_ids", []), "completed"),
            failed_task_ids=_id_tuple(payload.get("failed_task_ids", []), "failed"),
            elapsed_seconds=float(payload.get("elapsed_seconds", 0.0)),
            resource_usage=_sample_from_payload(payload.get("resource_usage")),
        )
    except (KeyError, TypeError, ValueError) as error:
        raise CheckpointIOError(f"Invalid checkpoint{where}: {error}") from error


def _id_tuple(values: object, label: str) -> tuple[str, ...]:
    if not isinstance(values, list) or not all(isinstance(item, str) for item in values):
        raise ValueError(f"{label}_task_ids must be a list of strings")
    return tuple(values)


def _sample_from_payload(raw: object) -> ResourceSample | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError("resource_usage must be an object or null")
    return ResourceSample(
        timestamp=datetime.fromisoformat(raw["timestamp"]),
        cpu_percent=float(raw["cpu_percent"]),
        memory_bytes=int(raw["memory_bytes"]),
    )


def _sort_key(path: Path) -> tuple[int, str]:
    stem = path.stem
    _, _, tail = stem.rpartition("-")
    try:
        return int(tail), path.name
    except ValueError:
        return 0, path.name
