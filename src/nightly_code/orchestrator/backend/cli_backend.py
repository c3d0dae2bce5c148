"""Subprocess-based backend runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from nightly_code.orchestrator.backend.base import DelegatedWorkRequest, DelegatedWorkResult
from nightly_code.orchestrator.errors import (
    DelegatedWorkError,
    SessionCancelledError,
    WorkspaceError,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --model {model} --permission-mode acceptEdits --output-format text -- {prompt}"
)
TIMEOUT_EXIT_CODE = 124
_STDERR_TAIL_CHARS = 2_000
_POLL_SECONDS = 0.1


class CliAgentBackend:
    """Execute a CLI agent command template once per task attempt.

    The template supports ``{prompt}``, ``{prompt_file}`` and ``{model}``.
    stdout and stderr of every attempt are captured under
    ``<log_dir>/<task_id>/``. ``changed_files`` reports files the attempt
    touched in the working tree (usually ``GitWorkspace.changed_files``).
    """

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        changed_files: Callable[[], list[str]] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.changed_files = changed_files
        self.extra_env = dict(env or {})
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._attempts: dict[str, int] = {}

    def probe(self) -> str | None:
        try:
            _, command_head = _build_run_args(
                command_template=self.command_template,
                model="probe",
                prompt="probe",
                prompt_file=Path("prompt.txt"),
            )
        except DelegatedWorkError as error:
            return str(error)
        if shutil.which(command_head) is None and not Path(command_head).is_file():
            return f"Agent command not found: {command_head}"
        return None

    def execute(self, request: DelegatedWorkRequest) -> DelegatedWorkResult:
        attempt_no = self._attempts.get(request.task_id, 0) + 1
        self._attempts[request.task_id] = attempt_no
        task_log_dir = request.log_dir / request.task_id
        task_log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = task_log_dir / f"attempt-{attempt_no}.stdout.log"
        stderr_path = task_log_dir / f"attempt-{attempt_no}.stderr.log"
        prompt_file = task_log_dir / "prompt.md"
        prompt_file.write_text(request.prompt, "utf-8")

        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=prompt_file,
        )

        env = os.environ.copy()
        env.update(self.extra_env)
        env["NIGHTLY_CODE_TASK_ID"] = request.task_id
        env["NIGHTLY_CODE_MODEL"] = request.model

        logger.info(
            "Starting agent for task %s (attempt %d, timeout %ss).",
            request.task_id,
            attempt_no,
            request.timeout_seconds,
        )
        started = time.monotonic()
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code = self._run_subprocess_with_shutdown(
                    run_args=run_args,
                    request=request,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise DelegatedWorkError(f"Agent command not found: {command_head}") from error
        except OSError as error:
            raise DelegatedWorkError(f"Agent failed to start: {error}") from error
        duration = time.monotonic() - started

        if exit_code != 0:
            stderr_tail = _read_tail(stderr_path)
            raise DelegatedWorkError(
                f"Agent exited with code {exit_code}: {stderr_tail or '<no stderr>'}",
                exit_code=exit_code,
            )

        files_changed = self._collect_changed_files(request.task_id)
        logger.info(
            "Agent finished task %s in %.1fs (%d files changed).",
            request.task_id,
            duration,
            len(files_changed),
        )
        return DelegatedWorkResult(
            exit_code=exit_code,
            output=stdout_path.read_text("utf-8"),
            duration_seconds=duration,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            files_changed=files_changed,
        )

    def _collect_changed_files(self, task_id: str) -> list[str]:
        if self.changed_files is None:
            return []
        try:
            return self.changed_files()
        except WorkspaceError as error:
            logger.warning("Cannot list changed files for task %s: %s", task_id, error)
            return []

    def terminate(self) -> None:
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.warning("Terminating in-flight agent process (pid %s).", process.pid)
            _terminate_process(process)

    def _run_subprocess_with_shutdown(
        self,
        *,
        run_args: list[str],
        request: DelegatedWorkRequest,
        env: dict[str, str],
        stdout_handle: IO[str],
        stderr_handle: IO[str],
    ) -> int:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=request.working_dir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        with self._lock:
            self._process = process
        try:
            start_monotonic = time.monotonic()
            shutdown_deadline: float | None = None
            graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

            while True:
                returncode = process.poll()
                if returncode is not None:
                    if shutdown_deadline is not None:
                        raise SessionCancelledError(
                            f"Agent for task {request.task_id} stopped by shutdown request.",
                        )
                    return returncode

                now = time.monotonic()
                if now - start_monotonic >= request.timeout_seconds:
                    _terminate_process(process)
                    raise DelegatedWorkError(
                        f"Agent execution timed out after {request.timeout_seconds}s",
                        exit_code=TIMEOUT_EXIT_CODE,
                    )

                if request.shutdown_requested is not None and request.shutdown_requested():
                    if shutdown_deadline is None:
                        shutdown_deadline = now + graceful_seconds
                    if now >= shutdown_deadline:
                        _terminate_process(process)
                        raise SessionCancelledError(
                            f"Agent for task {request.task_id} terminated by shutdown request.",
                        )

                time.sleep(_POLL_SECONDS)
        finally:
            with self._lock:
                self._process = None


class DryRunBackend:
    """Pretends every attempt succeeds without starting a subprocess."""

    def probe(self) -> str | None:
        return None

    def execute(self, request: DelegatedWorkRequest) -> DelegatedWorkResult:
        logger.info("[dry-run] Would run agent for task %s.", request.task_id)
        placeholder = request.log_dir / request.task_id / "dry-run.log"
        return DelegatedWorkResult(
            exit_code=0,
            output=f"[dry-run] {request.task_id}",
            duration_seconds=0.0,
            stdout_path=placeholder,
            stderr_path=placeholder,
        )

    def terminate(self) -> None:
        return None


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise DelegatedWorkError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise DelegatedWorkError(
            "Agent command template must include {prompt} or {prompt_file}.",
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise DelegatedWorkError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    try:
        argv = shlex.split(rendered, posix=os.name != "nt")
    except ValueError as error:
        raise DelegatedWorkError(f"Agent command template cannot be parsed: {error}") from error
    if not argv:
        raise DelegatedWorkError("Agent command template rendered empty command.")
    return argv, argv[0]


def _read_tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
    return text.strip()[-_STDERR_TAIL_CHARS:]


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
