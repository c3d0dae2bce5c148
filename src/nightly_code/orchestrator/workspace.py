"""Commit and rollback boundary over the project working tree."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from nightly_code.orchestrator.backend.base import DelegatedWorkResult
from nightly_code.orchestrator.errors import WorkspaceError
from nightly_code.orchestrator.models import Task

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 120


class Workspace(Protocol):
    """Side-effecting commit/rollback calls keyed by task."""

    def check(self) -> str | None:
        """Return an error message if the workspace is unusable, else None."""

    def changed_files(self) -> list[str]:
        """Paths touched since the last commit, relative to the root."""

    def commit(self, task: Task, result: DelegatedWorkResult) -> str | None:
        """Persist the task's changes; return a revision id or None."""

    def rollback(self, task: Task) -> None:
        """Discard uncommitted changes; a no-op when nothing changed."""


def commit_message(task: Task) -> str:
    """Conventional commit subject: ``<type>: <title> [task:<id>]``."""

    return f"{task.type.value}: {task.title} [task:{task.id}]"


class GitWorkspace:
    """Commits each completed task and hard-resets after a failed one."""

    def __init__(
        self,
        root: Path,
        *,
        git_executable: str = "git",
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        self.root = root
        self.git_executable = git_executable
        self.author_name = author_name
        self.author_email = author_email

    def check(self) -> str | None:
        if not self.root.is_dir():
            return f"Working directory does not exist: {self.root}"
        try:
            completed = self._git("rev-parse", "--is-inside-work-tree", check=False)
        except WorkspaceError as error:
            return str(error)
        if completed.returncode != 0 or completed.stdout.strip() != "true":
            return f"Not a git repository: {self.root}"
        return None

    def changed_files(self) -> list[str]:
        completed = self._git("status", "--porcelain", "--untracked-files=all")
        return parse_porcelain(completed.stdout)

    def commit(self, task: Task, result: DelegatedWorkResult) -> str | None:
        if not self.changed_files():
            logger.info("No changes to commit for task %s.", task.id)
            return None
        self._git("add", "-A")
        self._git("commit", "--no-verify", "-m", commit_message(task))
        revision = self._git("rev-parse", "HEAD").stdout.strip()
        logger.info(
            "Committed task %s as %s (%d files).",
            task.id,
            revision[:12],
            len(result.files_changed),
        )
        return revision

    def rollback(self, task: Task) -> None:
        has_head = self._git("rev-parse", "--verify", "HEAD", check=False).returncode == 0
        if has_head:
            self._git("reset", "--hard", "HEAD")
        else:
            # Nothing committed yet: unstage everything and leave no tracked changes.
            self._git("rm", "-r", "--cached", "--quiet", "--ignore-unmatch", ".")
        self._git("clean", "-fd")
        logger.info("Rolled back working tree after task %s.", task.id)

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.git_executable]
        if self.author_name:
            command.extend(["-c", f"user.name={self.author_name}"])
        if self.author_email:
            command.extend(["-c", f"user.email={self.author_email}"])
        command.extend(args)
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as error:
            raise WorkspaceError(f"git executable not found: {self.git_executable}") from error
        except subprocess.TimeoutExpired as error:
            raise WorkspaceError(f"git {args[0]} timed out") from error
        if check and completed.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed ({completed.returncode}): "
                f"{completed.stderr.strip() or completed.stdout.strip()}",
            )
        return completed


class DryRunWorkspace:
    """Logs what would be committed or rolled back; touches nothing."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def check(self) -> str | None:
        if not self.root.is_dir():
            return f"Working directory does not exist: {self.root}"
        return None

    def changed_files(self) -> list[str]:
        return []

    def commit(self, task: Task, result: DelegatedWorkResult) -> str | None:
        logger.info("[dry-run] Would commit: %s", commit_message(task))
        return None

    def rollback(self, task: Task) -> None:
        logger.info("[dry-run] Would roll back changes of task %s.", task.id)


def parse_porcelain(output: str) -> list[str]:
    """Extract paths from ``git status --porcelain`` (v1) output."""

    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if path and path not in paths:
            paths.append(path)
    return paths
