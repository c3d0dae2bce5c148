from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

import nightly_code
from nightly_code.orchestrator.backend.base import DelegatedWorkRequest
from nightly_code.orchestrator.backend.cli_backend import (
    TIMEOUT_EXIT_CODE,
    CliAgentBackend,
    DryRunBackend,
    _build_run_args,
)
from nightly_code.orchestrator.backend.echo_agent import main as echo_agent_main
from nightly_code.orchestrator.errors import (
    DelegatedWorkError,
    SessionCancelledError,
    WorkspaceError,
)
from nightly_code.orchestrator.retry import RetryController, RetryPolicy

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Agent Backend"),
]

SRC_DIR = str(Path(nightly_code.__file__).resolve().parents[1])


def _backend(template: str, **kwargs: object) -> CliAgentBackend:
    return CliAgentBackend(
        command_template=template,
        env={"PYTHONPATH": SRC_DIR},
        **kwargs,  # type: ignore[arg-type]
    )


def _request(tmp_path: Path, project_dir: Path, **overrides: object) -> DelegatedWorkRequest:
    options: dict[str, object] = {
        "task_id": "feature-1",
        "prompt": "# Automated Coding Task\n\nAdd a thing.",
        "working_dir": project_dir,
        "timeout_seconds": 30,
        "log_dir": tmp_path / "logs",
        "model": "sonnet",
    }
    options.update(overrides)
    return DelegatedWorkRequest(**options)  # type: ignore[arg-type]


def test_successful_attempt_captures_output_and_changes(
    echo_agent_command: str,
    tmp_path: Path,
    project_dir: Path,
) -> None:
    backend = _backend(
        f"{echo_agent_command} --touch src/new_module.py",
        changed_files=lambda: ["src/new_module.py"],
    )

    result = backend.execute(_request(tmp_path, project_dir))

    assert result.exit_code == 0
    assert "echo_agent: # Automated Coding Task" in result.output
    assert result.files_changed == ["src/new_module.py"]
    assert (project_dir / "src" / "new_module.py").is_file()
    assert result.stdout_path == tmp_path / "logs" / "feature-1" / "attempt-1.stdout.log"
    assert (tmp_path / "logs" / "feature-1" / "prompt.md").read_text("utf-8").startswith(
        "# Automated Coding Task",
    )


def test_changed_files_failure_does_not_rerun_successful_agent(
    echo_agent_command: str,
    tmp_path: Path,
    project_dir: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def _broken_status() -> list[str]:
        raise WorkspaceError("git status failed: not a git repository")

    backend = _backend(echo_agent_command, changed_files=_broken_status)
    controller = RetryController(policy=RetryPolicy(max_retries=3), waiter=lambda seconds: True)

    with caplog.at_level("WARNING"):
        result = controller.run(lambda: backend.execute(_request(tmp_path, project_dir)))

    assert result.exit_code == 0
    assert result.files_changed == []
    assert sorted(p.name for p in (tmp_path / "logs" / "feature-1").glob("*.stdout.log")) == [
        "attempt-1.stdout.log",
    ]
    assert "Cannot list changed files for task feature-1" in caplog.text


def test_each_attempt_gets_its_own_log_files(
    echo_agent_command: str,
    tmp_path: Path,
    project_dir: Path,
) -> None:
    backend = _backend(echo_agent_command)

    backend.execute(_request(tmp_path, project_dir))
    second = backend.execute(_request(tmp_path, project_dir))

    assert second.stdout_path.name == "attempt-2.stdout.log"


def test_non_zero_exit_raises_with_stderr_tail(
    echo_agent_command: str,
    tmp_path: Path,
    project_dir: Path,
) -> None:
    backend = _backend(f"{echo_agent_command} --fail-with 'usage limit reached' --exit-code 3")

    with pytest.raises(DelegatedWorkError) as exc_info:
        backend.execute(_request(tmp_path, project_dir))

    assert str(exc_info.value) == "Agent exited with code 3: usage limit reached"
    assert exc_info.value.exit_code == 3


def test_timeout_terminates_the_agent(
    echo_agent_command: str,
    tmp_path: Path,
    project_dir: Path,
) -> None:
    backend = _backend(f"{echo_agent_command} --sleep 30")

    with pytest.raises(DelegatedWorkError, match="timed out after 1s") as exc_info:
        backend.execute(_request(tmp_path, project_dir, timeout_seconds=1))

    assert exc_info.value.exit_code == TIMEOUT_EXIT_CODE


def test_shutdown_request_cancels_the_attempt(
    echo_agent_command: str,
    tmp_path: Path,
    project_dir: Path,
) -> None:
    backend = _backend(f"{echo_agent_command} --sleep 30")
    request = _request(
        tmp_path,
        project_dir,
        shutdown_requested=lambda: True,
        graceful_shutdown_seconds=0,
    )

    with pytest.raises(SessionCancelledError):
        backend.execute(request)


def test_missing_command_is_reported(tmp_path: Path, project_dir: Path) -> None:
    backend = _backend("definitely-not-an-agent-binary {prompt}")

    with pytest.raises(DelegatedWorkError, match="Agent command not found"):
        backend.execute(_request(tmp_path, project_dir))


def test_probe_reports_missing_and_present_commands(echo_agent_command: str) -> None:
    assert _backend(echo_agent_command).probe() is None
    assert _backend("definitely-not-an-agent-binary {prompt}").probe() == (
        "Agent command not found: definitely-not-an-agent-binary"
    )
    assert "must include" in str(_backend("claude --print").probe())


def test_terminate_when_idle_is_a_no_op(echo_agent_command: str) -> None:
    _backend(echo_agent_command).terminate()


def test_build_run_args_quotes_placeholders() -> None:
    argv, head = _build_run_args(
        command_template="agent --model {model} -- {prompt}",
        model="sonnet",
        prompt="fix the 'quoted' bug; rm -rf /",
        prompt_file=Path("prompt.md"),
    )

    assert head == "agent"
    assert argv == ["agent", "--model", "sonnet", "--", "fix the 'quoted' bug; rm -rf /"]


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(DelegatedWorkError, match="Unsupported command template placeholder"):
        _build_run_args(
            command_template="agent {prompt} {workspace}",
            model="m",
            prompt="p",
            prompt_file=Path("prompt.md"),
        )


def test_build_run_args_rejects_unbalanced_quotes() -> None:
    with pytest.raises(DelegatedWorkError, match="cannot be parsed"):
        _build_run_args(
            command_template="agent '{prompt}",
            model="m",
            prompt="p",
            prompt_file=Path("prompt.md"),
        )


def test_dry_run_backend_never_fails(tmp_path: Path, project_dir: Path) -> None:
    backend = DryRunBackend()

    result = backend.execute(_request(tmp_path, project_dir))

    assert backend.probe() is None
    assert result.exit_code == 0
    assert result.files_changed == []


def test_echo_agent_touches_files_relative_to_cwd(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    prompt_file = tmp_path / "prompt.md"
    prompt_file.write_text("\n\nFirst line\nSecond", "utf-8")
    monkeypatch.chdir(tmp_path)

    exit_code = echo_agent_main(["--prompt-file", str(prompt_file), "--touch", "out/a.txt"])

    assert exit_code == 0
    assert capsys.readouterr().out == "echo_agent: First line\n"
    assert (tmp_path / "out" / "a.txt").read_text("utf-8").startswith("written by echo_agent")


def test_echo_agent_failure_mode(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    prompt_file = tmp_path / "prompt.md"
    prompt_file.write_text("Task", "utf-8")

    exit_code = echo_agent_main(
        ["--prompt-file", str(prompt_file), "--fail-with", "boom", "--exit-code", "7"],
    )

    assert exit_code == 7
    assert capsys.readouterr().err == "boom\n"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX quoting")
def test_prompt_file_placeholder_is_rendered(tmp_path: Path) -> None:
    argv, _ = _build_run_args(
        command_template="agent --file {prompt_file}",
        model="m",
        prompt="ignored",
        prompt_file=tmp_path / "with space" / "prompt.md",
    )

    assert argv == ["agent", "--file", str(tmp_path / "with space" / "prompt.md")]
