"""CLI entrypoint for nightly-code."""

import logging
from pathlib import Path

import rich_click as click

from nightly_code import __version__
from nightly_code.orchestrator.controllers import (
    CheckpointListCommand,
    CheckpointShowCommand,
    PlanCommand,
    RunSessionCommand,
    SessionCliController,
)
from nightly_code.orchestrator.errors import NightlyCodeError

click.rich_click.USE_MARKDOWN = True
SESSION_CONTROLLER = SessionCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Configure root logging once for CLI runs."""

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)


@click.group()
@click.version_option(version=__version__, prog_name="nightly-code")
def nightly_code() -> None:
    """Unattended coding sessions driven by an external CLI agent."""


@nightly_code.command("run")
@click.option(
    "--tasks",
    "tasks_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Task file (YAML or JSON). Defaults to nightly-tasks.yaml in the working dir.",
)
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project repository the agent works in.",
)
@click.option(
    "--max-duration",
    type=click.IntRange(min=300, max=28_800),
    default=None,
    help="Session budget in seconds (300..28800).",
)
@click.option(
    "--checkpoint-interval",
    type=click.IntRange(min=60, max=3_600),
    default=None,
    help="Seconds between periodic checkpoints.",
)
@click.option(
    "--resume",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Resume from this checkpoint file.",
)
@click.option("--dry-run", is_flag=True, help="Walk the queue without starting the agent.")
@click.option(
    "--agent-command",
    default=None,
    help=(
        "Run template for the agent CLI. Supports {model}, {prompt}, and {prompt_file}. "
        "If omitted, NIGHTLY_CODE_AGENT_COMMAND is used."
    ),
)
@click.option("--model", default=None, help="Model name passed to the agent template.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=10),
    default=None,
    help="Retries for usage/rate-limit failures.",
)
@click.option(
    "--base-delay",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Base backoff delay in seconds.",
)
@click.option(
    "--no-retry-on-limits",
    is_flag=True,
    help="Do not back off and retry on usage or rate limits.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def run_session(  # noqa: PLR0913
    tasks_path: Path | None,
    working_dir: Path | None,
    max_duration: int | None,
    checkpoint_interval: int | None,
    resume: Path | None,
    dry_run: bool,
    agent_command: str | None,
    model: str | None,
    max_retries: int | None,
    base_delay: float | None,
    no_retry_on_limits: bool,
    log_level: str,
) -> None:
    """Run one session over the task queue within the time budget."""

    configure_logging(log_level)
    try:
        result = SESSION_CONTROLLER.run_session(
            RunSessionCommand(
                tasks_path=tasks_path,
                working_dir=working_dir,
                max_duration=max_duration,
                checkpoint_interval=checkpoint_interval,
                resume=resume,
                dry_run=dry_run,
                agent_command=agent_command,
                model=model,
                max_retries=max_retries,
                base_delay=base_delay,
                retry_on_limits=False if no_retry_on_limits else None,
            ),
        )
    except (NightlyCodeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Session finished with failed tasks.")


@nightly_code.command("plan")
@click.option(
    "--tasks",
    "tasks_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Task file (YAML or JSON).",
)
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding nightly-tasks.yaml when --tasks is omitted.",
)
def plan(tasks_path: Path | None, working_dir: Path | None) -> None:
    """Validate the task file and print the resolved execution order."""

    try:
        lines = SESSION_CONTROLLER.plan(PlanCommand(tasks_path=tasks_path, working_dir=working_dir))
    except NightlyCodeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@nightly_code.command("estimate")
@click.option(
    "--tasks",
    "tasks_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Task file (YAML or JSON).",
)
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding nightly-tasks.yaml when --tasks is omitted.",
)
def estimate(tasks_path: Path | None, working_dir: Path | None) -> None:
    """Estimate session duration for the enabled tasks."""

    try:
        lines = SESSION_CONTROLLER.estimate(
            PlanCommand(tasks_path=tasks_path, working_dir=working_dir),
        )
    except (NightlyCodeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@nightly_code.group()
def checkpoints() -> None:
    """Checkpoint inspection commands."""


@checkpoints.command("list")
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory whose .nightly-code state is inspected.",
)
@click.option("--session-id", default=None, help="Only show checkpoints of this session.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Show at most this many most recent checkpoints.",
)
def checkpoints_list(working_dir: Path | None, session_id: str | None, limit: int) -> None:
    """List checkpoint files, oldest first."""

    try:
        lines = SESSION_CONTROLLER.list_checkpoints(
            CheckpointListCommand(working_dir=working_dir, session_id=session_id, limit=limit),
        )
    except (NightlyCodeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@checkpoints.command("show")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def checkpoints_show(path: Path) -> None:
    """Print one checkpoint as JSON."""

    try:
        lines = SESSION_CONTROLLER.show_checkpoint(CheckpointShowCommand(path=path))
    except NightlyCodeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    nightly_code()
