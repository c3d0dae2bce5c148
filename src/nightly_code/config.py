"""Runtime configuration for nightly coding sessions."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from nightly_code.orchestrator.backend.cli_backend import DEFAULT_COMMAND_TEMPLATE
from nightly_code.orchestrator.retry import RetryPolicy

MIN_SESSION_SECONDS = 300
MAX_SESSION_SECONDS = 28_800
MIN_CHECKPOINT_INTERVAL = 60
MAX_CHECKPOINT_INTERVAL = 3_600
MAX_RETRIES_LIMIT = 10


@dataclass(slots=True)
class SessionSettings:
    """Session budget, persistence, and periodic-job settings."""

    max_duration_seconds: int = MAX_SESSION_SECONDS
    checkpoint_interval_seconds: int = 300
    resource_sample_interval_seconds: int = 30
    graceful_shutdown_seconds: int = 10
    state_dir: Path = Path(".nightly-code")

    @property
    def checkpoint_dir(self) -> Path:
        return self.state_dir / "checkpoints"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def report_dir(self) -> Path:
        return self.state_dir / "reports"


@dataclass(slots=True)
class RetrySettings:
    """Backoff tuning for usage limits, rate limits, and transient failures."""

    enabled: bool = True
    max_retries: int = 5
    base_delay_seconds: float = 60.0
    max_delay_seconds: float | None = None
    exponential_backoff: bool = True
    jitter: bool = True
    retry_on_usage_limit: bool = True
    retry_on_rate_limit: bool = True
    usage_limit_multiplier: float = 2.0
    rate_limit_multiplier: float = 1.5
    usage_limit_max_delay_seconds: float = 18_000.0
    default_max_delay_seconds: float = 900.0
    transient_delay_seconds: float = 5.0
    transient_max_retries: int = 2

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            enabled=self.enabled,
            max_retries=self.max_retries,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            exponential_backoff=self.exponential_backoff,
            jitter=self.jitter,
            usage_limit_retry=self.retry_on_usage_limit,
            rate_limit_retry=self.retry_on_rate_limit,
            usage_limit_multiplier=self.usage_limit_multiplier,
            rate_limit_multiplier=self.rate_limit_multiplier,
            usage_limit_max_delay_seconds=self.usage_limit_max_delay_seconds,
            default_max_delay_seconds=self.default_max_delay_seconds,
            transient_delay_seconds=self.transient_delay_seconds,
            transient_max_retries=self.transient_max_retries,
        )


@dataclass(slots=True)
class AgentSettings:
    """External CLI agent invocation."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    model: str = "sonnet"


@dataclass(slots=True)
class ValidationSettings:
    """Project checks run after each task."""

    test_command: str = ""
    lint_command: str = ""
    build_command: str = ""
    command_timeout_seconds: int = 300
    fail_on_no_changes: bool = False


@dataclass(slots=True)
class GitSettings:
    """Commit identity used for per-task commits."""

    author_name: str | None = None
    author_email: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    working_dir: Path = Path(".")
    session: SessionSettings = field(default_factory=SessionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    git: GitSettings = field(default_factory=GitSettings)

    @classmethod
    def from_env(cls, working_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for an 8-hour session."""

        resolved_dir = working_dir or Path(os.getenv("NIGHTLY_CODE_WORKING_DIR", "."))
        state_dir_raw = os.getenv("NIGHTLY_CODE_STATE_DIR", "").strip()
        return cls(
            working_dir=resolved_dir,
            session=SessionSettings(
                max_duration_seconds=int(
                    os.getenv("NIGHTLY_CODE_MAX_DURATION_SECONDS", str(MAX_SESSION_SECONDS)),
                ),
                checkpoint_interval_seconds=int(
                    os.getenv("NIGHTLY_CODE_CHECKPOINT_INTERVAL_SECONDS", "300"),
                ),
                resource_sample_interval_seconds=int(
                    os.getenv("NIGHTLY_CODE_RESOURCE_SAMPLE_INTERVAL_SECONDS", "30"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("NIGHTLY_CODE_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                state_dir=(
                    Path(state_dir_raw) if state_dir_raw else resolved_dir / ".nightly-code"
                ),
            ),
            retry=RetrySettings(
                enabled=_env_bool("NIGHTLY_CODE_RETRY_ENABLED", default=True),
                max_retries=int(os.getenv("NIGHTLY_CODE_MAX_RETRIES", "5")),
                base_delay_seconds=float(os.getenv("NIGHTLY_CODE_BASE_DELAY_SECONDS", "60")),
                max_delay_seconds=_env_optional_float("NIGHTLY_CODE_MAX_DELAY_SECONDS"),
                exponential_backoff=_env_bool(
                    "NIGHTLY_CODE_EXPONENTIAL_BACKOFF",
                    default=True,
                ),
                jitter=_env_bool("NIGHTLY_CODE_RETRY_JITTER", default=True),
                retry_on_usage_limit=_env_bool(
                    "NIGHTLY_CODE_RETRY_ON_USAGE_LIMIT",
                    default=True,
                ),
                retry_on_rate_limit=_env_bool(
                    "NIGHTLY_CODE_RETRY_ON_RATE_LIMIT",
                    default=True,
                ),
                usage_limit_multiplier=float(
                    os.getenv("NIGHTLY_CODE_USAGE_LIMIT_MULTIPLIER", "2.0"),
                ),
                rate_limit_multiplier=float(
                    os.getenv("NIGHTLY_CODE_RATE_LIMIT_MULTIPLIER", "1.5"),
                ),
                usage_limit_max_delay_seconds=float(
                    os.getenv("NIGHTLY_CODE_USAGE_LIMIT_MAX_DELAY_SECONDS", "18000"),
                ),
                default_max_delay_seconds=float(
                    os.getenv("NIGHTLY_CODE_DEFAULT_MAX_DELAY_SECONDS", "900"),
                ),
                transient_delay_seconds=float(
                    os.getenv("NIGHTLY_CODE_TRANSIENT_DELAY_SECONDS", "5"),
                ),
                transient_max_retries=int(os.getenv("NIGHTLY_CODE_TRANSIENT_MAX_RETRIES", "2")),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "NIGHTLY_CODE_AGENT_COMMAND",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("NIGHTLY_CODE_MODEL", "sonnet"),
            ),
            validation=ValidationSettings(
                test_command=os.getenv("NIGHTLY_CODE_TEST_COMMAND", ""),
                lint_command=os.getenv("NIGHTLY_CODE_LINT_COMMAND", ""),
                build_command=os.getenv("NIGHTLY_CODE_BUILD_COMMAND", ""),
                command_timeout_seconds=int(
                    os.getenv("NIGHTLY_CODE_VALIDATION_TIMEOUT_SECONDS", "300"),
                ),
                fail_on_no_changes=_env_bool("NIGHTLY_CODE_FAIL_ON_NO_CHANGES", default=False),
            ),
            git=GitSettings(
                author_name=os.getenv("NIGHTLY_CODE_GIT_AUTHOR_NAME") or None,
                author_email=os.getenv("NIGHTLY_CODE_GIT_AUTHOR_EMAIL") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        session = self.session
        if not MIN_SESSION_SECONDS <= session.max_duration_seconds <= MAX_SESSION_SECONDS:
            raise ValueError(
                "Session max duration must be between "
                f"{MIN_SESSION_SECONDS} and {MAX_SESSION_SECONDS} seconds.",
            )
        if not (
            MIN_CHECKPOINT_INTERVAL
            <= session.checkpoint_interval_seconds
            <= MAX_CHECKPOINT_INTERVAL
        ):
            raise ValueError(
                "Checkpoint interval must be between "
                f"{MIN_CHECKPOINT_INTERVAL} and {MAX_CHECKPOINT_INTERVAL} seconds.",
            )
        if session.resource_sample_interval_seconds <= 0:
            raise ValueError("NIGHTLY_CODE_RESOURCE_SAMPLE_INTERVAL_SECONDS must be > 0.")
        if session.graceful_shutdown_seconds < 0:
            raise ValueError("NIGHTLY_CODE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")

        retry = self.retry
        if not 0 <= retry.max_retries <= MAX_RETRIES_LIMIT:
            raise ValueError(f"Max retries must be between 0 and {MAX_RETRIES_LIMIT}.")
        if retry.base_delay_seconds <= 0:
            raise ValueError("Retry base delay must be > 0.")
        if retry.max_delay_seconds is not None and retry.max_delay_seconds <= 0:
            raise ValueError("NIGHTLY_CODE_MAX_DELAY_SECONDS must be > 0.")
        if retry.usage_limit_multiplier < 1 or retry.rate_limit_multiplier < 1:
            raise ValueError("Backoff multipliers must be >= 1.")
        if retry.transient_max_retries < 0:
            raise ValueError("NIGHTLY_CODE_TRANSIENT_MAX_RETRIES must be >= 0.")

        if not self.agent.command_template.strip():
            raise ValueError("Agent command template must not be empty.")
        if self.validation.command_timeout_seconds <= 0:
            raise ValueError("NIGHTLY_CODE_VALIDATION_TIMEOUT_SECONDS must be > 0.")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return float(raw)
