"""Classification-driven retry and backoff for delegated work."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from nightly_code.orchestrator.errors import (
    DelegatedWorkError,
    RetryExhaustedError,
    SessionCancelledError,
)
from nightly_code.orchestrator.failure_classifier import classify_failure
from nightly_code.orchestrator.models import ErrorCategory, ErrorClassification

logger = logging.getLogger(__name__)

T = TypeVar("T")

Waiter = Callable[[float], bool]
"""Block for the given seconds; return False if a stop cut the wait short."""


@dataclass(slots=True)
class RetryPolicy:
    """Retry knobs; every constant is tunable from settings."""

    enabled: bool = True
    max_retries: int = 5
    base_delay_seconds: float = 60.0
    max_delay_seconds: float | None = None
    exponential_backoff: bool = True
    jitter: bool = True
    usage_limit_retry: bool = True
    rate_limit_retry: bool = True
    usage_limit_multiplier: float = 2.0
    rate_limit_multiplier: float = 1.5
    usage_limit_max_delay_seconds: float = 18_000.0
    default_max_delay_seconds: float = 900.0
    transient_delay_seconds: float = 5.0
    transient_max_retries: int = 2
    keepalive_interval_seconds: float = 30.0

    def multiplier_for(self, category: ErrorCategory) -> float:
        if category == ErrorCategory.USAGE_LIMIT:
            return self.usage_limit_multiplier
        return self.rate_limit_multiplier

    def max_delay_for(self, category: ErrorCategory) -> float:
        if self.max_delay_seconds is not None:
            return self.max_delay_seconds
        if category == ErrorCategory.USAGE_LIMIT:
            return self.usage_limit_max_delay_seconds
        return self.default_max_delay_seconds

    def limit_retry_enabled(self, category: ErrorCategory) -> bool:
        if category == ErrorCategory.USAGE_LIMIT:
            return self.usage_limit_retry
        if category == ErrorCategory.RATE_LIMIT:
            return self.rate_limit_retry
        return False


def compute_backoff_delay(
    *,
    attempt: int,
    category: ErrorCategory,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``attempt + 1`` for a limit-style failure."""

    delay = policy.base_delay_seconds
    if policy.exponential_backoff:
        delay = policy.base_delay_seconds * policy.multiplier_for(category) ** attempt
    if policy.jitter:
        source = rng or random.Random()  # noqa: S311
        delay *= 1.0 + source.random() * 0.3
    return min(delay, policy.max_delay_for(category))


def sleep_waiter(seconds: float) -> bool:
    """Uninterruptible waiter used when no stop signal is wired in."""

    time.sleep(max(0.0, seconds))
    return True


class RetryController:
    """Runs one delegated-work attempt function under a ``RetryPolicy``.

    FATAL and TIMEOUT failures propagate on the first occurrence. Usage and
    rate limits (when their retry flag is on) back off up to ``max_retries``
    while emitting keep-alive callbacks. Anything else gets a short fixed
    delay and a small retry cap.
    """

    def __init__(
        self,
        *,
        policy: RetryPolicy,
        waiter: Waiter = sleep_waiter,
        on_keepalive: Callable[[], None] | None = None,
        stop_requested: Callable[[], bool] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self.waiter = waiter
        self.on_keepalive = on_keepalive
        self.stop_requested = stop_requested or (lambda: False)
        self._random = rng or random.Random()  # noqa: S311

    def run(self, attempt: Callable[[], T], *, label: str = "delegated work") -> T:
        policy = self.policy
        max_retries = max(0, policy.max_retries) if policy.enabled else 0
        attempt_index = 0
        while True:
            if self.stop_requested():
                raise SessionCancelledError(f"Stop requested before {label} attempt.")
            try:
                return attempt()
            except SessionCancelledError:
                raise
            except Exception as error:  # noqa: BLE001
                classification = classify_failure(
                    error,
                    code=getattr(error, "status_code", None),
                )
                attempts = attempt_index + 1
                logger.warning(
                    "%s failed (attempt %d, %s): %s",
                    label,
                    attempts,
                    classification.category.value,
                    error,
                )
                if not policy.enabled or classification.category in {
                    ErrorCategory.FATAL,
                    ErrorCategory.TIMEOUT,
                }:
                    annotated = _annotate(error, classification, attempts)
                    if annotated is error:
                        raise
                    raise annotated from error

                if policy.limit_retry_enabled(classification.category):
                    if attempt_index >= max_retries:
                        raise RetryExhaustedError(
                            f"{_limit_name(classification.category).capitalize()} exceeded "
                            f"after {max_retries} retries: {error}",
                            classification=classification,
                            exit_code=getattr(error, "exit_code", None),
                            attempts=attempts,
                        ) from error
                    delay = compute_backoff_delay(
                        attempt=attempt_index,
                        category=classification.category,
                        policy=policy,
                        rng=self._random,
                    )
                    logger.warning(
                        "%s encountered. Waiting %ds before retry (attempt %d/%d).",
                        _limit_name(classification.category).capitalize(),
                        round(delay),
                        attempts,
                        max_retries,
                    )
                    self._wait_with_keepalive(delay, classification.category)
                else:
                    transient_cap = min(max_retries, policy.transient_max_retries)
                    if attempt_index >= transient_cap:
                        annotated = _annotate(error, classification, attempts)
                        if annotated is error:
                            raise
                        raise annotated from error
                    logger.warning(
                        "Execution failed, retrying in %ss (attempt %d/%d).",
                        policy.transient_delay_seconds,
                        attempts,
                        transient_cap,
                    )
                    self._wait(policy.transient_delay_seconds, label=label)
                attempt_index += 1

    def _wait_with_keepalive(self, delay: float, category: ErrorCategory) -> None:
        interval = max(self.policy.keepalive_interval_seconds, 0.001)
        remaining = delay
        logger.info("Session paused due to %s. Keeping session alive...", _limit_name(category))
        while remaining > 0:
            if remaining <= interval:
                self._wait(remaining, label=_limit_name(category))
                break
            logger.info(
                "Waiting for %s reset... %d minutes remaining",
                _limit_name(category),
                -(-remaining // 60),
            )
            if self.on_keepalive is not None:
                self.on_keepalive()
            self._wait(interval, label=_limit_name(category))
            remaining -= interval
        logger.info("%s wait completed. Resuming execution.", _limit_name(category).capitalize())

    def _wait(self, seconds: float, *, label: str) -> None:
        if not self.waiter(seconds) or self.stop_requested():
            raise SessionCancelledError(f"Stop requested while waiting on {label}.")


def run_with_retry(
    attempt: Callable[[], T],
    policy: RetryPolicy,
    *,
    waiter: Waiter = sleep_waiter,
    on_keepalive: Callable[[], None] | None = None,
    stop_requested: Callable[[], bool] | None = None,
) -> T:
    """Functional shortcut for a one-off ``RetryController`` run."""

    return RetryController(
        policy=policy,
        waiter=waiter,
        on_keepalive=on_keepalive,
        stop_requested=stop_requested,
    ).run(attempt)


def _annotate(
    error: Exception,
    classification: ErrorClassification,
    attempts: int,
) -> DelegatedWorkError:
    if isinstance(error, DelegatedWorkError):
        error.classification = classification
        error.attempts = attempts
        return error
    return DelegatedWorkError(str(error), classification=classification, attempts=attempts)


def _limit_name(category: ErrorCategory) -> str:
    if category == ErrorCategory.USAGE_LIMIT:
        return "usage limit"
    if category == ErrorCategory.RATE_LIMIT:
        return "rate limit"
    return category.value.lower()
