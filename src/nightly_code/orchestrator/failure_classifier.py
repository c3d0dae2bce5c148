"""Deterministic delegated-work failure classification for retry policy."""

from __future__ import annotations

from nightly_code.orchestrator.models import ErrorCategory, ErrorClassification, Severity

FAILURE_CLASSIFIER_VERSION = 1

USAGE_LIMIT_PATTERNS: tuple[str, ...] = (
    "claude ai usage limit",
    "usage limit reached",
    "quota exceeded",
    "monthly usage limit",
    "daily usage limit",
    "account usage limit",
    "api usage limit",
)
RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "requests per",
    "429",
    "throttled",
    "rate exceeded",
)
TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "etimedout",
)
FATAL_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "invalid api key",
    "unauthorized",
    "forbidden",
    "account suspended",
    "enospc",
    "no space left on device",
    "enomem",
    "out of memory",
    "cannot allocate memory",
)

# Evaluated in order; the first category with a matching pattern wins.
_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.USAGE_LIMIT, USAGE_LIMIT_PATTERNS),
    (ErrorCategory.RATE_LIMIT, RATE_LIMIT_PATTERNS),
    (ErrorCategory.TIMEOUT, TIMEOUT_PATTERNS),
    (ErrorCategory.FATAL, FATAL_PATTERNS),
)

_RETRYABLE: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.USAGE_LIMIT, ErrorCategory.RATE_LIMIT, ErrorCategory.TRANSIENT},
)
_SEVERITY: dict[ErrorCategory, Severity] = {
    ErrorCategory.USAGE_LIMIT: Severity.MEDIUM,
    ErrorCategory.RATE_LIMIT: Severity.LOW,
    ErrorCategory.TIMEOUT: Severity.MEDIUM,
    ErrorCategory.FATAL: Severity.HIGH,
    ErrorCategory.TRANSIENT: Severity.MEDIUM,
}


def classify_failure(
    error: BaseException | str,
    *,
    code: int | str | None = None,
) -> ErrorClassification:
    """Map a delegated-work failure onto exactly one retry category.

    Unmatched failures are transient and retryable.
    """

    haystack = _normalize_text(error=error, code=code)
    for category, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classification(category, pattern)
    return _classification(ErrorCategory.TRANSIENT, None)


def is_retryable(category: ErrorCategory) -> bool:
    return category in _RETRYABLE


def _classification(category: ErrorCategory, pattern: str | None) -> ErrorClassification:
    return ErrorClassification(
        category=category,
        retryable=is_retryable(category),
        severity=_SEVERITY[category],
        matched_pattern=pattern,
    )


def _normalize_text(*, error: BaseException | str, code: int | str | None) -> str:
    message = error if isinstance(error, str) else str(error)
    if code is None:
        return message.lower()
    return f"{message}\n{code}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
