"""Delegated-work backend implementations."""

from nightly_code.orchestrator.backend.base import (
    DelegatedWorkBackend,
    DelegatedWorkRequest,
    DelegatedWorkResult,
)
from nightly_code.orchestrator.backend.cli_backend import CliAgentBackend, DryRunBackend

__all__ = [
    "CliAgentBackend",
    "DelegatedWorkBackend",
    "DelegatedWorkRequest",
    "DelegatedWorkResult",
    "DryRunBackend",
]
