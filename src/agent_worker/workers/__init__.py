"""External tool integration (process supervision, stream protocol, failures)."""

from .failures import ClassifiedJobError, FailureCategory, FailureInfo, classify_failure
from .session import (
    SessionState,
    ToolExitError,
    ToolProcessSession,
    ToolRunResult,
    ToolSessionError,
    ToolSpawnError,
    ToolTimeoutError,
    escalate_termination,
)

__all__ = [
    "ClassifiedJobError",
    "FailureCategory",
    "FailureInfo",
    "SessionState",
    "ToolExitError",
    "ToolProcessSession",
    "ToolRunResult",
    "ToolSessionError",
    "ToolSpawnError",
    "ToolTimeoutError",
    "classify_failure",
    "escalate_termination",
]
