"""Classify tool failures into a stable taxonomy.

Classification is an ordered list of `(predicate, category, message)` rules;
the first matching rule wins. The result drives user-facing messaging and the
queue's retry decisions.
"""

from __future__ import annotations

import errno
import re
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from ..constants import DEFAULT_TOOL_NAME


class FailureCategory(str, Enum):
    TOOL_NOT_INSTALLED = "tool_not_installed"
    NOT_AUTHENTICATED = "not_authenticated"
    OUT_OF_QUOTA = "out_of_quota"
    RATE_LIMITED = "rate_limited"
    PERMISSION_DENIED = "permission_denied"
    EXECUTION_TIMEOUT = "execution_timeout"
    NETWORK_ERROR = "network_error"
    EXECUTION_ERROR = "execution_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FailureInfo:
    category: FailureCategory
    user_message: str
    technical_details: str


class ClassifiedJobError(Exception):
    """A job failure carrying its category and whatever output was produced."""

    def __init__(
        self,
        category: FailureCategory,
        user_message: str,
        technical_details: str = "",
        partial_output: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(user_message)
        self.category = category
        self.user_message = user_message
        self.technical_details = technical_details
        self.partial_output = partial_output
        self.stderr = stderr

    @classmethod
    def from_info(cls, info: FailureInfo, *, partial_output: str = "", stderr: str = "") -> "ClassifiedJobError":
        return cls(
            info.category,
            info.user_message,
            info.technical_details,
            partial_output=partial_output,
            stderr=stderr,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "category": self.category.value,
            "user_message": self.user_message,
            "technical_details": self.technical_details,
            "partial_output": self.partial_output,
        }


_AUTH_RE = re.compile(r"not authenticated|authentication failed|please log in|not logged in", re.IGNORECASE)
_QUOTA_RE = re.compile(r"token limit exceeded|quota exceeded|insufficient credits", re.IGNORECASE)
_RATE_RE = re.compile(r"rate limit|too many requests|429", re.IGNORECASE)
_PERMISSION_RE = re.compile(r"permission denied|EACCES", re.IGNORECASE)

_NETWORK_ERRNOS = frozenset(
    code
    for code in (
        getattr(errno, "ECONNREFUSED", None),
        getattr(errno, "ETIMEDOUT", None),
        getattr(errno, "EHOSTUNREACH", None),
        getattr(errno, "ENETUNREACH", None),
        getattr(errno, "ECONNRESET", None),
    )
    if code is not None
)


@dataclass(frozen=True)
class _FailureContext:
    message: str
    diagnostic_text: str
    exit_code: Optional[int]
    errno_code: Optional[int]
    error: BaseException | str


def _error_errno(error: BaseException | str) -> Optional[int]:
    if isinstance(error, BaseException):
        code = getattr(error, "errno_code", None)
        if code is None:
            code = getattr(error, "errno", None)
        if isinstance(code, int):
            return code
    return None


def _is_not_found(ctx: _FailureContext) -> bool:
    return ctx.errno_code == errno.ENOENT or isinstance(ctx.error, FileNotFoundError)


def _is_network(ctx: _FailureContext) -> bool:
    return ctx.errno_code in _NETWORK_ERRNOS or isinstance(ctx.error, socket.gaierror)


_Rule = tuple[Callable[[_FailureContext], bool], FailureCategory, Callable[[_FailureContext, str], str]]

_RULES: list[_Rule] = [
    (
        _is_not_found,
        FailureCategory.TOOL_NOT_INSTALLED,
        lambda ctx, tool: f"{tool} is not installed or not found in PATH",
    ),
    (
        lambda ctx: bool(_AUTH_RE.search(ctx.diagnostic_text)),
        FailureCategory.NOT_AUTHENTICATED,
        lambda ctx, tool: f"{tool} is not authenticated. Please log in to the tool and retry",
    ),
    (
        lambda ctx: bool(_QUOTA_RE.search(ctx.diagnostic_text)),
        FailureCategory.OUT_OF_QUOTA,
        lambda ctx, tool: "API token limit or quota has been exceeded",
    ),
    (
        lambda ctx: bool(_RATE_RE.search(ctx.diagnostic_text)),
        FailureCategory.RATE_LIMITED,
        lambda ctx, tool: "API rate limit reached. Please wait before retrying",
    ),
    (
        lambda ctx: bool(_PERMISSION_RE.search(ctx.diagnostic_text))
        or ctx.errno_code == errno.EACCES
        or isinstance(ctx.error, PermissionError),
        FailureCategory.PERMISSION_DENIED,
        lambda ctx, tool: "Permission denied accessing project files or directories",
    ),
    (
        lambda ctx: "timed out" in ctx.message,
        FailureCategory.EXECUTION_TIMEOUT,
        lambda ctx, tool: "Job execution exceeded the maximum timeout",
    ),
    (
        _is_network,
        FailureCategory.NETWORK_ERROR,
        lambda ctx, tool: f"Network error while running {tool}",
    ),
    (
        lambda ctx: ctx.exit_code is not None and ctx.exit_code != 0,
        FailureCategory.EXECUTION_ERROR,
        lambda ctx, tool: f"{tool} execution failed with exit code {ctx.exit_code}",
    ),
]


def classify_failure(
    error: BaseException | str,
    diagnostic_text: str = "",
    exit_code: Optional[int] = None,
    *,
    tool_name: str = DEFAULT_TOOL_NAME,
) -> FailureInfo:
    """Map a raw failure to a category and a user-facing message.

    Args:
        error: The raised exception (or a bare message).
        diagnostic_text: Captured stderr.
        exit_code: Process exit code, if the process ran.
        tool_name: Display name used in messages.
    """
    message = str(error)
    ctx = _FailureContext(
        message=message,
        diagnostic_text=diagnostic_text or "",
        exit_code=exit_code,
        errno_code=_error_errno(error),
        error=error,
    )
    category = FailureCategory.UNKNOWN
    user_message = message or f"{type(error).__name__} with no message"
    for predicate, rule_category, render in _RULES:
        if predicate(ctx):
            category = rule_category
            user_message = render(ctx, tool_name)
            break

    logger.debug("Error categorized as: {}", category.value)
    return FailureInfo(
        category=category,
        user_message=user_message,
        technical_details=f"Error: {message}\nStderr: {diagnostic_text}\nExit Code: {exit_code}",
    )
