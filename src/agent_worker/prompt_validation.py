"""Reject destructive prompts and unsafe project paths before a job touches disk."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger

from .constants import MAX_PROMPT_LENGTH
from .utils import _preview


class PromptValidationError(ValueError):
    pass


class InvalidProjectPathError(ValueError):
    pass


DANGEROUS_PROMPT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), description)
    for pattern, description in (
        (r"rm\s+-rf\s+/", "dangerous deletion command"),
        (r"rm\s+-rf\s+~", "dangerous home directory deletion"),
        (r"/etc/passwd", "system file access"),
        (r"/etc/shadow", "password file access"),
        (r"curl.*\|\s*sh", "remote code execution pattern"),
        (r"wget.*\|\s*sh", "remote code execution pattern"),
        (r"eval\s*\(", "code evaluation"),
        (r"exec\s*\(", "code execution"),
        (r"\$\(.*rm.*-rf", "command injection with deletion"),
        (r"`.*rm.*-rf", "command injection with deletion"),
        (r"base64.*decode.*eval", "obfuscated code execution"),
        (r"\.ssh/id_rsa", "SSH key access"),
        (r"\.aws/credentials", "AWS credentials access"),
    )
)

PROTECTED_SYSTEM_PATHS = (
    "/etc",
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/System",
    "/Library",
    "/private",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
)

SENSITIVE_SUBDIRECTORIES = (
    ".ssh",
    ".aws",
    ".config/gcloud",
    ".azure",
    ".kube",
    ".docker",
    ".gnupg",
    "Library/Keychains",
    ".password-store",
    ".config/1Password",
    ".config/Bitwarden",
)

_USER_HOME_ROOTS = ("/home/", "/Users/")


def validate_prompt(prompt: Any, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """Reject empty, oversized, or destructive prompts before any work starts.

    Returns:
        The prompt unchanged.

    Raises:
        PromptValidationError: Naming the first destructive pattern found.
    """
    if not isinstance(prompt, str) or not prompt:
        raise PromptValidationError("Prompt must be a non-empty string")
    if len(prompt) > max_length:
        raise PromptValidationError(f"Prompt exceeds maximum length of {max_length} characters")
    for pattern, description in DANGEROUS_PROMPT_PATTERNS:
        if pattern.search(prompt):
            logger.error("Prompt validation failed: contains {}", description)
            raise PromptValidationError(f"Prompt contains potentially dangerous content: {description}")
    logger.debug("Prompt validated ({} chars): {}", len(prompt), _preview(prompt))
    return prompt


def _is_within(path: str, base: str) -> bool:
    return path == base or path.startswith(base.rstrip("/") + "/")


def sanitize_project_path(
    user_path: Any,
    allowed_base_paths: Sequence[str] = (),
) -> Optional[Path]:
    """Normalize `user_path` and return it, or None when it is unsafe."""
    if not isinstance(user_path, (str, os.PathLike)) or not str(user_path):
        logger.warning("Project path is empty or not a string")
        return None
    raw = os.fspath(user_path)
    if "\0" in raw:
        logger.error("Project path contains null bytes")
        return None
    resolved = os.path.abspath(raw)

    for protected in PROTECTED_SYSTEM_PATHS:
        if _is_within(resolved, protected):
            logger.error("Path points to protected system directory: {}", resolved)
            return None

    for sensitive in SENSITIVE_SUBDIRECTORIES:
        marker = os.sep + sensitive.replace("/", os.sep)
        if marker + os.sep in resolved or resolved.endswith(marker):
            logger.error("Path contains sensitive directory: {}", sensitive)
            return None

    if allowed_base_paths:
        bases = [os.path.abspath(base) for base in allowed_base_paths if base]
        if not any(_is_within(resolved, base) for base in bases):
            logger.error("Path is outside allowed base paths: {}", resolved)
            return None
    elif not resolved.startswith(_USER_HOME_ROOTS):
        logger.debug("Path is outside typical user directories: {}", resolved)

    return Path(resolved)


def validate_project_path(
    user_path: Any,
    allowed_base_paths: Sequence[str] = (),
) -> Path:
    """Strict validation used for code-change jobs.

    Raises:
        InvalidProjectPathError: If the path is unsafe or does not exist.
    """
    sanitized = sanitize_project_path(user_path, allowed_base_paths)
    if sanitized is None:
        raise InvalidProjectPathError(f"Invalid or unsafe project path: {user_path}")
    if not sanitized.exists():
        raise InvalidProjectPathError(f"Project path does not exist: {sanitized}")
    return sanitized


def validate_project_path_with_fallback(
    user_path: Any,
    allowed_base_paths: Sequence[str] = (),
    default: Optional[Path] = None,
) -> Path:
    """Lenient validation used for artifact jobs; falls back to `default` (cwd)."""
    fallback = default if default is not None else Path.cwd()
    if not user_path:
        logger.info("No project path provided, using {}", fallback)
        return fallback
    sanitized = sanitize_project_path(user_path, allowed_base_paths)
    if sanitized is not None and sanitized.exists():
        return sanitized
    logger.warning("Invalid or missing project path {}, using {}", user_path, fallback)
    return fallback
