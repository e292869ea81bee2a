"""Build the minimal environment handed to the external tool."""

from __future__ import annotations

import os
import re
from typing import Mapping, Optional

from loguru import logger

ALLOWED_ENV_VARS = (
    "PATH",
    "HOME",
    "USER",
    "LANG",
    "LC_ALL",
    "TERM",
    "TMPDIR",
    "SHELL",
)

BLOCKED_ENV_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^.*_TOKEN$",
        r"^.*_SECRET$",
        r"^.*_KEY$",
        r"^.*_PASSWORD$",
        r"^AWS_",
        r"^AZURE_",
        r"^GCP_",
        r"^GOOGLE_",
    )
)


def is_blocked_env_var(name: str) -> bool:
    return any(pattern.search(name) for pattern in BLOCKED_ENV_PATTERNS)


def sanitized_env(
    environ: Optional[Mapping[str, str]] = None,
    allowed: tuple[str, ...] = ALLOWED_ENV_VARS,
) -> dict[str, str]:
    """Copy only allow-listed, non-secret variables from `environ`."""
    source = os.environ if environ is None else environ
    safe: dict[str, str] = {}
    for key in allowed:
        value = source.get(key)
        if not value or is_blocked_env_var(key):
            continue
        safe[key] = value
    # HOME is omitted from the log line to avoid leaking the username.
    logger.debug("Sanitized environment: {}", ", ".join(k for k in safe if k != "HOME"))
    return safe
