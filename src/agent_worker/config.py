"""Load agent configuration from `~/.agent-worker.yaml` and `AGENT_WORKER_*` variables."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from loguru import logger

from .constants import (
    CONFIG_FILE_NAME,
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_GIT_TIMEOUT_SECONDS,
    DEFAULT_TOOL_COMMAND,
    DEFAULT_TOOL_NAME,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    ENV_PREFIX,
    LOG_DIR_NAME,
    MAX_PROMPT_LENGTH,
    STALE_WORKSPACE_SETTLE_SECONDS,
    TERMINATION_GRACE_SECONDS,
    WORKSPACE_MAX_RETRIES,
    WORKSPACE_RETRY_BASE_DELAY_SECONDS,
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AgentConfig:
    """Resolved runtime settings for the job execution engine."""

    tool_command: tuple[str, ...] = DEFAULT_TOOL_COMMAND
    tool_name: str = DEFAULT_TOOL_NAME
    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS
    termination_grace_seconds: float = TERMINATION_GRACE_SECONDS
    mirror_stderr: bool = True
    git_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS
    workspace_max_retries: int = WORKSPACE_MAX_RETRIES
    workspace_retry_base_delay: float = WORKSPACE_RETRY_BASE_DELAY_SECONDS
    stale_workspace_settle_seconds: float = STALE_WORKSPACE_SETTLE_SECONDS
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    log_dir_name: str = LOG_DIR_NAME
    allowed_paths: tuple[str, ...] = field(default_factory=tuple)
    max_prompt_length: int = MAX_PROMPT_LENGTH
    log_level: str = "INFO"


_FLOAT_KEYS = {
    "tool_timeout_seconds",
    "termination_grace_seconds",
    "git_timeout_seconds",
    "workspace_retry_base_delay",
    "stale_workspace_settle_seconds",
}
_INT_KEYS = {"workspace_max_retries", "max_prompt_length"}
_BOOL_KEYS = {"mirror_stderr"}
_STR_KEYS = {"tool_name", "branch_prefix", "log_dir_name", "log_level"}


def default_config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    override = env.get(f"{ENV_PREFIX}CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / CONFIG_FILE_NAME


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in {"", "0", "false", "no", "off"}


def _parse_positive(key: str, raw: Any, default: Any, cast: type) -> Any:
    try:
        parsed = cast(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid numeric value '{}' for {}, using default: {}", raw, key, default)
        return default
    if parsed < 0 or (key == "max_prompt_length" and parsed == 0):
        logger.warning("Invalid numeric value '{}' for {}, using default: {}", raw, key, default)
        return default
    return parsed


def _split_command(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(part) for part in value if str(part).strip())
    return tuple(shlex.split(str(value)))


def _split_paths(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(os.pathsep)
    return tuple(item.strip() for item in items if item.strip())


def _coerce(values: dict[str, Any], defaults: AgentConfig) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, raw in values.items():
        if raw is None:
            continue
        default = getattr(defaults, key)
        if key in _FLOAT_KEYS:
            out[key] = _parse_positive(key, raw, default, float)
        elif key in _INT_KEYS:
            out[key] = _parse_positive(key, raw, default, int)
        elif key in _BOOL_KEYS:
            out[key] = _parse_bool(raw)
        elif key in _STR_KEYS:
            out[key] = str(raw).strip() or default
        elif key == "tool_command":
            command = _split_command(raw)
            out[key] = command or default
        elif key == "allowed_paths":
            out[key] = _split_paths(raw)
    return out


def _load_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _env_values(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for item in fields(AgentConfig):
        raw = environ.get(ENV_PREFIX + item.name.upper())
        if raw is not None:
            values[item.name] = raw
    return values


def load_agent_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AgentConfig:
    """Resolve the agent configuration.

    Priority: environment variables, then the YAML file, then defaults.

    Args:
        path: Optional explicit config file. Defaults to `~/.agent-worker.yaml`
            (or `AGENT_WORKER_CONFIG`).
        environ: Environment mapping, defaults to `os.environ`.

    Returns:
        The resolved `AgentConfig`.

    Raises:
        ConfigError: If the config file exists but cannot be parsed.
    """
    env = os.environ if environ is None else environ
    config_path = path or default_config_path(env)
    defaults = AgentConfig()

    file_values = _load_file(config_path)
    known = {item.name for item in fields(AgentConfig)}
    unknown = sorted(set(file_values) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys in {}: {}", config_path, ", ".join(unknown))

    merged = _coerce({k: v for k, v in file_values.items() if k in known}, defaults)
    merged.update(_coerce(_env_values(env), defaults))
    return replace(defaults, **merged)
