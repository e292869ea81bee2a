#!/usr/bin/env python3
"""Provide the `agent-worker` CLI: run a single job, check the host, clean up workspaces."""

from __future__ import annotations

import argparse
import json
import shutil
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import AgentConfig, ConfigError, load_agent_config
from .git_utils import GitCommandError, run_git
from .models import Job, JobKind
from .orchestrator import JobOrchestrator
from .queue_client import LoggingQueueClient
from .workers.failures import ClassifiedJobError
from .workspace import WorkspaceManager


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: ~/.agent-worker.yaml or $AGENT_WORKER_CONFIG)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: from config, INFO)",
    )


def _build_run_job_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-worker run-job",
        description="Agent Worker - execute one job payload",
    )
    parser.add_argument(
        "--job-file",
        required=True,
        help="Path to a JSON job payload ('-' reads stdin)",
    )
    parser.add_argument(
        "--show-progress",
        action="store_true",
        help="Echo tool progress text to stderr",
    )
    _add_common_args(parser)
    return parser


def _build_doctor_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-worker doctor",
        description="Agent Worker - host diagnostics (read-only)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit JSON output",
    )
    _add_common_args(parser)
    return parser


def _build_cleanup_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-worker cleanup",
        description="Agent Worker - force-remove a kept job workspace",
    )
    parser.add_argument("--repo", type=Path, required=True, help="Source repository path")
    parser.add_argument("--job-id", required=True, help="Job id whose worktree should be removed")
    parser.add_argument("--task-id", default=None, help="Parent task id (only used for reporting the branch)")
    _add_common_args(parser)
    return parser


def _load_config(path: Optional[Path]) -> AgentConfig:
    try:
        return load_agent_config(path)
    except ConfigError as exc:
        logger.error("{}", exc)
        raise SystemExit(2) from exc


def _read_job(job_file: str) -> Job:
    try:
        raw = sys.stdin.read() if job_file == "-" else Path(job_file).read_text(encoding="utf-8")
        payload = json.loads(raw)
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Unable to read job payload {job_file}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Job payload must be a JSON object")
    try:
        return Job.from_payload(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid job payload: {exc}") from exc


def _install_signal_handlers(orchestrator: JobOrchestrator) -> None:
    def _handle(signum: int, _frame: Any) -> None:
        logger.warning("Received signal {}, shutting down", signum)
        # Escalation blocks for the grace period; keep it off the signal handler.
        threading.Thread(target=orchestrator.shutdown, daemon=True, name="agent-shutdown").start()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle)
        except (ValueError, OSError) as exc:
            logger.debug("Unable to install handler for {}: {}", sig, exc)


def _run_job_command(job_file: str, config: AgentConfig, *, show_progress: bool = False) -> int:
    try:
        job = _read_job(job_file)
    except ValueError as exc:
        logger.error("{}", exc)
        return 2

    orchestrator = JobOrchestrator(config, queue_client=LoggingQueueClient())
    _install_signal_handlers(orchestrator)

    def _echo(text: str) -> None:
        sys.stderr.write(text)
        sys.stderr.flush()

    try:
        result = orchestrator.execute(job, _echo if show_progress else None)
    except ClassifiedJobError as exc:
        sys.stdout.write(json.dumps({"job_id": job.id, "error": exc.to_dict()}, indent=2) + "\n")
        return 1
    sys.stdout.write(json.dumps(result.to_dict(), indent=2) + "\n")
    return 0


def _doctor_command(config: AgentConfig, *, as_json: bool = False) -> int:
    errors: list[str] = []
    warnings: list[str] = []
    checks: dict[str, Any] = {}

    git_path = shutil.which("git")
    checks["git_path"] = git_path
    if git_path:
        try:
            checks["git_version"] = run_git(Path.cwd(), ["--version"], timeout=5).stdout.strip()
        except GitCommandError as exc:
            errors.append(str(exc))
    else:
        errors.append("git not found in PATH")

    tool_executable = config.tool_command[0]
    tool_path = shutil.which(tool_executable)
    checks["tool_command"] = " ".join(config.tool_command)
    checks["tool_path"] = tool_path
    if not tool_path:
        errors.append(f"{tool_executable} not found in PATH")

    checks["tool_timeout_seconds"] = config.tool_timeout_seconds
    checks["allowed_paths"] = list(config.allowed_paths)
    if not config.allowed_paths:
        warnings.append("No allowed base paths configured; any non-system path is accepted")

    exit_code = 2 if errors else (1 if warnings else 0)
    payload = {"checks": checks, "warnings": warnings, "errors": errors, "exit_code": exit_code}
    if as_json:
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return exit_code

    console = Console()
    table = Table(title="Agent Worker Doctor")
    table.add_column("Check", style="cyan")
    table.add_column("Value")
    for key, value in checks.items():
        table.add_row(key, "(missing)" if value in (None, []) else str(value))
    console.print(table)
    for item in warnings:
        console.print(f"[yellow]warning:[/yellow] {item}")
    for item in errors:
        console.print(f"[red]error:[/red] {item}")
    console.print(f"Exit code: {exit_code}")
    return exit_code


def _cleanup_command(repo: Path, job_id: str, task_id: Optional[str], config: AgentConfig) -> int:
    manager = WorkspaceManager(branch_prefix=config.branch_prefix, git_timeout=config.git_timeout_seconds)
    job = Job(id=job_id, kind=JobKind.CODE_CHANGE, repo_path=str(repo), task_id=task_id)
    path = manager.path_for(job)
    if not path.exists():
        logger.info("No worktree found at {}", path)
    manager.remove(job)
    if path.exists():
        logger.error("Worktree still present at {}", path)
        return 1
    logger.info("Branch {} was kept", manager.branch_name_for(job))
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `agent-worker` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    commands = ("run-job", "doctor", "cleanup")
    if not argv or argv[0] not in commands:
        sys.stderr.write(f"usage: agent-worker {{{','.join(commands)}}} [options]\n")
        raise SystemExit(2)

    command, rest = argv[0], argv[1:]
    if command == "run-job":
        args = _build_run_job_parser().parse_args(rest)
    elif command == "doctor":
        args = _build_doctor_parser().parse_args(rest)
    else:
        args = _build_cleanup_parser().parse_args(rest)

    _configure_logging(args.log_level or "INFO")
    config = _load_config(args.config)
    if not args.log_level and config.log_level.upper() != "INFO":
        _configure_logging(config.log_level)

    if command == "run-job":
        raise SystemExit(_run_job_command(args.job_file, config, show_progress=bool(args.show_progress)))
    if command == "doctor":
        raise SystemExit(_doctor_command(config, as_json=bool(args.json)))
    raise SystemExit(_cleanup_command(args.repo, args.job_id, args.task_id, config))


if __name__ == "__main__":
    main()
