"""Provide the git helpers used for workspaces and change summaries."""

from __future__ import annotations

import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .constants import DEFAULT_GIT_TIMEOUT_SECONDS
from .models import ChangeSummary


class GitCommandError(RuntimeError):
    """Raised when a git invocation fails, times out, or cannot be spawned."""

    def __init__(self, message: str, *, args: Sequence[str] = (), returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.git_args = tuple(args)
        self.returncode = returncode


@dataclass(frozen=True)
class GitResult:
    stdout: str
    stderr: str


def run_git(
    cwd: Path,
    args: Sequence[str],
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS,
) -> GitResult:
    """Run `git <args>` in `cwd` without a shell.

    Args:
        cwd: Working directory for the command.
        args: Arguments passed after `git`.
        timeout: Seconds before the command is killed.

    Returns:
        Captured stdout/stderr.

    Raises:
        GitCommandError: On spawn failure, timeout, or non-zero exit.
    """
    argv = ["git", *args]
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise GitCommandError(f"Git command timed out after {timeout}s: git {' '.join(args)}", args=args) from exc
    except OSError as exc:
        raise GitCommandError(f"Failed to execute git: {exc}", args=args) from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise GitCommandError(
            f"Git command failed (exit code {result.returncode}): {detail}",
            args=args,
            returncode=result.returncode,
        )
    return GitResult(stdout=result.stdout, stderr=result.stderr)


def _git_output(cwd: Path, args: Sequence[str], timeout: float) -> Optional[str]:
    try:
        return run_git(cwd, args, timeout=timeout).stdout
    except GitCommandError as exc:
        logger.debug("git {} failed: {}", " ".join(args), exc)
        return None


def _git_head_sha(project_dir: Path, timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS) -> Optional[str]:
    out = _git_output(project_dir, ["rev-parse", "HEAD"], timeout)
    return (out or "").strip() or None


def _git_branch_exists(project_dir: Path, branch: str, timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS) -> bool:
    return _git_output(project_dir, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], timeout) is not None


def _git_has_changes(project_dir: Path, timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS) -> bool:
    out = _git_output(project_dir, ["status", "--porcelain"], timeout)
    return bool(out and out.strip())


def _git_dir(project_dir: Path, timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS) -> Optional[Path]:
    out = _git_output(project_dir, ["rev-parse", "--git-common-dir"], timeout)
    if not out or not out.strip():
        return None
    path = Path(out.strip())
    return path if path.is_absolute() else (project_dir / path).resolve()


def _exclude_file_has_entry(path: Path, entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return entry.strip().rstrip("/") in lines


def _ensure_git_exclude(project_dir: Path, entry: str) -> None:
    """Add `entry` to `.git/info/exclude` so agent files never show as untracked."""
    git_dir = _git_dir(project_dir)
    if git_dir is None:
        return
    exclude_path = git_dir / "info" / "exclude"
    if _exclude_file_has_entry(exclude_path, entry):
        return
    try:
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        if contents and not contents.endswith("\n"):
            contents += "\n"
        contents += entry.rstrip("/") + "/\n"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        exclude_path.write_text(contents)
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)


def _count_commits(worktree: Path, base_commit: Optional[str], timeout: float) -> int:
    rev_range = f"{base_commit}..HEAD" if base_commit else "HEAD"
    out = _git_output(worktree, ["rev-list", "--count", rev_range], timeout)
    try:
        return int((out or "").strip() or 0)
    except ValueError:
        return 0


def _last_commit(worktree: Path, timeout: float) -> Optional[str]:
    out = _git_output(worktree, ["log", "-1", "--pretty=format:%h - %s"], timeout)
    return (out or "").strip() or None


def _was_pushed(worktree: Path, branch_name: str, timeout: float) -> bool:
    out = _git_output(worktree, ["branch", "-r", "--contains", "HEAD"], timeout)
    if not out:
        return False
    remote_branches = {line.strip() for line in out.splitlines() if line.strip()}
    return any(ref.split("/", 1)[-1] == branch_name for ref in remote_branches if "/" in ref)


def _diff_stat(worktree: Path, base_commit: Optional[str], timeout: float) -> Optional[str]:
    if not base_commit:
        return None
    out = _git_output(worktree, ["diff", "--shortstat", f"{base_commit}...HEAD"], timeout)
    return (out or "").strip() or None


def collect_change_summary(
    worktree: Path,
    branch_name: str,
    base_commit: Optional[str],
    *,
    timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS,
) -> ChangeSummary:
    """Inspect a workspace after the tool ran.

    The five read-only queries are independent and run concurrently.
    Failing queries degrade to empty values instead of raising.
    """
    with ThreadPoolExecutor(max_workers=5, thread_name_prefix="git-summary") as pool:
        commit_count = pool.submit(_count_commits, worktree, base_commit, timeout)
        dirty = pool.submit(_git_has_changes, worktree, timeout)
        last_commit = pool.submit(_last_commit, worktree, timeout)
        pushed = pool.submit(_was_pushed, worktree, branch_name, timeout)
        diff_stat = pool.submit(_diff_stat, worktree, base_commit, timeout)

    count = commit_count.result()
    return ChangeSummary(
        commit_count=count,
        last_commit_subject=last_commit.result() if count > 0 else None,
        diff_stat=diff_stat.result() if count > 0 else None,
        pushed_to_remote=pushed.result(),
        has_uncommitted_changes=dirty.result(),
    )


def format_change_summary(summary: ChangeSummary, branch_name: str, job_id: str) -> str:
    """Render a change summary as a framed text block for logs and progress."""
    rule = "═" * 59
    lines = ["", rule, f"Git Activity Summary for Job #{job_id}", rule]
    lines.append(f"Branch: {branch_name}")
    lines.append(f"New commits: {summary.commit_count}")
    if summary.commit_count > 0:
        lines.append(f"Latest commit: {summary.last_commit_subject or 'No commit info'}")
        lines.append(f"Changes: {summary.diff_stat or 'No changes'}")
        lines.append(f"Pushed to remote: {'YES' if summary.pushed_to_remote else 'NO (local only)'}")
        if summary.has_uncommitted_changes:
            lines.append("Uncommitted changes also present in the workspace")
    else:
        lines.append("WARNING: no commits were made")
        if summary.has_uncommitted_changes:
            lines.append("WARNING: uncommitted changes detected - work was done but not committed")
        else:
            lines.append("WARNING: no file changes detected - the tool may have failed or had nothing to do")
    lines.append(rule)
    lines.append("")
    return "\n".join(lines)
