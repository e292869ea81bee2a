"""Create and remove per-job git worktrees next to the source repository.

Each job gets `<repo-parent>/<repo-name>-worktrees/job-<id>` on the branch
`<prefix>/ticket-<task_id>/job-<id>`. Both are pure functions of the job, so a
restarted agent can find and clean up what an earlier run left behind.
"""

from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .constants import (
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_GIT_TIMEOUT_SECONDS,
    GIT_VERSION_TIMEOUT_SECONDS,
    RETRYABLE_WORKSPACE_ERROR_MARKERS,
    STALE_WORKSPACE_SETTLE_SECONDS,
    WORKSPACE_MAX_RETRIES,
    WORKSPACE_RETRY_BASE_DELAY_SECONDS,
    WORKTREES_DIR_SUFFIX,
)
from .git_utils import GitCommandError, _git_branch_exists, _git_head_sha, run_git
from .models import Job, Workspace


class WorkspaceCreationError(RuntimeError):
    """Raised when a workspace cannot be created (fatal or retries exhausted)."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class AttemptState:
    """Position of the creation loop: attempts made and retries left."""

    remaining: int
    attempt: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0


def is_retryable_workspace_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in RETRYABLE_WORKSPACE_ERROR_MARKERS)


def classify_retryability(
    state: AttemptState,
    error_message: str,
    *,
    base_delay: float = WORKSPACE_RETRY_BASE_DELAY_SECONDS,
) -> tuple[AttemptState, RetryDecision]:
    """Advance the retry state machine after a failed attempt.

    Lock/collision failures are retried with exponential backoff
    (`base_delay * 2**n`) while retries remain; anything else is fatal.
    """
    next_state = AttemptState(
        remaining=state.remaining,
        attempt=state.attempt + 1,
        last_error=error_message,
    )
    if not is_retryable_workspace_error(error_message) or state.remaining <= 0:
        return next_state, RetryDecision(retry=False)
    retries_used = state.attempt
    delay = base_delay * (2**retries_used)
    return (
        AttemptState(remaining=state.remaining - 1, attempt=next_state.attempt, last_error=error_message),
        RetryDecision(retry=True, delay_seconds=delay),
    )


class WorkspaceManager:
    """Manage the lifecycle of job worktrees."""

    def __init__(
        self,
        *,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        max_retries: int = WORKSPACE_MAX_RETRIES,
        retry_base_delay: float = WORKSPACE_RETRY_BASE_DELAY_SECONDS,
        stale_settle_seconds: float = STALE_WORKSPACE_SETTLE_SECONDS,
        git_timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.branch_prefix = branch_prefix.strip("/") or DEFAULT_BRANCH_PREFIX
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = retry_base_delay
        self.stale_settle_seconds = stale_settle_seconds
        self.git_timeout = git_timeout
        self._sleep = sleep

    @staticmethod
    def _repo_path(job: Job) -> Path:
        if not job.repo_path:
            raise ValueError(f"Job {job.id} has no repository path")
        return Path(os.path.abspath(job.repo_path))

    def path_for(self, job: Job) -> Path:
        repo = self._repo_path(job)
        return repo.parent / f"{repo.name}{WORKTREES_DIR_SUFFIX}" / f"job-{job.id}"

    def branch_name_for(self, job: Job) -> str:
        if job.task_id:
            return f"{self.branch_prefix}/ticket-{job.task_id}/job-{job.id}"
        return f"{self.branch_prefix}/job-{job.id}"

    def create(self, job: Job) -> Workspace:
        """Create the job's worktree, retrying lock/collision failures.

        Raises:
            WorkspaceCreationError: If git is unavailable, the failure is not
                retryable, or all retries are exhausted.
        """
        repo = self._repo_path(job)
        path = self.path_for(job)
        branch = self.branch_name_for(job)
        logger.info("Creating worktree for job {} at {} (branch {})", job.id, path, branch)

        try:
            run_git(repo, ["--version"], timeout=GIT_VERSION_TIMEOUT_SECONDS)
        except GitCommandError as exc:
            raise WorkspaceCreationError(f"Failed to create worktree: git is not available: {exc}") from exc

        base_commit = _git_head_sha(repo, timeout=self.git_timeout)
        state = AttemptState(remaining=self.max_retries)
        while True:
            try:
                self._create_once(job, repo, path, branch)
            except GitCommandError as exc:
                message = str(exc)
                state, decision = classify_retryability(state, message, base_delay=self.retry_base_delay)
                if not decision.retry:
                    logger.error("Failed to create worktree for job {}: {}", job.id, message)
                    raise WorkspaceCreationError(
                        f"Failed to create worktree: {message}", attempts=state.attempt
                    ) from exc
                logger.warning(
                    "Worktree creation for job {} collided (attempt {}), retrying in {}s: {}",
                    job.id,
                    state.attempt,
                    decision.delay_seconds,
                    message,
                )
                self._sleep(decision.delay_seconds)
                continue
            logger.info("Created worktree: {}", path)
            return Workspace(path=path, branch_name=branch, owner_job_id=job.id, base_commit=base_commit)

    def _create_once(self, job: Job, repo: Path, path: Path, branch: str) -> None:
        # Drops registrations whose directory is gone (crashed run, wiped disk).
        self._prune(repo)
        if path.exists():
            logger.warning("Worktree already exists at {}, removing stale worktree", path)
            self.remove(job)
            self._sleep(self.stale_settle_seconds)
        path.parent.mkdir(parents=True, exist_ok=True)
        if _git_branch_exists(repo, branch, timeout=self.git_timeout):
            # Branch left behind by an earlier run of this job; attach to it.
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), "HEAD"]
        run_git(repo, args, timeout=self.git_timeout)

    def _prune(self, repo: Path) -> None:
        try:
            run_git(repo, ["worktree", "prune"], timeout=self.git_timeout)
        except GitCommandError as exc:
            logger.debug("git worktree prune failed: {}", exc)

    def remove(self, job: Job) -> None:
        """Force-remove the job's worktree. Never raises; the branch is kept."""
        try:
            repo = self._repo_path(job)
            path = self.path_for(job)
        except ValueError as exc:
            logger.error("Cannot remove worktree: {}", exc)
            return
        logger.info("Removing worktree for job {}: {}", job.id, path)
        try:
            run_git(repo, ["worktree", "remove", str(path), "--force"], timeout=self.git_timeout)
            logger.info("Removed worktree: {}", path)
        except Exception as exc:
            logger.error("Failed to remove worktree for job {}: {}", job.id, exc)
        if path.exists():
            # Not registered with git (e.g. left by a crashed run); drop the directory.
            try:
                shutil.rmtree(path)
            except OSError as exc:
                logger.error("Failed to delete leftover worktree directory {}: {}", path, exc)
            self._prune(repo)
