"""Sequence one job: validate, acquire a workspace, run the tool, reconcile, release."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import AgentConfig
from .constants import (
    JOB_TIMEOUT_SAFETY_MARGIN_MINUTES,
    MIN_JOB_TIMEOUT_MINUTES,
    STATUS_ARTIFACT_COMPLETE,
    STATUS_ARTIFACT_FAILED,
    STATUS_ARTIFACT_STARTED,
    STATUS_GIT_OPERATIONS,
    STATUS_JOB_COMPLETED,
    STATUS_JOB_FAILED,
    STATUS_PROGRESS_UPDATE,
    STATUS_SETUP_STARTED,
    STATUS_TOOL_STARTED,
)
from .git_utils import collect_change_summary, format_change_summary
from .job_logs import JobLogWriter
from .models import Job, JobKind, JobResult, Workspace
from .prompt_validation import (
    validate_project_path,
    validate_project_path_with_fallback,
    validate_prompt,
)
from .queue_client import JobQueueClient, QueueNotifier
from .utils import _format_duration, _now_iso
from .workers.failures import ClassifiedJobError, classify_failure
from .workers.session import ToolProcessSession, ToolRunResult, ToolSessionError
from .workers.stream import format_progress_text, parse_event_line, tool_uses
from .workspace import WorkspaceManager

ProgressCallback = Callable[[str], None]
SessionFactory = Callable[[], ToolProcessSession]

_STDOUT_TAIL_CHARS = 2000


def resolve_tool_timeout(job: Job, default_seconds: float) -> float:
    """Return the tool deadline in seconds for `job`.

    A job-level timeout stops the tool one minute before the queue's own
    deadline, with a five minute floor.
    """
    if not job.timeout_minutes:
        return float(default_seconds)
    minutes = max(job.timeout_minutes - JOB_TIMEOUT_SAFETY_MARGIN_MINUTES, MIN_JOB_TIMEOUT_MINUTES)
    return float(minutes * 60)


def _classify(exc: BaseException, session: Optional[ToolProcessSession], tool_name: str) -> ClassifiedJobError:
    if isinstance(exc, ClassifiedJobError):
        return exc
    if isinstance(exc, ToolSessionError):
        # Only stderr is diagnostic; stdout carries protocol JSON and file contents.
        info = classify_failure(exc, exc.stderr, exc.exit_code, tool_name=tool_name)
        stdout_tail = session.captured_stdout[-_STDOUT_TAIL_CHARS:] if session else ""
        if stdout_tail:
            info = replace(info, technical_details=f"{info.technical_details}\nStdout Tail: {stdout_tail}")
        return ClassifiedJobError.from_info(info, partial_output=exc.partial_output, stderr=exc.stderr)
    info = classify_failure(exc, tool_name=tool_name)
    partial = session.last_result_text if session else ""
    stderr = session.captured_stderr if session else ""
    return ClassifiedJobError.from_info(info, partial_output=partial, stderr=stderr)


class JobOrchestrator:
    """Execute jobs one at a time against the configured external tool."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        queue_client: Optional[JobQueueClient] = None,
        workspace_manager: Optional[WorkspaceManager] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.queue_client = queue_client
        self.workspaces = workspace_manager or WorkspaceManager(
            branch_prefix=self.config.branch_prefix,
            max_retries=self.config.workspace_max_retries,
            retry_base_delay=self.config.workspace_retry_base_delay,
            stale_settle_seconds=self.config.stale_workspace_settle_seconds,
            git_timeout=self.config.git_timeout_seconds,
        )
        self._session_factory = session_factory or self._new_session
        self._lock = threading.Lock()
        self._active_session: Optional[ToolProcessSession] = None

    def _new_session(self) -> ToolProcessSession:
        return ToolProcessSession(
            self.config.tool_command,
            tool_name=self.config.tool_name,
            grace_seconds=self.config.termination_grace_seconds,
            mirror_stderr=self.config.mirror_stderr,
        )

    @property
    def active_session(self) -> Optional[ToolProcessSession]:
        return self._active_session

    def shutdown(self) -> bool:
        """Escalate termination against the running session, if any.

        Returns:
            True if a session was running when shutdown was requested.
        """
        with self._lock:
            session = self._active_session
        if session is None:
            return False
        logger.warning("Shutdown requested; terminating active tool session")
        session.terminate(reason="shutdown")
        return True

    def execute(self, job: Job, on_progress: Optional[ProgressCallback] = None) -> JobResult:
        logger.info("Executing {} job #{}", job.kind.value, job.id)
        if job.kind is JobKind.CODE_CHANGE:
            return self.execute_code_change_job(job, on_progress)
        if job.kind is JobKind.ARTIFACT_GENERATION:
            return self.execute_artifact_job(job, on_progress)
        raise ValueError(f"Unknown job kind: {job.kind}")

    def _validate_prompt(self, job: Job) -> str:
        try:
            if not job.prompt.strip():
                raise ValueError("No prompt provided for job")
            return validate_prompt(job.prompt, self.config.max_prompt_length)
        except ValueError as exc:
            logger.error("Rejecting job {}: {}", job.id, exc)
            raise _classify(exc, None, self.config.tool_name) from exc

    def _progress_handler(
        self,
        notifier: QueueNotifier,
        on_progress: Optional[ProgressCallback],
        transcript: Optional[JobLogWriter] = None,
    ) -> Callable[[str], None]:
        def handle(line: str) -> None:
            event = parse_event_line(line)
            if event is None:
                text: Optional[str] = line + "\n"
            else:
                for use in tool_uses(event):
                    notifier.status(use.event_type, use.message, use.metadata)
                text = format_progress_text(event)
            if not text:
                return
            notifier.progress(text)
            if transcript is not None:
                transcript.append(text)
            if on_progress is not None:
                on_progress(text)

        return handle

    def _run_session(
        self,
        session: ToolProcessSession,
        job: Job,
        cwd: Path,
        on_line: Callable[[str], None],
    ) -> ToolRunResult:
        timeout = resolve_tool_timeout(job, self.config.tool_timeout_seconds)
        if job.timeout_minutes:
            logger.info(
                "Using job-specific timeout: {} minutes (tool stops after {})",
                job.timeout_minutes,
                _format_duration(timeout),
            )
        with self._lock:
            self._active_session = session
        try:
            return session.run(job.prompt, cwd, on_line, timeout)
        except ToolSessionError as exc:
            raise _classify(exc, session, self.config.tool_name) from exc
        finally:
            with self._lock:
                if self._active_session is session:
                    self._active_session = None

    def execute_code_change_job(self, job: Job, on_progress: Optional[ProgressCallback] = None) -> JobResult:
        """Apply a code change inside a fresh worktree.

        The worktree is released (or kept, when `auto_cleanup` is off) before
        any error propagates.

        Raises:
            ClassifiedJobError: For every failure, including rejected prompts
                and unusable repository paths.
        """
        started = time.monotonic()
        started_iso = _now_iso()
        notifier = QueueNotifier(self.queue_client, job.id)
        logger.info("Implementing code for job #{} in {}", job.id, job.repo_path)

        try:
            repo = validate_project_path(job.repo_path, self.config.allowed_paths)
        except ValueError as exc:
            logger.error("Rejecting job {}: {}", job.id, exc)
            raise _classify(exc, None, self.config.tool_name) from exc
        self._validate_prompt(job)

        logs = JobLogWriter(repo, job.id, self.config.log_dir_name)
        session = self._session_factory()
        workspace: Optional[Workspace] = None
        try:
            notifier.status(STATUS_SETUP_STARTED, "Setting up workspace...")
            notifier.status(STATUS_PROGRESS_UPDATE, "Initializing...", {"percentage": 5})
            notifier.status(STATUS_GIT_OPERATIONS, "Creating git worktree...")
            workspace = self.workspaces.create(job)
            notifier.metadata({"worktree_path": str(workspace.path)})
            notifier.status(STATUS_GIT_OPERATIONS, f"Worktree ready at {workspace.path.name}")
            notifier.status(STATUS_PROGRESS_UPDATE, "Workspace ready", {"percentage": 10})

            notifier.status(STATUS_TOOL_STARTED, f"{self.config.tool_name} is analyzing and executing the task...")
            notifier.status(STATUS_PROGRESS_UPDATE, "Tool started", {"percentage": 15})
            handler = self._progress_handler(notifier, on_progress)
            run = self._run_session(session, job, workspace.path, handler)

            summary = collect_change_summary(
                workspace.path,
                workspace.branch_name,
                workspace.base_commit,
                timeout=self.config.git_timeout_seconds,
            )
            rendered = format_change_summary(summary, workspace.branch_name, job.id)
            logger.info("{}", rendered)
            if not summary.made_changes:
                logger.warning("Job {} finished without commits or file changes", job.id)
            notifier.progress(rendered)
            if on_progress is not None:
                on_progress(rendered)

            if logs.prepare():
                logs.write_transcript(run.result_text + "\n" + rendered, title=job.task_title, started_at=started_iso)
                logs.write_stderr(run.stderr)

            execution_time_ms = int((time.monotonic() - started) * 1000)
            notifier.status(STATUS_PROGRESS_UPDATE, "Finalizing...", {"percentage": 95})
            notifier.status(STATUS_JOB_COMPLETED, "Task completed successfully")
            notifier.status(STATUS_PROGRESS_UPDATE, "Complete", {"percentage": 100})
            logger.info("Job #{} completed in {}", job.id, _format_duration(execution_time_ms / 1000))
            return JobResult(
                job_id=job.id,
                kind=job.kind,
                output=run.result_text,
                execution_time_ms=execution_time_ms,
                summary=f"Completed task: {job.task_title or job.id}",
                branch_name=workspace.branch_name,
                workspace_path=str(workspace.path),
                change_summary=summary,
                metadata=self._run_metadata(run),
            )
        except Exception as exc:
            classified = _classify(exc, session, self.config.tool_name)
            logger.error("Code change failed for job #{} [{}]: {}", job.id, classified.category.value, classified.user_message)
            if logs.prepare():
                logs.write_error(classified, session.captured_stderr)
            notifier.status(STATUS_JOB_FAILED, classified.user_message, {"category": classified.category.value})
            if classified is exc:
                raise
            raise classified from exc
        finally:
            self._release(job, workspace, session)

    def _release(self, job: Job, workspace: Optional[Workspace], session: ToolProcessSession) -> None:
        if workspace is None:
            return
        if not session.wait_for_exit():
            logger.warning("Tool process for job {} is still exiting; removing worktree anyway", job.id)
        if job.auto_cleanup:
            logger.info("Auto-cleanup enabled, removing worktree")
            self.workspaces.remove(job)
        else:
            logger.info("Auto-cleanup disabled, keeping worktree: {}", workspace.path)
            logger.info("Branch: {}", workspace.branch_name)

    def execute_artifact_job(self, job: Job, on_progress: Optional[ProgressCallback] = None) -> JobResult:
        """Generate a text artifact in the project directory (no workspace)."""
        started = time.monotonic()
        notifier = QueueNotifier(self.queue_client, job.id)
        self._validate_prompt(job)

        working_dir = validate_project_path_with_fallback(job.repo_path, self.config.allowed_paths)
        logs = JobLogWriter(working_dir, job.id, self.config.log_dir_name)
        transcript: Optional[JobLogWriter] = None
        if logs.prepare():
            logs.clear_transcript()
            transcript = logs

        notifier.status(STATUS_ARTIFACT_STARTED, f"Starting artifact generation with {self.config.tool_name}...")
        session = self._session_factory()
        handler = self._progress_handler(notifier, on_progress, transcript)
        try:
            run = self._run_session(session, job, working_dir, handler)
        except ClassifiedJobError as exc:
            logger.error("Artifact generation failed for job #{}: {}", job.id, exc.user_message)
            logs.write_error(exc, session.captured_stderr)
            notifier.status(STATUS_ARTIFACT_FAILED, exc.user_message, {"category": exc.category.value})
            raise

        execution_time_ms = int((time.monotonic() - started) * 1000)
        notifier.status(STATUS_ARTIFACT_COMPLETE, "Artifact generation completed successfully")
        logger.info("Artifact for job #{} generated in {}", job.id, _format_duration(execution_time_ms / 1000))
        metadata = self._run_metadata(run)
        metadata["working_dir"] = str(working_dir)
        return JobResult(
            job_id=job.id,
            kind=job.kind,
            output=run.result_text.strip(),
            execution_time_ms=execution_time_ms,
            summary=f"Generated artifact for: {job.task_title or job.id}",
            metadata=metadata,
        )

    @staticmethod
    def _run_metadata(run: ToolRunResult) -> dict[str, Any]:
        metadata: dict[str, Any] = {"tool_duration_ms": run.duration_ms}
        if run.model:
            metadata["model"] = run.model
        for key in ("num_turns", "total_cost_usd"):
            if key in run.result_meta:
                metadata[key] = run.result_meta[key]
        return metadata
