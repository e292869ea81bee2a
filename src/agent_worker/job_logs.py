"""Persist per-job transcripts under the target repository.

Files live in `<repo>/.agent-logs/` and are written independently of the
workspace, so they survive worktree removal:

- `job-<id>.log`: the transcript (streamed for artifact jobs, framed for
  code-change jobs).
- `job-<id>-stderr.log`: captured tool stderr, when non-empty.
- `job-<id>-error.log`: failure report.

Every write is best-effort; a failing write is logged and never fails the job.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import LOG_DIR_NAME
from .git_utils import _ensure_git_exclude
from .utils import _now_iso

_RULE = "═" * 59


class JobLogWriter:
    def __init__(self, project_dir: Path, job_id: str, log_dir_name: str = LOG_DIR_NAME) -> None:
        self.project_dir = Path(project_dir)
        self.job_id = str(job_id)
        self.log_dir = self.project_dir / log_dir_name
        self._lock = threading.Lock()

    @property
    def transcript_path(self) -> Path:
        return self.log_dir / f"job-{self.job_id}.log"

    @property
    def stderr_path(self) -> Path:
        return self.log_dir / f"job-{self.job_id}-stderr.log"

    @property
    def error_path(self) -> Path:
        return self.log_dir / f"job-{self.job_id}-error.log"

    def prepare(self) -> bool:
        """Create the log directory and hide it from `git status`."""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Unable to create log directory {}: {}", self.log_dir, exc)
            return False
        if (self.project_dir / ".git").exists():
            _ensure_git_exclude(self.project_dir, self.log_dir.name)
        return True

    def clear_transcript(self) -> None:
        try:
            if self.transcript_path.exists():
                logger.debug("Clearing existing log file: {}", self.transcript_path)
                self.transcript_path.unlink()
        except OSError as exc:
            logger.warning("Failed to clear existing log file: {}", exc)

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            try:
                with open(self.transcript_path, "a", encoding="utf-8") as handle:
                    handle.write(text)
            except OSError as exc:
                logger.debug("Failed to append to {}: {}", self.transcript_path, exc)

    def _write(self, path: Path, content: str) -> Optional[Path]:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save {}: {}", path, exc)
            return None
        return path

    def write_transcript(self, output: str, *, title: Optional[str], started_at: str) -> Optional[Path]:
        content = "\n".join(
            [
                "",
                _RULE,
                f"Job #{self.job_id} - {title or 'untitled'}",
                f"Started: {started_at}",
                _RULE,
                "",
                output,
                "",
                _RULE,
                f"Execution completed at: {_now_iso()}",
                _RULE,
                "",
            ]
        )
        with self._lock:
            path = self._write(self.transcript_path, content)
        if path:
            logger.info("Execution log saved to: {}", path)
        return path

    def write_stderr(self, stderr: str) -> Optional[Path]:
        if not stderr.strip():
            return None
        path = self._write(self.stderr_path, stderr)
        if path:
            logger.info("Error output saved to: {}", path)
        return path

    def write_error(self, error: BaseException, stderr: str = "") -> Optional[Path]:
        category: Any = getattr(error, "category", None)
        category_text = getattr(category, "value", category) or "unknown"
        technical = getattr(error, "technical_details", None) or repr(error)
        partial = getattr(error, "partial_output", None) or "No output captured"
        content = "\n".join(
            [
                "",
                _RULE,
                f"Job #{self.job_id} - FAILED",
                f"Error Time: {_now_iso()}",
                _RULE,
                "",
                f"Error Message: {getattr(error, 'user_message', None) or error}",
                "",
                f"Error Category: {category_text}",
                "",
                "Technical Details:",
                technical,
                "",
                "Partial Output:",
                partial,
                "",
                "Captured Stderr:",
                stderr or "No stderr captured",
                "",
                _RULE,
                "",
            ]
        )
        path = self._write(self.error_path, content)
        if path:
            logger.info("Error details saved to: {}", path)
        return path
