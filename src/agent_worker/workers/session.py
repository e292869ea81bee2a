"""Supervise one run of the external coding tool.

A `ToolProcessSession` is single-use: it spawns the tool without a shell,
writes the prompt to stdin, consumes the stream-json output on a reader
thread, and enforces one deadline. On expiry (or an external `terminate()`)
the process is stopped with SIGTERM, then SIGKILL after a grace period.
"""

from __future__ import annotations

import codecs
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Optional, Sequence

from loguru import logger

from ..constants import (
    DEFAULT_TOOL_COMMAND,
    DEFAULT_TOOL_NAME,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    TERMINATION_GRACE_SECONDS,
)
from ..utils import _format_duration
from .env import sanitized_env
from .stream import LineBuffer, StreamAccumulator

ProgressLineCallback = Callable[[str], None]

_READ_SIZE = 65536
_DRAIN_JOIN_SECONDS = 5.0


class SessionState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SPAWN_FAILED = "spawn_failed"
    NON_ZERO_EXIT = "non_zero_exit"


TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.TIMED_OUT,
        SessionState.SPAWN_FAILED,
        SessionState.NON_ZERO_EXIT,
    }
)


class ToolSessionError(RuntimeError):
    """Raw (unclassified) failure of a tool session."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        stderr: str = "",
        partial_output: str = "",
        errno_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.partial_output = partial_output
        self.errno_code = errno_code


class ToolSpawnError(ToolSessionError):
    pass


class ToolTimeoutError(ToolSessionError):
    pass


class ToolExitError(ToolSessionError):
    pass


@dataclass(frozen=True)
class ToolRunResult:
    result_text: str
    duration_ms: int
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    model: Optional[str] = None
    result_meta: dict[str, Any] = field(default_factory=dict)


def escalate_termination(
    process: Any,
    *,
    grace_seconds: float = TERMINATION_GRACE_SECONDS,
    reason: str = "shutdown",
) -> bool:
    """Stop `process` with SIGTERM, then SIGKILL if it outlives the grace period.

    Only the handle passed in is ever signalled. The exit state is checked
    before each signal, so overlapping calls are harmless.

    Returns:
        True if a forceful kill was sent.
    """
    if process.poll() is not None:
        return False
    logger.warning("Terminating tool process {} ({})", getattr(process, "pid", "?"), reason)
    try:
        process.terminate()
    except OSError as exc:
        logger.debug("SIGTERM failed: {}", exc)
        return False
    try:
        process.wait(timeout=grace_seconds)
        return False
    except subprocess.TimeoutExpired:
        pass
    if process.poll() is not None:
        return False
    logger.warning("Force killing tool process {} with SIGKILL", getattr(process, "pid", "?"))
    try:
        process.kill()
    except OSError as exc:
        logger.error("Error force killing process: {}", exc)
        return False
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.error("Tool process {} did not exit after SIGKILL", getattr(process, "pid", "?"))
    return True


class ToolProcessSession:
    """One supervised execution of the external tool against a directory."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_TOOL_COMMAND,
        *,
        tool_name: str = DEFAULT_TOOL_NAME,
        grace_seconds: float = TERMINATION_GRACE_SECONDS,
        mirror_stderr: bool = True,
        env: Optional[dict[str, str]] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        stderr_sink: Optional[IO[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not command:
            raise ValueError("Tool command must not be empty")
        self.command = tuple(command)
        self.tool_name = tool_name
        self.grace_seconds = grace_seconds
        self.mirror_stderr = mirror_stderr
        self._env = env
        self._popen = popen
        self._stderr_sink = stderr_sink
        self._clock = clock

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._process: Optional[Any] = None
        self._accumulator = StreamAccumulator()
        self._stderr_parts: list[str] = []
        self.started_at: Optional[float] = None
        self.timeout_deadline: Optional[float] = None
        self._escalation: Optional[threading.Thread] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def process(self) -> Optional[Any]:
        return self._process

    @property
    def captured_stdout(self) -> str:
        return self._accumulator.raw_text

    @property
    def captured_stderr(self) -> str:
        return "".join(self._stderr_parts)

    @property
    def last_result_text(self) -> str:
        return self._accumulator.final_text()

    def _finish(self, state: SessionState) -> None:
        with self._lock:
            self._state = state
            self._process = None

    def terminate(self, reason: str = "shutdown") -> bool:
        """Escalate termination against the process this session is running.

        Returns:
            True if a forceful kill was needed.
        """
        process = self._process
        if process is None:
            return False
        return escalate_termination(process, grace_seconds=self.grace_seconds, reason=reason)

    def wait_for_exit(self, timeout: Optional[float] = None) -> bool:
        """Block until a timeout escalation (if any) has finished.

        Returns:
            True if no escalation is still in progress.
        """
        thread = self._escalation
        if thread is None:
            return True
        thread.join(timeout=self.grace_seconds * 2 + 1 if timeout is None else timeout)
        return not thread.is_alive()

    def run(
        self,
        prompt: str,
        workspace_path: Path,
        on_progress_line: Optional[ProgressLineCallback] = None,
        timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> ToolRunResult:
        """Run the tool to completion and return its final text.

        Raises:
            ToolSpawnError: The process could not be started.
            ToolTimeoutError: The deadline passed before the process finished.
            ToolExitError: The process exited with a non-zero code.
        """
        with self._lock:
            if self._state is not SessionState.IDLE:
                raise RuntimeError("ToolProcessSession instances are single-use")
            self._state = SessionState.SPAWNING

        self.started_at = self._clock()
        self.timeout_deadline = self.started_at + timeout_seconds
        logger.info(
            "Starting {} in {} (timeout={}, prompt={} chars)",
            self.tool_name,
            workspace_path,
            _format_duration(timeout_seconds),
            len(prompt),
        )

        env = self._env if self._env is not None else sanitized_env()
        try:
            process = self._popen(
                list(self.command),
                cwd=str(workspace_path),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                shell=False,
            )
        except OSError as exc:
            self._finish(SessionState.SPAWN_FAILED)
            logger.error("Failed to spawn {}: {}", self.tool_name, exc)
            raise ToolSpawnError(
                f"Failed to spawn {self.command[0]}: {exc}",
                errno_code=exc.errno,
            ) from exc

        with self._lock:
            self._process = process
            self._state = SessionState.RUNNING

        stdout_thread = threading.Thread(
            target=self._consume_stdout,
            args=(process.stdout, on_progress_line),
            daemon=True,
            name="tool-stdout",
        )
        stderr_thread = threading.Thread(
            target=self._consume_stderr,
            args=(process.stderr,),
            daemon=True,
            name="tool-stderr",
        )
        stdin_thread = threading.Thread(
            target=self._write_prompt,
            args=(process.stdin, prompt),
            daemon=True,
            name="tool-stdin",
        )
        stdout_thread.start()
        stderr_thread.start()
        stdin_thread.start()

        exit_code: Optional[int] = None
        stdout_thread.join(timeout=max(0.0, self.timeout_deadline - self._clock()))
        if not stdout_thread.is_alive():
            try:
                exit_code = process.wait(timeout=max(0.0, self.timeout_deadline - self._clock()))
            except subprocess.TimeoutExpired:
                exit_code = None

        if exit_code is None:
            self._handle_timeout(process, timeout_seconds)

        stderr_thread.join(timeout=_DRAIN_JOIN_SECONDS)
        duration_ms = int((self._clock() - self.started_at) * 1000)
        stdout_text = self.captured_stdout
        stderr_text = self.captured_stderr
        logger.info(
            "{} exited with code {} after {} (stdout={} chars, stderr={} chars)",
            self.tool_name,
            exit_code,
            _format_duration(duration_ms / 1000),
            len(stdout_text),
            len(stderr_text),
        )

        if exit_code != 0:
            self._finish(SessionState.NON_ZERO_EXIT)
            logger.error("Last 1000 chars of stderr: {}", stderr_text[-1000:])
            raise ToolExitError(
                f"{self.tool_name} failed with exit code {exit_code}: {stderr_text[-1000:]}",
                exit_code=exit_code,
                stderr=stderr_text,
                partial_output=self._accumulator.final_text(),
            )

        self._finish(SessionState.COMPLETED)
        result_text = self._accumulator.final_text()
        if not result_text:
            logger.warning("{} output is empty; stream events may not have been parsed", self.tool_name)
        return ToolRunResult(
            result_text=result_text,
            duration_ms=duration_ms,
            exit_code=0,
            stdout=stdout_text,
            stderr=stderr_text,
            model=self._accumulator.model,
            result_meta=dict(self._accumulator.result_meta),
        )

    def _handle_timeout(self, process: Any, timeout_seconds: float) -> None:
        self._finish(SessionState.TIMED_OUT)
        logger.error("{} timed out after {}", self.tool_name, _format_duration(timeout_seconds))
        # The caller is released now; SIGKILL follows on this thread if needed.
        self._escalation = threading.Thread(
            target=escalate_termination,
            args=(process,),
            kwargs={"grace_seconds": self.grace_seconds, "reason": "timeout"},
            daemon=True,
            name="tool-escalation",
        )
        self._escalation.start()
        raise ToolTimeoutError(
            f"{self.tool_name} execution timed out after {timeout_seconds}s",
            stderr=self.captured_stderr,
            partial_output=self._accumulator.final_text(),
        )

    def _write_prompt(self, pipe: Any, prompt: str) -> None:
        if pipe is None:
            return
        try:
            pipe.write(prompt.encode("utf-8"))
            pipe.flush()
            logger.debug("Prompt written to {} stdin", self.tool_name)
        except (BrokenPipeError, ValueError, OSError) as exc:
            logger.warning("Failed to write prompt to {} stdin: {}", self.tool_name, exc)
        finally:
            try:
                pipe.close()
            except (BrokenPipeError, OSError):
                pass

    def _handle_line(self, line: str, on_progress_line: Optional[ProgressLineCallback]) -> None:
        self._accumulator.handle_line(line)
        if on_progress_line is None or not line.strip():
            return
        try:
            on_progress_line(line)
        except Exception as exc:
            logger.warning("Progress callback failed: {}", exc)

    def _consume_stdout(self, pipe: Any, on_progress_line: Optional[ProgressLineCallback]) -> None:
        if pipe is None:
            return
        buffer = LineBuffer()
        read = getattr(pipe, "read1", pipe.read)
        try:
            while True:
                chunk = read(_READ_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self._handle_line(line, on_progress_line)
        except (OSError, ValueError) as exc:
            logger.debug("stdout reader stopped: {}", exc)
        tail = buffer.flush()
        if tail is not None:
            self._handle_line(tail, on_progress_line)

    def _consume_stderr(self, pipe: Any) -> None:
        if pipe is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        read = getattr(pipe, "read1", pipe.read)
        sink = self._stderr_sink or sys.stderr
        try:
            while True:
                chunk = read(_READ_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
                self._stderr_parts.append(text)
                if self.mirror_stderr and text:
                    sink.write(text)
                    sink.flush()
        except (OSError, ValueError) as exc:
            logger.debug("stderr reader stopped: {}", exc)
