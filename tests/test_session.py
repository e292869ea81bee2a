from __future__ import annotations

import errno
import io
import os
import signal
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import pytest

from agent_worker.workers.session import (
    SessionState,
    ToolExitError,
    ToolProcessSession,
    ToolSpawnError,
    ToolTimeoutError,
    escalate_termination,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process signals")


def _tool(tmp_path: Path, body: str) -> tuple[str, ...]:
    script = tmp_path / "fake_tool.py"
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    return (sys.executable, str(script))


def _session(command: tuple[str, ...], **kwargs) -> ToolProcessSession:
    kwargs.setdefault("mirror_stderr", False)
    return ToolProcessSession(command, **kwargs)


def test_run_returns_narrative_and_forwards_lines(tmp_path: Path) -> None:
    command = _tool(
        tmp_path,
        """
        import json, sys
        prompt = sys.stdin.read()
        open("prompt.txt", "w").write(prompt)
        print("warming up")
        print(json.dumps({"type": "system", "subtype": "init", "model": "fake-1"}))
        print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Did the work"}]}}))
        print(json.dumps({"type": "result", "result": "summary", "num_turns": 1}))
        """,
    )
    lines: list[str] = []
    session = _session(command)

    result = session.run("do the thing", tmp_path, lines.append, timeout_seconds=30)

    assert result.result_text == "Did the work"
    assert result.exit_code == 0
    assert result.model == "fake-1"
    assert result.result_meta["num_turns"] == 1
    assert lines[0] == "warming up"
    assert len(lines) == 4
    assert (tmp_path / "prompt.txt").read_text() == "do the thing"
    assert session.state is SessionState.COMPLETED
    assert session.finished
    assert session.process is None


def test_result_field_used_when_tool_prints_noise(tmp_path: Path) -> None:
    command = _tool(
        tmp_path,
        """
        import sys
        sys.stdin.read()
        sys.stdout.write('not json\\n{"type":"result","result":"ok"}\\n')
        """,
    )
    result = _session(command).run("p", tmp_path, timeout_seconds=30)
    assert result.result_text == "ok"


def test_non_zero_exit_raises_with_stderr(tmp_path: Path) -> None:
    command = _tool(
        tmp_path,
        """
        import json, sys
        sys.stdin.read()
        print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}}))
        sys.stderr.write("rate limit exceeded\\n")
        sys.exit(3)
        """,
    )
    session = _session(command)
    with pytest.raises(ToolExitError) as excinfo:
        session.run("p", tmp_path, timeout_seconds=30)
    assert excinfo.value.exit_code == 3
    assert "rate limit exceeded" in excinfo.value.stderr
    assert excinfo.value.partial_output == "partial"
    assert session.state is SessionState.NON_ZERO_EXIT
    assert session.process is None


def test_stderr_is_mirrored(tmp_path: Path) -> None:
    command = _tool(
        tmp_path,
        """
        import sys
        sys.stdin.read()
        sys.stderr.write("diagnostic line\\n")
        print("{}")
        """,
    )
    sink = io.StringIO()
    session = ToolProcessSession(command, mirror_stderr=True, stderr_sink=sink)
    session.run("p", tmp_path, timeout_seconds=30)
    assert sink.getvalue() == "diagnostic line\n"
    assert session.captured_stderr == "diagnostic line\n"


def test_spawn_failure_carries_errno(tmp_path: Path) -> None:
    session = _session((str(tmp_path / "missing-tool"),))
    with pytest.raises(ToolSpawnError) as excinfo:
        session.run("p", tmp_path, timeout_seconds=5)
    assert excinfo.value.errno_code == errno.ENOENT
    assert session.state is SessionState.SPAWN_FAILED


def test_secrets_are_not_passed_to_tool(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    command = _tool(
        tmp_path,
        """
        import json, os, sys
        sys.stdin.read()
        print(json.dumps({"type": "result", "result": ",".join(sorted(os.environ))}))
        """,
    )
    result = _session(command).run("p", tmp_path, timeout_seconds=30)
    names = set(result.result_text.split(","))
    assert "GITHUB_TOKEN" not in names
    assert "AWS_REGION" not in names
    assert "PATH" in names


def test_timeout_rejects_and_terminates(tmp_path: Path) -> None:
    command = _tool(
        tmp_path,
        """
        import os, sys, time
        open("pid.txt", "w").write(str(os.getpid()))
        print("started", flush=True)
        time.sleep(30)
        """,
    )
    session = _session(command, grace_seconds=0.5)
    started = time.monotonic()
    with pytest.raises(ToolTimeoutError) as excinfo:
        session.run("p", tmp_path, timeout_seconds=0.5)
    assert time.monotonic() - started < 5
    assert "timed out" in str(excinfo.value)
    assert session.state is SessionState.TIMED_OUT
    assert session.finished
    assert session.process is None
    assert session.wait_for_exit(timeout=5)

    pid = int((tmp_path / "pid.txt").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_session_is_single_use(tmp_path: Path) -> None:
    command = _tool(tmp_path, "import sys\nsys.stdin.read()\nprint('{}')\n")
    session = _session(command)
    session.run("p", tmp_path, timeout_seconds=30)
    with pytest.raises(RuntimeError):
        session.run("p", tmp_path, timeout_seconds=30)


def test_terminate_without_process_is_noop() -> None:
    assert ToolProcessSession(("true",)).terminate() is False


def _spawn(tmp_path: Path, body: str) -> subprocess.Popen:
    script = tmp_path / "child.py"
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    process = subprocess.Popen([sys.executable, str(script)], stdout=subprocess.PIPE, text=True)
    assert process.stdout is not None
    assert process.stdout.readline().strip() == "ready"
    return process


def test_escalation_kills_process_ignoring_sigterm(tmp_path: Path) -> None:
    process = _spawn(
        tmp_path,
        """
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("ready", flush=True)
        time.sleep(30)
        """,
    )
    forced = escalate_termination(process, grace_seconds=0.3)
    assert forced is True
    assert process.returncode == -signal.SIGKILL


def test_escalation_stops_at_sigterm_when_process_exits(tmp_path: Path) -> None:
    process = _spawn(
        tmp_path,
        """
        import time
        print("ready", flush=True)
        time.sleep(30)
        """,
    )
    forced = escalate_termination(process, grace_seconds=2.0)
    assert forced is False
    assert process.returncode == -signal.SIGTERM


class _FakeProcess:
    def __init__(self, exits_on_term: bool) -> None:
        self.pid = 4242
        self.calls: list[tuple[str, object]] = []
        self.returncode: int | None = None
        self._exits_on_term = exits_on_term

    def poll(self):
        return self.returncode

    def terminate(self) -> None:
        self.calls.append(("terminate", None))
        if self._exits_on_term:
            self.returncode = -15

    def kill(self) -> None:
        self.calls.append(("kill", None))
        self.returncode = -9

    def wait(self, timeout=None):
        self.calls.append(("wait", timeout))
        if self.returncode is None:
            raise subprocess.TimeoutExpired("tool", timeout)
        return self.returncode


def test_escalation_waits_grace_period_before_sigkill() -> None:
    process = _FakeProcess(exits_on_term=False)
    assert escalate_termination(process, grace_seconds=2.0) is True
    assert process.calls[:3] == [("terminate", None), ("wait", 2.0), ("kill", None)]


def test_escalation_is_idempotent_for_exited_process() -> None:
    process = _FakeProcess(exits_on_term=True)
    assert escalate_termination(process, grace_seconds=2.0) is False
    assert escalate_termination(process, grace_seconds=2.0) is False
    assert [name for name, _ in process.calls].count("terminate") == 1
    assert ("kill", None) not in process.calls
