"""End-to-end tests for job execution against a scripted stand-in tool."""
from __future__ import annotations

import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path
from typing import Any, Optional

import pytest

from agent_worker.config import AgentConfig
from agent_worker.git_utils import _git_branch_exists, run_git
from agent_worker.models import Job, JobKind
from agent_worker.orchestrator import JobOrchestrator, resolve_tool_timeout
from agent_worker.workers.failures import ClassifiedJobError, FailureCategory
from agent_worker.workspace import WorkspaceManager

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process signals")


def _git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


_COMMITTING_TOOL = """
import json, subprocess, sys
prompt = sys.stdin.read()
print(json.dumps({"type": "system", "subtype": "init", "model": "fake-model"}))
print(json.dumps({"type": "assistant", "message": {"content": [
    {"type": "tool_use", "name": "Write", "input": {"file_path": "feature.txt"}}]}}))
with open("feature.txt", "w") as handle:
    handle.write(prompt)
subprocess.run(["git", "add", "feature.txt"], check=True, capture_output=True)
subprocess.run(["git", "commit", "-m", "Add feature"], check=True, capture_output=True)
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Implemented the feature."}]}}))
print(json.dumps({"type": "result", "subtype": "success", "result": "done", "num_turns": 2}))
"""

_FAILING_TOOL = """
import json, sys
sys.stdin.read()
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Started work"}]}}))
sys.stderr.write("Error: rate limit exceeded\\n")
sys.exit(1)
"""

_SLEEPING_TOOL = """
import sys, time
sys.stdin.read()
print("thinking", flush=True)
time.sleep(30)
"""

_NOISY_STDOUT_TOOL = """
import json, sys
sys.stdin.read()
print(json.dumps({"type": "assistant", "message": {"content": [
    {"type": "text", "text": "Reading config: permission denied handling looks fine"}]}}))
print(json.dumps({"type": "result", "subtype": "error_during_execution", "duration_ms": 14290, "total_cost_usd": 0.0429}))
sys.stderr.write("boom\\n")
sys.exit(1)
"""

_ARTIFACT_TOOL = """
import json, sys
sys.stdin.read()
print(json.dumps({"type": "text", "text": "drafting"}))
print(json.dumps({"type": "result", "result": "  # PRD\\n\\nBody\\n  "}))
"""


class RecordingQueueClient:
    def __init__(self) -> None:
        self.progress: list[str] = []
        self.events: list[tuple[str, str, Optional[dict[str, Any]]]] = []
        self.metadata: list[dict[str, Any]] = []

    def send_progress(self, job_id: str, text: str) -> None:
        self.progress.append(text)

    def send_status_event(self, job_id: str, event_type: str, message: str, metadata=None) -> None:
        self.events.append((event_type, message, metadata))

    def update_job_metadata(self, job_id: str, fields: dict[str, Any]) -> None:
        self.metadata.append(fields)

    def event_types(self) -> list[str]:
        return [event_type for event_type, _, _ in self.events]


def _config(tmp_path: Path, tool_body: str, **overrides: Any) -> AgentConfig:
    script = tmp_path / "tool.py"
    script.write_text(textwrap.dedent(tool_body), encoding="utf-8")
    values: dict[str, Any] = {
        "tool_command": (sys.executable, str(script)),
        "tool_name": "Fake Tool",
        "mirror_stderr": False,
        "workspace_retry_base_delay": 0.0,
        "stale_workspace_settle_seconds": 0.0,
    }
    values.update(overrides)
    return AgentConfig(**values)


def _job(repo: Path, **overrides: Any) -> Job:
    values: dict[str, Any] = {
        "id": "101",
        "kind": JobKind.CODE_CHANGE,
        "prompt": "Write the feature file",
        "repo_path": str(repo),
        "task_id": "9",
        "task_title": "Feature",
    }
    values.update(overrides)
    return Job(**values)


def test_code_change_job_success_cleans_up(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    client = RecordingQueueClient()
    orchestrator = JobOrchestrator(_config(tmp_path, _COMMITTING_TOOL), queue_client=client)
    job = _job(repo)
    progress: list[str] = []

    result = orchestrator.execute(job, progress.append)

    assert result.output == "Implemented the feature."
    assert result.branch_name == "agent/ticket-9/job-101"
    assert result.change_summary is not None
    assert result.change_summary.commit_count == 1
    assert result.metadata["model"] == "fake-model"
    assert result.metadata["num_turns"] == 2
    assert not Path(result.workspace_path).exists()
    assert _git_branch_exists(repo, result.branch_name)
    assert run_git(repo, ["status", "--porcelain"]).stdout.strip() == ""
    assert (repo / ".agent-logs" / "job-101.log").exists()
    assert any("Git Activity Summary" in text for text in progress)

    types = client.event_types()
    assert types[0] == "setup_started"
    assert "git_operations" in types
    assert "tool_started" in types
    assert "write_file" in types
    assert types[-2:] == ["job_completed", "progress_update"]
    percentages = [meta["percentage"] for kind, _, meta in client.events if kind == "progress_update" and meta]
    assert percentages == [5, 10, 15, 95, 100]
    assert client.metadata == [{"worktree_path": result.workspace_path}]


def test_auto_cleanup_disabled_keeps_workspace(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    orchestrator = JobOrchestrator(_config(tmp_path, _COMMITTING_TOOL))
    job = _job(repo, auto_cleanup=False)

    result = orchestrator.execute_code_change_job(job)

    manager = WorkspaceManager()
    assert result.branch_name == manager.branch_name_for(job)
    assert Path(result.workspace_path) == manager.path_for(job)
    assert manager.path_for(job).is_dir()
    assert (manager.path_for(job) / "feature.txt").exists()


def test_dangerous_prompt_rejected_before_any_resource(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    spawned: list[object] = []

    def _factory():
        spawned.append(object())
        raise AssertionError("no session should be created")

    orchestrator = JobOrchestrator(_config(tmp_path, _COMMITTING_TOOL), session_factory=_factory)
    job = _job(repo, prompt="First rm -rf / then rebuild")

    with pytest.raises(ClassifiedJobError, match="dangerous deletion command"):
        orchestrator.execute(job)

    assert spawned == []
    assert not (tmp_path / "repo-worktrees").exists()


def test_invalid_repository_path_rejected(tmp_path: Path) -> None:
    orchestrator = JobOrchestrator(_config(tmp_path, _COMMITTING_TOOL))
    with pytest.raises(ClassifiedJobError, match="does not exist"):
        orchestrator.execute(_job(tmp_path / "missing"))


def test_tool_failure_is_classified_and_cleaned_up(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    client = RecordingQueueClient()
    orchestrator = JobOrchestrator(_config(tmp_path, _FAILING_TOOL), queue_client=client)
    job = _job(repo)

    with pytest.raises(ClassifiedJobError) as excinfo:
        orchestrator.execute(job)

    error = excinfo.value
    assert error.category is FailureCategory.RATE_LIMITED
    assert error.partial_output == "Started work"
    assert "rate limit exceeded" in error.technical_details
    assert not WorkspaceManager().path_for(job).exists()
    error_log = repo / ".agent-logs" / "job-101-error.log"
    assert "Error Category: rate_limited" in error_log.read_text()
    failed = [meta for kind, _, meta in client.events if kind == "job_failed"]
    assert failed == [{"category": "rate_limited"}]


def test_timeout_is_classified_and_workspace_removed(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    config = _config(tmp_path, _SLEEPING_TOOL, tool_timeout_seconds=0.5, termination_grace_seconds=0.5)
    orchestrator = JobOrchestrator(config)
    job = _job(repo)

    with pytest.raises(ClassifiedJobError) as excinfo:
        orchestrator.execute(job)

    assert excinfo.value.category is FailureCategory.EXECUTION_TIMEOUT
    assert not WorkspaceManager().path_for(job).exists()
    assert orchestrator.active_session is None


def test_stdout_numbers_do_not_drive_classification(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    orchestrator = JobOrchestrator(_config(tmp_path, _NOISY_STDOUT_TOOL))

    with pytest.raises(ClassifiedJobError) as excinfo:
        orchestrator.execute(_job(repo))

    error = excinfo.value
    assert error.category is FailureCategory.EXECUTION_ERROR
    assert error.stderr.strip() == "boom"
    assert "14290" in error.technical_details
    assert "permission denied" in error.partial_output


def test_shutdown_terminates_running_job_and_releases_workspace(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    config = _config(tmp_path, _SLEEPING_TOOL, termination_grace_seconds=0.5)
    orchestrator = JobOrchestrator(config)
    job = _job(repo)
    requested: list[bool] = []

    def _request_shutdown() -> None:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            session = orchestrator.active_session
            if session is not None and session.process is not None:
                requested.append(orchestrator.shutdown())
                return
            time.sleep(0.05)

    stopper = threading.Thread(target=_request_shutdown)
    stopper.start()
    started = time.monotonic()
    with pytest.raises(ClassifiedJobError) as excinfo:
        orchestrator.execute(job)
    stopper.join(timeout=5)

    assert requested == [True]
    assert time.monotonic() - started < 10
    assert excinfo.value.category is FailureCategory.EXECUTION_ERROR
    assert not WorkspaceManager().path_for(job).exists()
    assert orchestrator.active_session is None
    assert orchestrator.shutdown() is False


def test_missing_tool_is_classified(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _git_init(repo)
    config = AgentConfig(tool_command=(str(tmp_path / "no-such-tool"),), mirror_stderr=False)
    with pytest.raises(ClassifiedJobError) as excinfo:
        JobOrchestrator(config).execute(_job(repo))
    assert excinfo.value.category is FailureCategory.TOOL_NOT_INSTALLED


def test_artifact_job_returns_trimmed_output(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    logs = project / ".agent-logs"
    logs.mkdir()
    (logs / "job-55.log").write_text("stale transcript")
    client = RecordingQueueClient()
    orchestrator = JobOrchestrator(_config(tmp_path, _ARTIFACT_TOOL), queue_client=client)
    job = Job(id="55", kind=JobKind.ARTIFACT_GENERATION, prompt="Write a PRD", repo_path=str(project))

    result = orchestrator.execute(job)

    assert result.output == "# PRD\n\nBody"
    assert result.branch_name is None
    assert result.metadata["working_dir"] == str(project)
    assert (logs / "job-55.log").read_text() == "drafting"
    assert client.event_types() == ["artifact_generation_started", "artifact_generation_complete"]


def test_artifact_job_falls_back_to_cwd(tmp_path: Path, monkeypatch) -> None:
    cwd = tmp_path / "cwd"
    cwd.mkdir()
    monkeypatch.chdir(cwd)
    orchestrator = JobOrchestrator(_config(tmp_path, _ARTIFACT_TOOL))
    job = Job(id="56", kind=JobKind.ARTIFACT_GENERATION, prompt="Write a PRD", repo_path=str(tmp_path / "gone"))

    result = orchestrator.execute(job)

    assert Path(result.metadata["working_dir"]) == cwd
    assert (cwd / ".agent-logs").is_dir()


def test_shutdown_without_active_session() -> None:
    assert JobOrchestrator().shutdown() is False


def test_resolve_tool_timeout() -> None:
    base = Job(id="1", kind=JobKind.CODE_CHANGE)
    assert resolve_tool_timeout(base, 7200) == 7200
    assert resolve_tool_timeout(base.model_copy(update={"timeout_minutes": 30}), 7200) == 29 * 60
    assert resolve_tool_timeout(base.model_copy(update={"timeout_minutes": 3}), 7200) == 5 * 60
