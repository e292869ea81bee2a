"""Define the job payload and the value objects produced while executing it."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobKind(str, Enum):
    """Describe what a job asks the external tool to do."""

    ARTIFACT_GENERATION = "artifact_generation"
    CODE_CHANGE = "code_change"


# Wire names used by the job queue for each kind.
_WIRE_JOB_TYPES: dict[str, JobKind] = {
    "prd_generation": JobKind.ARTIFACT_GENERATION,
    "plan_generation": JobKind.ARTIFACT_GENERATION,
    "clarifying_questions": JobKind.ARTIFACT_GENERATION,
    "artifact_generation": JobKind.ARTIFACT_GENERATION,
    "code_execution": JobKind.CODE_CHANGE,
    "code_change": JobKind.CODE_CHANGE,
}


class Job(BaseModel):
    """One unit of requested work received from the job queue."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: JobKind
    prompt: str = ""
    repo_path: Optional[str] = None
    auto_cleanup: bool = True
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    timeout_minutes: Optional[int] = Field(default=None, gt=0)

    @field_validator("id", "task_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Job":
        """Build a job from a queue payload.

        Accepts the canonical field names as well as the queue's wire names
        (`job_type`, `project.system_path`, `project.auto_cleanup_worktrees`).

        Raises:
            ValueError: If the job type is unknown or required fields are missing.
        """
        data = dict(payload)
        if "kind" not in data:
            raw_type = str(data.pop("job_type", "") or "").strip()
            kind = _WIRE_JOB_TYPES.get(raw_type)
            if kind is None:
                raise ValueError(f"Unknown job type: {raw_type or '<missing>'}")
            data["kind"] = kind
        project = data.pop("project", None)
        if isinstance(project, dict):
            if "repo_path" not in data and project.get("system_path"):
                data["repo_path"] = project["system_path"]
            if "auto_cleanup" not in data and project.get("auto_cleanup_worktrees") is not None:
                data["auto_cleanup"] = bool(project["auto_cleanup_worktrees"])
        known = set(cls.model_fields)
        return cls.model_validate({k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class Workspace:
    """An isolated, branch-backed worktree created for exactly one job."""

    path: Path
    branch_name: str
    owner_job_id: str
    base_commit: Optional[str] = None


@dataclass(frozen=True)
class ChangeSummary:
    """Snapshot of version-control activity in a workspace after the tool ran."""

    commit_count: int = 0
    last_commit_subject: Optional[str] = None
    diff_stat: Optional[str] = None
    pushed_to_remote: bool = False
    has_uncommitted_changes: bool = False

    @property
    def made_changes(self) -> bool:
        return self.commit_count > 0 or self.has_uncommitted_changes

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class JobResult:
    """Structured outcome returned to the job-queue client."""

    job_id: str
    kind: JobKind
    output: str
    execution_time_ms: int
    summary: str = ""
    branch_name: Optional[str] = None
    workspace_path: Optional[str] = None
    change_summary: Optional[ChangeSummary] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "output": self.output,
            "summary": self.summary,
            "execution_time_ms": self.execution_time_ms,
            "branch_name": self.branch_name,
            "workspace_path": self.workspace_path,
            "change_summary": self.change_summary.to_dict() if self.change_summary else None,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data
