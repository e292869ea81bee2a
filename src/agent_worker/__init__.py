"""Provide the public `agent_worker` package exports."""

from __future__ import annotations

from .config import AgentConfig, load_agent_config
from .models import ChangeSummary, Job, JobKind, JobResult, Workspace
from .orchestrator import JobOrchestrator

__all__ = [
    "AgentConfig",
    "ChangeSummary",
    "Job",
    "JobKind",
    "JobOrchestrator",
    "JobResult",
    "Workspace",
    "load_agent_config",
]
