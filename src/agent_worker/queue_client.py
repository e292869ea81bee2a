"""Interfaces to the job-queue client consumed by the execution engine.

The HTTP client itself lives outside this package. The engine only calls the
three notification methods below, always through `QueueNotifier`, which makes
every call best-effort: failures are logged and never reach the job.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from loguru import logger

from .utils import _preview


class JobQueueClient(Protocol):
    def send_progress(self, job_id: str, text: str) -> None:
        ...

    def send_status_event(
        self,
        job_id: str,
        event_type: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        ...

    def update_job_metadata(self, job_id: str, fields: dict[str, Any]) -> None:
        ...


class NullQueueClient:
    """Discard every notification."""

    def send_progress(self, job_id: str, text: str) -> None:
        return None

    def send_status_event(
        self,
        job_id: str,
        event_type: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        return None

    def update_job_metadata(self, job_id: str, fields: dict[str, Any]) -> None:
        return None


class LoggingQueueClient:
    """Local stand-in that records notifications in the agent log."""

    def send_progress(self, job_id: str, text: str) -> None:
        logger.debug("[job {}] progress: {}", job_id, _preview(text, 120))

    def send_status_event(
        self,
        job_id: str,
        event_type: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        if metadata:
            logger.info("[job {}] {}: {} {}", job_id, event_type, message, metadata)
        else:
            logger.info("[job {}] {}: {}", job_id, event_type, message)

    def update_job_metadata(self, job_id: str, fields: dict[str, Any]) -> None:
        logger.info("[job {}] metadata: {}", job_id, fields)


class QueueNotifier:
    """Best-effort wrapper around a `JobQueueClient` bound to one job."""

    def __init__(self, client: Optional[JobQueueClient], job_id: str) -> None:
        self.client = client
        self.job_id = job_id

    def progress(self, text: str) -> None:
        if self.client is None or not text:
            return
        try:
            self.client.send_progress(self.job_id, text)
        except Exception as exc:
            logger.debug("Failed to send progress for job {}: {}", self.job_id, exc)

    def status(self, event_type: str, message: str, metadata: Optional[dict[str, Any]] = None) -> None:
        if self.client is None:
            return
        try:
            self.client.send_status_event(self.job_id, event_type, message, metadata)
        except Exception as exc:
            logger.warning("Failed to send {} event for job {}: {}", event_type, self.job_id, exc)

    def metadata(self, fields: dict[str, Any]) -> None:
        if self.client is None:
            return
        try:
            self.client.update_job_metadata(self.job_id, fields)
        except Exception as exc:
            logger.warning("Failed to update metadata for job {}: {}", self.job_id, exc)
