"""Passive observers of job progress.

Monitors are told about warnings, retries, and job boundaries. They never
influence scheduling; ``notify`` guarantees a failing observer cannot break
the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from orchestra.executors.base import ActivityEvent

logger = logging.getLogger(__name__)

JobStatus = Literal["running", "stuck_warning", "retrying", "completed", "failed"]
MonitorListener = Callable[[str, str, dict[str, Any]], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ActivityMonitor:
    def start_job(self, job_id: str) -> None:
        pass

    def report_activity(self, job_id: str, event: ActivityEvent) -> None:
        pass

    def report_stuck_warning(self, job_id: str, seconds_since_activity: float) -> None:
        pass

    def report_retry(self, job_id: str, attempt: int, max_attempts: int) -> None:
        pass

    def complete_job(self, job_id: str, success: bool) -> None:
        pass


class NullMonitor(ActivityMonitor):
    """Discards every report."""


class LoggingMonitor(ActivityMonitor):
    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def start_job(self, job_id: str) -> None:
        self.log.info("job %s started", job_id)

    def report_stuck_warning(self, job_id: str, seconds_since_activity: float) -> None:
        self.log.warning("job %s quiet for %.0fs", job_id, seconds_since_activity)

    def report_retry(self, job_id: str, attempt: int, max_attempts: int) -> None:
        self.log.warning("job %s restarting (retry %d/%d)", job_id, attempt, max_attempts)

    def complete_job(self, job_id: str, success: bool) -> None:
        if success:
            self.log.info("job %s completed", job_id)
        else:
            self.log.error("job %s failed", job_id)


@dataclass(slots=True)
class AgentActivity:
    job_id: str
    started_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    current_tool: str | None = None
    thinking: bool = False
    retry_count: int = 0
    status: JobStatus = "running"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "started_at": self.started_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "current_tool": self.current_tool,
            "thinking": self.thinking,
            "retry_count": self.retry_count,
            "status": self.status,
        }


class AgentMonitor(ActivityMonitor):
    """Keeps the latest activity per job and fans reports out to listeners."""

    def __init__(self) -> None:
        self.activities: dict[str, AgentActivity] = {}
        self.total_jobs = 0
        self.completed_jobs = 0
        self._listeners: list[MonitorListener] = []

    def subscribe(self, listener: MonitorListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, name: str, job_id: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(name, job_id, payload)

    def get(self, job_id: str) -> AgentActivity | None:
        return self.activities.get(job_id)

    def start_job(self, job_id: str) -> None:
        activity = AgentActivity(job_id=job_id)
        self.activities[job_id] = activity
        self.total_jobs += 1
        self._emit("activity", job_id, activity.to_dict())

    def report_activity(self, job_id: str, event: ActivityEvent) -> None:
        activity = self.activities.get(job_id)
        if activity is None:
            return
        activity.last_activity_at = _utcnow()
        if event.kind == "thinking":
            activity.thinking = True
        elif event.kind == "text":
            activity.thinking = False
        elif event.kind == "tool_use":
            activity.thinking = False
            activity.current_tool = event.detail or "unknown"
            self._emit("tool_call", job_id, {"name": activity.current_tool})
        elif event.kind == "tool_result":
            activity.current_tool = None
        if activity.status in {"stuck_warning", "retrying"} and event.kind != "idle_tick":
            activity.status = "running"

    def report_stuck_warning(self, job_id: str, seconds_since_activity: float) -> None:
        activity = self.activities.get(job_id)
        if activity is None:
            return
        activity.status = "stuck_warning"
        self._emit("stuck_warning", job_id, {"seconds": seconds_since_activity})

    def report_retry(self, job_id: str, attempt: int, max_attempts: int) -> None:
        activity = self.activities.get(job_id)
        if activity is None:
            return
        activity.retry_count = attempt
        activity.status = "retrying"
        activity.last_activity_at = _utcnow()
        activity.current_tool = None
        activity.thinking = False
        self._emit("retry", job_id, {"attempt": attempt, "max_attempts": max_attempts})

    def complete_job(self, job_id: str, success: bool) -> None:
        activity = self.activities.get(job_id)
        if activity is None:
            return
        activity.status = "completed" if success else "failed"
        activity.current_tool = None
        activity.thinking = False
        self.completed_jobs += 1
        self._emit("job_complete", job_id, {"success": success})

    def running(self) -> list[AgentActivity]:
        return [
            activity
            for activity in self.activities.values()
            if activity.status not in {"completed", "failed"}
        ]

    def progress(self) -> dict[str, Any]:
        total = self.total_jobs
        percentage = round(self.completed_jobs / total * 100) if total else 0
        return {"completed": self.completed_jobs, "total": total, "percentage": percentage}


def notify(monitor: ActivityMonitor | None, method: str, *args: Any) -> None:
    """Deliver a report to ``monitor``; observer failures are logged, never raised."""
    if monitor is None:
        return
    try:
        getattr(monitor, method)(*args)
    except Exception:
        logger.exception("activity monitor %s.%s failed", type(monitor).__name__, method)
