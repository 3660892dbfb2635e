from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

IssueKind = Literal["orphaned", "missing", "prunable", "locked", "stale_record", "abandoned"]


class WorkspaceError(RuntimeError):
    """Raised when workspace bookkeeping or git plumbing fails."""


class WorkspaceAllocationError(WorkspaceError):
    """Raised when a task cannot be given a workspace."""


@dataclass(slots=True)
class Workspace:
    task_id: str
    path: Path
    allocated_at: float
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "path": str(self.path),
            "branch": self.branch,
            "allocated_at": self.allocated_at,
            "allocated_at_iso": datetime.fromtimestamp(self.allocated_at, UTC)
            .replace(microsecond=0)
            .isoformat(),
        }


@dataclass(slots=True)
class ReconcileIssue:
    kind: IssueKind
    description: str
    path: Path | None = None
    branch: str | None = None
    task_id: str | None = None
    auto_fixable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "path": str(self.path) if self.path else None,
            "branch": self.branch,
            "task_id": self.task_id,
            "auto_fixable": self.auto_fixable,
        }


@dataclass(slots=True)
class ReconcileReport:
    is_git_repo: bool = True
    issues: list[ReconcileIssue] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    @property
    def repaired(self) -> bool:
        return not self.failed

    def kinds(self) -> list[str]:
        return [issue.kind for issue in self.issues]

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "is_git_repo": self.is_git_repo,
            "issues": [issue.to_dict() for issue in self.issues],
            "fixed": list(self.fixed),
            "failed": list(self.failed),
        }


class WorkspaceManager(ABC):
    """Hands each running task a directory to work in.

    ``allocations`` and ``releases`` count completed calls so callers can
    check that every allocation was paired with a release.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, Workspace] = {}
        self.allocations = 0
        self.releases = 0

    def active(self) -> list[Workspace]:
        with self._lock:
            return list(self._active.values())

    def owner_of(self, path: Path) -> str | None:
        resolved = Path(path).resolve()
        with self._lock:
            for workspace in self._active.values():
                if workspace.path.resolve() == resolved:
                    return workspace.task_id
        return None

    @abstractmethod
    def allocate(self, task_id: str) -> Workspace:
        """Reserve a workspace for ``task_id``."""

    @abstractmethod
    def release(self, task_id: str) -> None:
        """Return the workspace held by ``task_id``; unknown ids are ignored."""

    def reconcile(self, repair: bool = True) -> ReconcileReport:
        return ReconcileReport()

    def full_cleanup(self) -> ReconcileReport:
        return ReconcileReport()
