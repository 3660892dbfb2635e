from __future__ import annotations

import time
from pathlib import Path

from orchestra.workspaces.base import Workspace, WorkspaceAllocationError, WorkspaceManager


class SharedWorkspaceManager(WorkspaceManager):
    """Non-isolated mode: every task runs in the project directory, one at a time."""

    def __init__(self, project_root: Path) -> None:
        super().__init__()
        self.project_root = Path(project_root).resolve()

    def allocate(self, task_id: str) -> Workspace:
        with self._lock:
            if self._active:
                owner = next(iter(self._active))
                raise WorkspaceAllocationError(
                    f"Project directory is already in use by task {owner}."
                )
            workspace = Workspace(task_id=task_id, path=self.project_root, allocated_at=time.time())
            self._active[task_id] = workspace
            self.allocations += 1
            return workspace

    def release(self, task_id: str) -> None:
        with self._lock:
            if self._active.pop(task_id, None) is not None:
                self.releases += 1
