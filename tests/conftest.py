import asyncio
import signal
import subprocess
from collections.abc import AsyncIterator, Iterable
from pathlib import Path

import pytest

from orchestra.executors.base import ActivityEvent, ExecutionResult, ExecutorHandle
from orchestra.monitor import ActivityMonitor
from orchestra.workspaces.base import Workspace, WorkspaceAllocationError, WorkspaceManager


class FakeHandle(ExecutorHandle):
    """In-memory worker: emits events, then exits or hangs until killed."""

    def __init__(
        self,
        events: Iterable[ActivityEvent] = (),
        *,
        exit_code: int = 0,
        output: str = "ok",
        hang: bool = False,
        duration: float = 0.0,
    ) -> None:
        self._events = list(events)
        self.exit_code = exit_code
        self.output = output
        self.hang = hang
        self.duration = duration
        self.killed = False
        self._done = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._done.is_set()

    async def events(self) -> AsyncIterator[ActivityEvent]:
        for event in self._events:
            yield event
            await asyncio.sleep(0)
        await self._done.wait()

    async def wait(self) -> ExecutionResult:
        if not self.hang:
            await asyncio.sleep(self.duration)
            self._done.set()
        await self._done.wait()
        if self.killed:
            return ExecutionResult(exit_code=-signal.SIGTERM, output="")
        return ExecutionResult(exit_code=self.exit_code, output=self.output)

    async def kill(self, sig: int = signal.SIGTERM) -> None:
        self.killed = True
        self._done.set()


class RecordingMonitor(ActivityMonitor):
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def start_job(self, job_id: str) -> None:
        self.calls.append(("start_job", job_id))

    def report_stuck_warning(self, job_id: str, seconds_since_activity: float) -> None:
        self.calls.append(("report_stuck_warning", job_id))

    def report_retry(self, job_id: str, attempt: int, max_attempts: int) -> None:
        self.calls.append(("report_retry", job_id, attempt, max_attempts))

    def complete_job(self, job_id: str, success: bool) -> None:
        self.calls.append(("complete_job", job_id, success))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class DirWorkspaces(WorkspaceManager):
    """Plain directories per task; records the allocate/release sequence."""

    def __init__(self, root: Path, *, fail_for: set[str] | None = None) -> None:
        super().__init__()
        self.root = root
        self.fail_for = fail_for or set()
        self.log: list[tuple[str, str]] = []

    def allocate(self, task_id: str) -> Workspace:
        if task_id in self.fail_for:
            raise WorkspaceAllocationError(f"no room for {task_id}")
        with self._lock:
            if task_id in self._active:
                raise WorkspaceAllocationError(f"{task_id} already allocated")
            path = self.root / task_id
            path.mkdir(parents=True, exist_ok=True)
            workspace = Workspace(task_id=task_id, path=path, allocated_at=0.0)
            self._active[task_id] = workspace
            self.allocations += 1
            self.log.append(("allocate", task_id))
            return workspace

    def release(self, task_id: str) -> None:
        with self._lock:
            if self._active.pop(task_id, None) is None:
                return
            self.releases += 1
            self.log.append(("release", task_id))


def init_git_repo(repo_path: Path) -> None:
    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo_path, check=True, text=True, capture_output=True)

    git("init")
    git("config", "user.email", "test@example.com")
    git("config", "user.name", "Test User")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    git("add", "README.md")
    git("commit", "-m", "seed")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    init_git_repo(repo)
    return repo.resolve()
