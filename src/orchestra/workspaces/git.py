from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from orchestra.workspaces.base import (
    ReconcileIssue,
    ReconcileReport,
    Workspace,
    WorkspaceAllocationError,
    WorkspaceError,
    WorkspaceManager,
)

if TYPE_CHECKING:
    from orchestra.state.store import JsonStateStore

logger = logging.getLogger(__name__)


class GitCommandError(WorkspaceError):
    """Raised when a git command exits non-zero."""


@dataclass(slots=True)
class GitWorktree:
    path: Path
    branch: str
    commit: str = ""
    locked: bool = False
    prunable: bool = False
    bare: bool = False


def parse_worktree_list(output: str) -> list[GitWorktree]:
    """Parse ``git worktree list --porcelain`` output into records."""
    worktrees: list[GitWorktree] = []
    for block in output.strip().split("\n\n"):
        if not block.strip():
            continue
        fields: dict[str, str] = {}
        flags: set[str] = set()
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            if value:
                fields[key] = value
            flags.add(key)
        path = fields.get("worktree")
        if not path:
            continue
        branch = fields.get("branch", "")
        if branch.startswith("refs/heads/"):
            branch = branch[len("refs/heads/") :]
        if "detached" in flags:
            branch = "detached"
        worktrees.append(
            GitWorktree(
                path=Path(path),
                branch=branch or "unknown",
                commit=fields.get("HEAD", ""),
                locked="locked" in flags,
                prunable="prunable" in flags,
                bare="bare" in flags,
            )
        )
    return worktrees


def pid_alive(pid: object) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].strip("-") or "task"


def workspace_name(task_id: str) -> str:
    """Filesystem- and ref-safe name for a task id; distinct ids never collide."""
    slug = slugify(task_id)
    if slug == task_id:
        return slug
    digest = hashlib.sha1(task_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


class GitWorktreeManager(WorkspaceManager):
    """One git worktree and branch per task under ``<repo>/<root_dir>``."""

    def __init__(
        self,
        repo_root: Path,
        *,
        root_dir: str | Path = ".orchestra/worktrees",
        branch_prefix: str = "orchestra/",
        keep_branches: bool = True,
        stale_after_hours: float = 24.0,
        store: JsonStateStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.repo_root = Path(repo_root).resolve()
        root = Path(root_dir)
        self.root = (root if root.is_absolute() else self.repo_root / root).resolve()
        self.branch_prefix = branch_prefix
        self.keep_branches = keep_branches
        self.stale_after_seconds = stale_after_hours * 3600.0
        self.store = store
        self._clock = clock

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed"
            )
        return proc

    def is_git_repo(self) -> bool:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def branch_for(self, task_id: str) -> str:
        return f"{self.branch_prefix}{workspace_name(task_id)}"

    def path_for(self, task_id: str) -> Path:
        return self.root / workspace_name(task_id)

    def _branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        marker = self.root.parent / ".gitignore"
        if self.root.parent != self.repo_root and not marker.exists():
            marker.write_text("*\n", encoding="utf-8")

    def _remove_checkout(self, path: Path) -> None:
        self._run_git(["worktree", "unlock", str(path)], check=False)
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if path.exists():
            shutil.rmtree(path)

    def list_worktrees(self) -> list[GitWorktree]:
        proc = self._run_git(["worktree", "list", "--porcelain"])
        return parse_worktree_list(proc.stdout)

    def _under_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.root)
        except ValueError:
            return False
        return True

    def allocate(self, task_id: str) -> Workspace:
        with self._lock:
            if task_id in self._active:
                raise WorkspaceAllocationError(f"Task {task_id} already holds a workspace.")
            if not self.is_git_repo():
                raise WorkspaceAllocationError(
                    f"{self.repo_root} is not a git repository. Initialize git first."
                )
            path = self.path_for(task_id)
            branch = self.branch_for(task_id)
            try:
                self._ensure_root()
                if path.exists():
                    logger.info("removing leftover checkout %s before allocation", path)
                    self._remove_checkout(path)
                    self._run_git(["worktree", "prune"], check=False)
                if self._branch_exists(branch):
                    self._run_git(["worktree", "add", str(path), branch])
                else:
                    self._run_git(["worktree", "add", "-b", branch, str(path), "HEAD"])
            except (GitCommandError, OSError) as exc:
                raise WorkspaceAllocationError(
                    f"Failed to create worktree for task {task_id}: {exc}"
                ) from exc

            workspace = Workspace(
                task_id=task_id,
                path=path,
                allocated_at=self._clock(),
                branch=branch,
            )
            self._active[task_id] = workspace
            self.allocations += 1
        if self.store is not None:
            self.store.set_workspace(task_id, {**workspace.to_dict(), "pid": os.getpid()})
        logger.debug("allocated %s on %s for %s", path, branch, task_id)
        return workspace

    def release(self, task_id: str) -> None:
        with self._lock:
            workspace = self._active.pop(task_id, None)
            if workspace is None:
                return
            self.releases += 1
            try:
                self._remove_checkout(workspace.path)
            except OSError as exc:
                logger.warning("could not remove %s: %s", workspace.path, exc)
            self._run_git(["worktree", "prune"], check=False)
            if not self.keep_branches and workspace.branch:
                self._run_git(["branch", "-D", workspace.branch], check=False)
        if self.store is not None:
            self.store.drop_workspace(task_id)
        logger.debug("released workspace for %s", task_id)

    def _live_owners(self) -> dict[str, dict]:
        """Store records held by a running process and younger than the stale age.

        Another orchestrator sharing the store may be mid-run; its worktrees
        are not ours to reclaim until its process is gone or the record ages out.
        """
        if self.store is None:
            return {}
        now = self._clock()
        live: dict[str, dict] = {}
        for task_id, record in self.store.get_workspaces().items():
            if not isinstance(record, dict) or not pid_alive(record.get("pid")):
                continue
            try:
                allocated_at = float(record.get("allocated_at") or 0.0)
            except (TypeError, ValueError):
                continue
            if now - allocated_at <= self.stale_after_seconds:
                live[task_id] = record
        return live

    def _find_issues(self, worktrees: list[GitWorktree]) -> list[ReconcileIssue]:
        issues: list[ReconcileIssue] = []
        registered = {worktree.path.resolve() for worktree in worktrees}
        with self._lock:
            active = dict(self._active)
        live = self._live_owners()
        owned = {workspace.path.resolve() for workspace in active.values()}
        owned.update(
            Path(record["path"]).resolve() for record in live.values() if record.get("path")
        )

        for worktree in worktrees:
            if worktree.path.resolve() == self.repo_root or worktree.bare:
                continue
            if worktree.locked:
                issues.append(
                    ReconcileIssue(
                        kind="locked",
                        description=f"Worktree is locked: {worktree.branch}",
                        path=worktree.path,
                        branch=worktree.branch,
                    )
                )
            if worktree.prunable:
                issues.append(
                    ReconcileIssue(
                        kind="prunable",
                        description=f"Worktree directory is gone: {worktree.branch}",
                        path=worktree.path,
                        branch=worktree.branch,
                    )
                )
            elif self._under_root(worktree.path) and worktree.path.resolve() not in owned:
                issues.append(
                    ReconcileIssue(
                        kind="orphaned",
                        description=f"Worktree has no owner: {worktree.path}",
                        path=worktree.path,
                        branch=worktree.branch,
                    )
                )

        if self.root.exists():
            for entry in sorted(self.root.iterdir()):
                resolved = entry.resolve()
                if resolved in registered or resolved in owned:
                    continue
                issues.append(
                    ReconcileIssue(
                        kind="orphaned",
                        description=f"Directory is not a registered worktree: {entry.name}",
                        path=entry,
                    )
                )

        now = self._clock()
        for task_id, workspace in active.items():
            if not workspace.path.exists():
                issues.append(
                    ReconcileIssue(
                        kind="missing",
                        description=f"Workspace directory missing for task {task_id}",
                        path=workspace.path,
                        branch=workspace.branch,
                        task_id=task_id,
                    )
                )
            elif now - workspace.allocated_at > self.stale_after_seconds:
                issues.append(
                    ReconcileIssue(
                        kind="abandoned",
                        description=f"Workspace for task {task_id} looks abandoned",
                        path=workspace.path,
                        branch=workspace.branch,
                        task_id=task_id,
                    )
                )

        if self.store is not None:
            for task_id, record in self.store.get_workspaces().items():
                if task_id in active or task_id in live or not isinstance(record, dict):
                    continue
                raw_path = record.get("path")
                issues.append(
                    ReconcileIssue(
                        kind="stale_record",
                        description=f"Recorded owner {task_id} is not running",
                        path=Path(raw_path) if raw_path else None,
                        branch=record.get("branch"),
                        task_id=task_id,
                    )
                )
        return issues

    def _fix(self, issue: ReconcileIssue) -> str:
        if issue.kind == "prunable":
            self._run_git(["worktree", "prune"])
            return f"Pruned stale worktree record: {issue.branch}"
        if issue.kind in {"locked", "orphaned"} and issue.path is not None:
            self._remove_checkout(issue.path)
            return f"Removed worktree: {issue.path}"
        if issue.kind == "missing" and issue.task_id is not None:
            self._forget(issue.task_id)
            self._run_git(["worktree", "prune"])
            return f"Dropped missing workspace for task {issue.task_id}"
        if issue.kind == "abandoned" and issue.task_id is not None:
            self.release(issue.task_id)
            return f"Released abandoned workspace for task {issue.task_id}"
        if issue.kind == "stale_record" and issue.task_id is not None:
            if issue.path is not None and issue.path.exists():
                self._remove_checkout(issue.path)
            if self.store is not None:
                self.store.drop_workspace(issue.task_id)
            return f"Dropped stale owner record for task {issue.task_id}"
        raise WorkspaceError(f"No repair available for {issue.kind} issue.")

    def _forget(self, task_id: str) -> None:
        with self._lock:
            if self._active.pop(task_id, None) is not None:
                self.releases += 1
        if self.store is not None:
            self.store.drop_workspace(task_id)

    def reconcile(self, repair: bool = True) -> ReconcileReport:
        """Compare git's worktree list with our bookkeeping and optionally repair."""
        report = ReconcileReport(is_git_repo=self.is_git_repo())
        if not report.is_git_repo:
            return report

        report.issues = self._find_issues(self.list_worktrees())
        if not repair:
            return report

        for issue in report.issues:
            if not issue.auto_fixable:
                continue
            try:
                report.fixed.append(self._fix(issue))
            except (WorkspaceError, OSError) as exc:
                report.failed.append({"issue": issue.description, "error": str(exc)})
        self._run_git(["worktree", "prune"], check=False)
        return report

    def full_cleanup(self) -> ReconcileReport:
        """Remove every worktree we manage and drop all bookkeeping."""
        report = ReconcileReport(is_git_repo=self.is_git_repo())
        if not report.is_git_repo:
            return report

        for worktree in self.list_worktrees():
            if worktree.path.resolve() == self.repo_root or not self._under_root(worktree.path):
                continue
            try:
                self._remove_checkout(worktree.path)
                report.fixed.append(f"Removed worktree: {worktree.branch}")
            except OSError as exc:
                report.failed.append({"issue": f"Remove {worktree.branch}", "error": str(exc)})
        self._run_git(["worktree", "prune"], check=False)

        if self.root.exists():
            for entry in sorted(self.root.iterdir()):
                try:
                    if entry.is_dir():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                    report.fixed.append(f"Removed directory: {entry.name}")
                except OSError as exc:
                    report.failed.append({"issue": f"Remove {entry.name}", "error": str(exc)})

        for task_id in [workspace.task_id for workspace in self.active()]:
            self._forget(task_id)
        if self.store is not None:
            self.store.set_json("workspaces", {})

        if not self.keep_branches:
            proc = self._run_git(
                ["branch", "--list", f"{self.branch_prefix}*", "--format=%(refname:short)"],
                check=False,
            )
            for branch in proc.stdout.split():
                self._run_git(["branch", "-D", branch], check=False)
                report.fixed.append(f"Deleted branch: {branch}")
        return report
