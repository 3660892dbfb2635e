import shutil
import subprocess
from pathlib import Path

import pytest

from orchestra.state import JsonStateStore
from orchestra.workspaces import (
    GitWorktreeManager,
    SharedWorkspaceManager,
    WorkspaceAllocationError,
    parse_worktree_list,
    slugify,
    workspace_name,
)


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=repo, check=True, text=True, capture_output=True)
    return proc.stdout


def _branches(repo: Path) -> list[str]:
    return _git(repo, "branch", "--format=%(refname:short)").split()


class Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


def test_allocate_creates_worktree_and_release_removes_it(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)

    workspace = manager.allocate("task-1")

    assert workspace.path == git_repo / ".orchestra" / "worktrees" / "task-1"
    assert workspace.branch == "orchestra/task-1"
    assert (workspace.path / "README.md").read_text(encoding="utf-8") == "seed\n"
    assert (git_repo / ".orchestra" / ".gitignore").exists()
    assert manager.owner_of(workspace.path) == "task-1"
    assert any(wt.path.resolve() == workspace.path for wt in manager.list_worktrees())

    manager.release("task-1")

    assert not workspace.path.exists()
    assert "orchestra/task-1" in _branches(git_repo)
    assert manager.allocations == manager.releases == 1
    assert manager.active() == []
    assert _git(git_repo, "status", "--porcelain") == ""


def test_tasks_get_distinct_paths_and_branches(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)

    first = manager.allocate("Fix Bug")
    second = manager.allocate("fix-bug")

    assert first.path != second.path
    assert first.branch != second.branch
    manager.release("Fix Bug")
    manager.release("fix-bug")


def test_double_allocation_is_rejected(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)
    manager.allocate("task-1")

    with pytest.raises(WorkspaceAllocationError):
        manager.allocate("task-1")
    assert manager.allocations == 1
    manager.release("task-1")


def test_release_of_unknown_task_is_a_no_op(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)

    manager.release("never-allocated")

    assert manager.releases == 0


def test_reallocation_reattaches_kept_branch(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)
    workspace = manager.allocate("task-1")
    (workspace.path / "work.txt").write_text("progress\n", encoding="utf-8")
    _git(workspace.path, "add", "work.txt")
    _git(workspace.path, "commit", "-m", "progress")
    manager.release("task-1")

    again = manager.allocate("task-1")

    assert (again.path / "work.txt").read_text(encoding="utf-8") == "progress\n"
    manager.release("task-1")


def test_branch_is_deleted_when_not_kept(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo, keep_branches=False)
    manager.allocate("task-1")

    manager.release("task-1")

    assert "orchestra/task-1" not in _branches(git_repo)


def test_allocation_outside_git_repository_fails(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    manager = GitWorktreeManager(plain)

    with pytest.raises(WorkspaceAllocationError, match="not a git repository"):
        manager.allocate("task-1")

    report = manager.reconcile()
    assert not report.is_git_repo
    assert report.healthy


def test_store_mirrors_owners(git_repo: Path, tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state")
    manager = GitWorktreeManager(git_repo, store=store)

    manager.allocate("task-1")
    owners = store.get_workspaces()
    assert owners["task-1"]["branch"] == "orchestra/task-1"
    assert owners["task-1"]["pid"] > 0

    manager.release("task-1")
    assert store.get_workspaces() == {}


def test_reconcile_on_clean_repository_is_healthy(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)
    manager.allocate("task-1")

    report = manager.reconcile()

    assert report.healthy
    assert report.fixed == []
    manager.release("task-1")


def test_reconcile_removes_worktrees_without_owner(git_repo: Path) -> None:
    crashed = GitWorktreeManager(git_repo)
    leftover = crashed.allocate("task-1").path
    (crashed.root / "junk").mkdir()
    fresh = GitWorktreeManager(git_repo)

    report = fresh.reconcile(repair=False)
    assert sorted(report.kinds()) == ["orphaned", "orphaned"]
    assert leftover.exists()

    repaired = fresh.reconcile()
    assert repaired.repaired
    assert len(repaired.fixed) == 2
    assert not leftover.exists()
    assert not (fresh.root / "junk").exists()
    assert fresh.reconcile(repair=False).healthy


def test_reconcile_drops_workspaces_whose_directory_vanished(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo)
    workspace = manager.allocate("task-1")
    shutil.rmtree(workspace.path)

    report = manager.reconcile()

    assert "missing" in report.kinds()
    assert report.repaired
    assert manager.active() == []
    assert manager.allocations == manager.releases == 1
    assert manager.reconcile(repair=False).healthy


def test_reconcile_releases_abandoned_workspaces(git_repo: Path) -> None:
    clock = Clock()
    manager = GitWorktreeManager(git_repo, stale_after_hours=1, clock=clock)
    workspace = manager.allocate("task-1")

    assert manager.reconcile(repair=False).healthy
    clock.now += 2 * 3600

    report = manager.reconcile(repair=False)
    assert report.kinds() == ["abandoned"]

    manager.reconcile()
    assert not workspace.path.exists()
    assert manager.active() == []


def test_reconcile_drops_stale_owner_records(git_repo: Path, tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state")
    store.set_workspace("ghost", {"path": str(tmp_path / "gone"), "branch": "orchestra/ghost"})
    manager = GitWorktreeManager(git_repo, store=store)

    report = manager.reconcile()

    assert report.kinds() == ["stale_record"]
    assert report.issues[0].task_id == "ghost"
    assert store.get_workspaces() == {}


def test_reconcile_keeps_worktrees_of_a_running_owner(git_repo: Path, tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state")
    running = GitWorktreeManager(git_repo, store=store)
    workspace = running.allocate("impl")
    (workspace.path / "work.txt").write_text("draft\n", encoding="utf-8")
    second = GitWorktreeManager(git_repo, store=store)

    report = second.reconcile()

    assert report.healthy
    assert (workspace.path / "work.txt").read_text(encoding="utf-8") == "draft\n"
    assert "impl" in store.get_workspaces()
    running.release("impl")


def test_reconcile_reclaims_worktrees_of_an_exited_owner(git_repo: Path, tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state")
    crashed = GitWorktreeManager(git_repo, store=store)
    workspace = crashed.allocate("impl")
    finished = subprocess.Popen(["true"])
    finished.wait()
    store.set_workspace("impl", {**store.get_workspaces()["impl"], "pid": finished.pid})
    fresh = GitWorktreeManager(git_repo, store=store)

    assert sorted(fresh.reconcile(repair=False).kinds()) == ["orphaned", "stale_record"]

    repaired = fresh.reconcile()
    assert repaired.repaired
    assert not workspace.path.exists()
    assert store.get_workspaces() == {}


def test_reconcile_reclaims_owner_records_past_the_stale_age(
    git_repo: Path, tmp_path: Path
) -> None:
    store = JsonStateStore(tmp_path / "state")
    clock = Clock()
    GitWorktreeManager(git_repo, store=store, clock=clock).allocate("impl")
    later = Clock()
    later.now = clock.now + 25 * 3600
    fresh = GitWorktreeManager(git_repo, store=store, clock=later)

    report = fresh.reconcile(repair=False)

    assert sorted(report.kinds()) == ["orphaned", "stale_record"]


def test_full_cleanup_removes_everything_managed(git_repo: Path) -> None:
    manager = GitWorktreeManager(git_repo, keep_branches=False)
    first = manager.allocate("task-1")
    second = manager.allocate("task-2")

    report = manager.full_cleanup()

    assert report.repaired
    assert not first.path.exists()
    assert not second.path.exists()
    assert manager.active() == []
    assert manager.allocations == manager.releases == 2
    assert [wt.path.resolve() for wt in manager.list_worktrees()] == [git_repo]
    assert not [branch for branch in _branches(git_repo) if branch.startswith("orchestra/")]


def test_parse_worktree_list_reads_porcelain_blocks() -> None:
    output = (
        "worktree /repo\n"
        "HEAD 1111111\n"
        "branch refs/heads/main\n"
        "\n"
        "worktree /repo/.orchestra/worktrees/a\n"
        "HEAD 2222222\n"
        "branch refs/heads/orchestra/a\n"
        "locked\n"
        "\n"
        "worktree /tmp/old\n"
        "HEAD 3333333\n"
        "detached\n"
        "prunable gitdir file points to non-existent location\n"
    )

    worktrees = parse_worktree_list(output)

    assert [wt.branch for wt in worktrees] == ["main", "orchestra/a", "detached"]
    assert worktrees[0].commit == "1111111"
    assert worktrees[1].locked and not worktrees[1].prunable
    assert worktrees[2].prunable


def test_workspace_names_are_path_safe_and_distinct() -> None:
    assert slugify("Add OAuth login!") == "add-oauth-login"
    assert slugify("???") == "task"
    assert len(slugify("x" * 100)) == 40
    assert workspace_name("plan-1") == "plan-1"
    assert workspace_name("Plan 1").startswith("plan-1-")
    assert workspace_name("Plan 1") != workspace_name("plan 1")


def test_shared_workspace_has_a_single_owner(tmp_path: Path) -> None:
    manager = SharedWorkspaceManager(tmp_path)

    workspace = manager.allocate("A")
    assert workspace.path == tmp_path.resolve()
    with pytest.raises(WorkspaceAllocationError, match="in use by task A"):
        manager.allocate("B")

    manager.release("A")
    manager.release("A")
    assert manager.allocate("B").task_id == "B"
    assert manager.allocations == 2
    assert manager.releases == 1
