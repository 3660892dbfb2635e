from orchestra.workspaces.base import (
    ReconcileIssue,
    ReconcileReport,
    Workspace,
    WorkspaceAllocationError,
    WorkspaceError,
    WorkspaceManager,
)
from orchestra.workspaces.git import (
    GitCommandError,
    GitWorktree,
    GitWorktreeManager,
    parse_worktree_list,
    slugify,
    workspace_name,
)
from orchestra.workspaces.shared import SharedWorkspaceManager

__all__ = [
    "GitCommandError",
    "GitWorktree",
    "GitWorktreeManager",
    "ReconcileIssue",
    "ReconcileReport",
    "SharedWorkspaceManager",
    "Workspace",
    "WorkspaceAllocationError",
    "WorkspaceError",
    "WorkspaceManager",
    "parse_worktree_list",
    "slugify",
    "workspace_name",
]
