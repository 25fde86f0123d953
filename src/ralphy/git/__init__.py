"""Version-control helpers: git/gh client and per-agent worktrees."""

from .client import GitClient, GitCommandError, GitResult
from .worktree import (
    WorkspaceError,
    WorktreeHandle,
    WorktreeManager,
    agent_branch_name,
    slugify,
    task_branch_name,
)

__all__ = [
    "GitClient",
    "GitCommandError",
    "GitResult",
    "WorkspaceError",
    "WorktreeHandle",
    "WorktreeManager",
    "agent_branch_name",
    "slugify",
    "task_branch_name",
]
