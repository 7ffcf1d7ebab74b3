"""Per-task git worktrees."""

from .isolator import WorkspaceError, WorkspaceIsolator, WorktreeHandle

__all__ = ["WorkspaceError", "WorkspaceIsolator", "WorktreeHandle"]
