"""Worktree resources and the blocking-operation dispatcher."""

from .backend import GitWorktreeBackend, WorktreeBackend
from .dispatcher import BlockingOperationDispatcher, OperationResult, PendingOperation
from .errors import (
    BranchNotFoundError,
    CannotDeleteActiveError,
    CannotDeleteMainError,
    DuplicateResourceError,
    GitCommandError,
    NotARepositoryError,
    PathExistsError,
    ResourceDirtyError,
    ResourceError,
    ResourceNotFoundError,
)
from .manager import WorktreeManager, find_by_branch, find_by_path, guard_create, guard_delete
from .models import NO_REMOTE, SyncStatus, Worktree, WorktreeState, WorktreeStatus

__all__ = [
    "BlockingOperationDispatcher",
    "BranchNotFoundError",
    "CannotDeleteActiveError",
    "CannotDeleteMainError",
    "DuplicateResourceError",
    "GitCommandError",
    "GitWorktreeBackend",
    "NO_REMOTE",
    "NotARepositoryError",
    "OperationResult",
    "PathExistsError",
    "PendingOperation",
    "ResourceDirtyError",
    "ResourceError",
    "ResourceNotFoundError",
    "SyncStatus",
    "Worktree",
    "WorktreeBackend",
    "WorktreeManager",
    "WorktreeState",
    "WorktreeStatus",
    "find_by_branch",
    "find_by_path",
    "guard_create",
    "guard_delete",
]
