"""Errors raised by worktree operations."""

from __future__ import annotations

from pathlib import Path


class ResourceError(RuntimeError):
    """Base class for worktree resource errors."""


class NotARepositoryError(ResourceError):
    """Raised when the project root is not a git repository."""


class GitCommandError(ResourceError):
    """Raised when a git invocation fails."""

    def __init__(self, command: tuple[str, ...], stderr: str, returncode: int | None = None) -> None:
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"git {' '.join(command)} failed: {detail}")


class BranchNotFoundError(ResourceError):
    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch not found: {branch}")


class DuplicateResourceError(ResourceError):
    def __init__(self, branch: str, path: Path) -> None:
        self.branch = branch
        self.path = path
        super().__init__(f"Worktree already exists for branch {branch} at {path}")


class PathExistsError(ResourceError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Path already exists: {path}")


class ResourceNotFoundError(ResourceError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Worktree not found: {path}")


class ResourceDirtyError(ResourceError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Worktree has uncommitted changes: {path}")


class CannotDeleteMainError(ResourceError):
    def __init__(self) -> None:
        super().__init__("Cannot delete the main worktree")


class CannotDeleteActiveError(ResourceError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Cannot delete the active worktree: {path}")


__all__ = [
    "BranchNotFoundError",
    "CannotDeleteActiveError",
    "CannotDeleteMainError",
    "DuplicateResourceError",
    "GitCommandError",
    "NotARepositoryError",
    "PathExistsError",
    "ResourceDirtyError",
    "ResourceError",
    "ResourceNotFoundError",
]
