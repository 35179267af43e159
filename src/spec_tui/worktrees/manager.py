"""Worktree lifecycle rules layered over a version-control backend."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .backend import WorktreeBackend
from .errors import (
    BranchNotFoundError,
    CannotDeleteActiveError,
    CannotDeleteMainError,
    DuplicateResourceError,
    PathExistsError,
    ResourceDirtyError,
    ResourceError,
    ResourceNotFoundError,
)
from .models import SyncStatus, Worktree, WorktreeStatus

logger = logging.getLogger(__name__)


def _same_path(left: Path, right: Path) -> bool:
    return Path(left).resolve() == Path(right).resolve()


def find_by_branch(worktrees: Iterable[Worktree], branch: str) -> Worktree | None:
    return next((worktree for worktree in worktrees if worktree.branch == branch), None)


def find_by_path(worktrees: Iterable[Worktree], path: Path) -> Worktree | None:
    return next((worktree for worktree in worktrees if _same_path(worktree.path, path)), None)


def guard_create(worktrees: Iterable[Worktree], branch: str) -> None:
    """Reject a create when a worktree already references ``branch``."""

    existing = find_by_branch(worktrees, branch)
    if existing is not None:
        raise DuplicateResourceError(branch, existing.path)


def guard_delete(worktrees: Iterable[Worktree], path: Path, active_path: Path | None) -> Worktree:
    """Return the worktree at ``path`` if it may be deleted; force never bypasses these checks."""

    worktree = find_by_path(worktrees, path)
    if worktree is None:
        raise ResourceNotFoundError(Path(path))
    if worktree.is_main:
        raise CannotDeleteMainError()
    if active_path is not None and _same_path(worktree.path, active_path):
        raise CannotDeleteActiveError(worktree.path)
    return worktree


class WorktreeManager:
    """Owns worktree creation, status, deletion and sync counters for one repository.

    All methods block; they are meant to run on the dispatcher's worker pool.
    """

    def __init__(self, backend: WorktreeBackend, worktree_root: Path) -> None:
        self._backend = backend
        self._worktree_root = Path(worktree_root)

    @property
    def worktree_root(self) -> Path:
        return self._worktree_root

    def path_for_branch(self, branch: str) -> Path:
        return self._worktree_root / branch

    def list(self) -> list[Worktree]:
        worktrees = self._backend.list_worktrees()
        if sum(1 for worktree in worktrees if worktree.is_main) != 1:
            raise ResourceError("Repository reported no main worktree")
        return worktrees

    def ensure_branch(self, branch: str, start_point: str | None = None) -> bool:
        """Create ``branch`` when neither a local nor a remote ref exists; return True if created.

        A ``start_point`` that does not resolve is dropped so the branch starts at HEAD.
        """

        if self._backend.branch_exists(branch):
            return False
        if start_point and not self._backend.branch_exists(start_point):
            logger.debug("Start point not found, using HEAD", extra={"branch": branch, "start_point": start_point})
            start_point = None
        self._backend.create_branch(branch, start_point)
        logger.info("Created branch", extra={"branch": branch, "start_point": start_point})
        return True

    def create(self, branch: str, path: Path | None = None) -> Worktree:
        target = Path(path) if path is not None else self.path_for_branch(branch)
        if not self._backend.branch_exists(branch):
            raise BranchNotFoundError(branch)
        guard_create(self.list(), branch)
        if target.exists() and (not target.is_dir() or any(target.iterdir())):
            raise PathExistsError(target)

        target.parent.mkdir(parents=True, exist_ok=True)
        self._backend.add_worktree(branch, target)
        logger.info("Created worktree", extra={"branch": branch, "path": str(target)})

        created = find_by_branch(self.list(), branch)
        return created or Worktree(path=target, branch=branch)

    def delete(self, path: Path, *, force: bool = False, active_path: Path | None = None) -> None:
        worktree = guard_delete(self.list(), path, active_path)
        if not force and self.status(worktree.path).is_dirty:
            raise ResourceDirtyError(worktree.path)

        self._backend.remove_worktree(worktree.path, force=force)
        logger.info(
            "Deleted worktree",
            extra={"branch": worktree.branch, "path": str(worktree.path), "force": force},
        )

    def status(self, path: Path) -> WorktreeStatus:
        """Return the working tree status; any failure maps to ``Unknown``."""

        try:
            return self._backend.status(Path(path))
        except ResourceError as exc:
            logger.debug("Worktree status unavailable", extra={"path": str(path), "error": str(exc)})
            return WorktreeStatus.unknown()

    def sync_status(self, branch: str) -> SyncStatus:
        return self._backend.sync_status(branch)


__all__ = [
    "WorktreeManager",
    "find_by_branch",
    "find_by_path",
    "guard_create",
    "guard_delete",
]
