"""Git-backed worktree operations.

Every call here blocks on a ``git`` subprocess; callers on the event loop
must go through :class:`~spec_tui.worktrees.dispatcher.BlockingOperationDispatcher`.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from ..utils import git_environment
from .errors import GitCommandError, NotARepositoryError
from .models import DETACHED_BRANCH, NO_REMOTE, SyncStatus, Worktree, WorktreeStatus

logger = logging.getLogger(__name__)


class WorktreeBackend(Protocol):
    """Minimal version-control API consumed by :class:`WorktreeManager`."""

    def list_worktrees(self) -> list[Worktree]:
        ...

    def branch_exists(self, branch: str) -> bool:
        ...

    def create_branch(self, branch: str, start_point: str | None = None) -> None:
        ...

    def add_worktree(self, branch: str, path: Path) -> None:
        ...

    def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        ...

    def status(self, path: Path) -> WorktreeStatus:
        ...

    def sync_status(self, branch: str) -> SyncStatus:
        ...


def parse_worktree_list(output: str) -> list[Worktree]:
    """Parse ``git worktree list --porcelain`` output; the first block is the main worktree."""

    worktrees: list[Worktree] = []
    for index, block in enumerate(output.strip().split("\n\n")):
        path: Path | None = None
        branch: str | None = None
        bare = False
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = Path(line[len("worktree "):])
            elif line.startswith("branch "):
                branch = line[len("branch "):].removeprefix("refs/heads/")
            elif line == "detached":
                branch = DETACHED_BRANCH
            elif line == "bare":
                bare = True
        if path is None:
            continue
        # a bare main has no checkout but still counts as the main entry
        worktrees.append(
            Worktree(path=path, branch=branch or DETACHED_BRANCH, is_main=index == 0, is_bare=bare)
        )
    return worktrees


def parse_status(output: str) -> WorktreeStatus:
    """Parse ``git status --porcelain --branch`` output."""

    detached = False
    modified = staged = untracked = 0
    for line in output.splitlines():
        if line.startswith("## "):
            detached = line.startswith("## HEAD (no branch)")
            continue
        if len(line) < 2:
            continue
        index, tree = line[0], line[1]
        if index == "?" and tree == "?":
            untracked += 1
            continue
        if index not in " ?":
            staged += 1
        if tree not in " ?":
            modified += 1

    if modified or staged or untracked:
        return WorktreeStatus.dirty(modified=modified, staged=staged, untracked=untracked)
    if detached:
        return WorktreeStatus.detached()
    return WorktreeStatus.clean()


class GitWorktreeBackend:
    """Run worktree operations through the git CLI."""

    def __init__(
        self,
        repo_path: Path,
        *,
        remote: str = "origin",
        git_executable: Path | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._repo_path = Path(repo_path).resolve()
        if not (self._repo_path / ".git").exists():
            raise NotARepositoryError(f"Not a git repository: {self._repo_path}")
        self._git = self._resolve_executable(git_executable)
        self._remote = remote
        self._timeout = timeout

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> str:
        if explicit is not None:
            return str(explicit)
        binary = shutil.which("git")
        if binary is None:
            raise NotARepositoryError("git executable not found on PATH")
        return binary

    @property
    def repo_path(self) -> Path:
        return self._repo_path

    def _run(self, *args: str, cwd: Path | None = None, check: bool = True) -> subprocess.CompletedProcess[str]:
        logger.debug("Running git", extra={"git_args": args, "cwd": str(cwd or self._repo_path)})
        try:
            result = subprocess.run(
                [self._git, *args],
                cwd=str(cwd or self._repo_path),
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env=git_environment(),
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise GitCommandError(args, str(exc)) from exc
        if check and result.returncode != 0:
            raise GitCommandError(args, result.stderr, result.returncode)
        return result

    def list_worktrees(self) -> list[Worktree]:
        return parse_worktree_list(self._run("worktree", "list", "--porcelain").stdout)

    def branch_exists(self, branch: str) -> bool:
        for ref in (f"refs/heads/{branch}", f"refs/remotes/{self._remote}/{branch}"):
            if self._run("rev-parse", "--verify", "--quiet", ref, check=False).returncode == 0:
                return True
        return False

    def create_branch(self, branch: str, start_point: str | None = None) -> None:
        args = ["branch", branch]
        if start_point:
            args.append(start_point)
        self._run(*args)

    def add_worktree(self, branch: str, path: Path) -> None:
        self._run("worktree", "add", str(path), branch)

    def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self._run(*args)

    def status(self, path: Path) -> WorktreeStatus:
        return parse_status(self._run("status", "--porcelain", "--branch", cwd=path).stdout)

    def sync_status(self, branch: str) -> SyncStatus:
        upstream = f"{self._remote}/{branch}"
        if self._run("rev-parse", "--verify", "--quiet", upstream, check=False).returncode != 0:
            return NO_REMOTE

        counts = self._run("rev-list", "--left-right", "--count", f"{branch}...{upstream}")
        parts = counts.stdout.split()
        ahead = int(parts[0]) if parts else 0
        behind = int(parts[1]) if len(parts) > 1 else 0
        return SyncStatus(ahead=ahead, behind=behind, has_remote=True)

    def current_branch(self, path: Path) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD", cwd=path).stdout.strip()


__all__ = ["GitWorktreeBackend", "WorktreeBackend", "parse_status", "parse_worktree_list"]
