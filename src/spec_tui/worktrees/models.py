"""Data models for git worktrees."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..specs.models import SpecId

DETACHED_BRANCH = "(detached)"


class WorktreeState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    DETACHED = "detached"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class WorktreeStatus:
    state: WorktreeState = WorktreeState.UNKNOWN
    modified: int = 0
    staged: int = 0
    untracked: int = 0

    @classmethod
    def clean(cls) -> "WorktreeStatus":
        return cls(WorktreeState.CLEAN)

    @classmethod
    def dirty(cls, *, modified: int = 0, staged: int = 0, untracked: int = 0) -> "WorktreeStatus":
        return cls(WorktreeState.DIRTY, modified=modified, staged=staged, untracked=untracked)

    @classmethod
    def detached(cls) -> "WorktreeStatus":
        return cls(WorktreeState.DETACHED)

    @classmethod
    def unknown(cls) -> "WorktreeStatus":
        return cls(WorktreeState.UNKNOWN)

    @property
    def is_clean(self) -> bool:
        return self.state is WorktreeState.CLEAN

    @property
    def is_dirty(self) -> bool:
        return self.state is WorktreeState.DIRTY

    @property
    def indicator(self) -> str:
        return {
            WorktreeState.CLEAN: "",
            WorktreeState.DIRTY: "*",
            WorktreeState.DETACHED: "!",
            WorktreeState.UNKNOWN: "?",
        }[self.state]

    def describe(self) -> str:
        if self.state is WorktreeState.DIRTY:
            parts = []
            if self.modified:
                parts.append(f"{self.modified} modified")
            if self.staged:
                parts.append(f"{self.staged} staged")
            if self.untracked:
                parts.append(f"{self.untracked} untracked")
            return ", ".join(parts) or "dirty"
        return self.state.value


@dataclass(frozen=True, slots=True)
class SyncStatus:
    """Ahead/behind counters against the remote tracking branch."""

    ahead: int = 0
    behind: int = 0
    has_remote: bool = True

    def describe(self) -> str:
        if not self.has_remote:
            return "no remote"
        if not self.ahead and not self.behind:
            return "up to date"
        return f"+{self.ahead}/-{self.behind}"


NO_REMOTE = SyncStatus(ahead=0, behind=0, has_remote=False)


@dataclass(slots=True)
class Worktree:
    path: Path
    branch: str
    is_main: bool = False
    is_bare: bool = False
    status: WorktreeStatus = field(default_factory=WorktreeStatus.unknown)

    @property
    def spec_id(self) -> SpecId | None:
        return SpecId.parse(self.branch)

    @property
    def is_detached(self) -> bool:
        return self.branch == DETACHED_BRANCH


__all__ = [
    "DETACHED_BRANCH",
    "NO_REMOTE",
    "SyncStatus",
    "Worktree",
    "WorktreeState",
    "WorktreeStatus",
]
