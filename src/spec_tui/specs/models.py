"""Specification models and workflow phase derivation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

_SPEC_ID_PATTERN = re.compile(r"^(\d{3})-(.+)$")


@dataclass(frozen=True, slots=True, order=True)
class SpecId:
    """Identifier of the form ``NNN-slug`` (e.g. ``001-feature-auth``)."""

    value: str

    def __post_init__(self) -> None:
        if not _SPEC_ID_PATTERN.match(self.value):
            raise ValueError(f"Invalid specification id '{self.value}'")

    @classmethod
    def new(cls, number: int, name: str) -> "SpecId":
        return cls(f"{number:03d}-{name}")

    @classmethod
    def parse(cls, value: str) -> "SpecId | None":
        """Return the id for ``value`` or ``None`` when it does not match the pattern."""

        if not _SPEC_ID_PATTERN.match(value):
            return None
        return cls(value)

    @property
    def number(self) -> int:
        return int(self.value[:3])

    @property
    def name(self) -> str:
        return self.value[4:]

    def __str__(self) -> str:
        return self.value


class ArtifactKind(str, Enum):
    SPEC = "spec.md"
    PLAN = "plan.md"
    TASKS = "tasks.md"
    RESEARCH = "research.md"

    @property
    def filename(self) -> str:
        return self.value


class WorkflowCommandKind(str, Enum):
    """The five workflow commands an agent can run against a specification."""

    SPECIFY = "specify"
    CLARIFY = "clarify"
    PLAN = "plan"
    TASKS = "tasks"
    IMPLEMENT = "implement"

    @property
    def tool_name(self) -> str:
        return f"speckit.{self.value}"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def shortcut(self) -> str:
        return self.value[0]


@dataclass(frozen=True, slots=True)
class SpecArtifacts:
    """Presence flags for the artifacts stored in a specification directory."""

    has_spec: bool = False
    has_plan: bool = False
    has_tasks: bool = False
    has_research: bool = False

    @classmethod
    def scan(cls, directory: Path) -> "SpecArtifacts":
        return cls(
            has_spec=(directory / ArtifactKind.SPEC.filename).is_file(),
            has_plan=(directory / ArtifactKind.PLAN.filename).is_file(),
            has_tasks=(directory / ArtifactKind.TASKS.filename).is_file(),
            has_research=(directory / ArtifactKind.RESEARCH.filename).is_file(),
        )


class WorkflowPhase(str, Enum):
    SPECIFY = "specify"
    CLARIFY = "clarify"
    TASKS = "tasks"
    IMPLEMENT = "implement"

    @classmethod
    def from_flags(cls, has_spec: bool, has_plan: bool, has_tasks: bool) -> "WorkflowPhase":
        if not has_spec:
            return cls.SPECIFY
        if not has_plan:
            return cls.CLARIFY
        if not has_tasks:
            return cls.TASKS
        return cls.IMPLEMENT

    @classmethod
    def from_artifacts(cls, artifacts: SpecArtifacts) -> "WorkflowPhase":
        return cls.from_flags(artifacts.has_spec, artifacts.has_plan, artifacts.has_tasks)

    def available_commands(self) -> tuple[WorkflowCommandKind, ...]:
        """Commands that may run next; Clarify offers both clarify and plan."""

        return _PHASE_COMMANDS[self]

    @property
    def badge(self) -> str:
        return _PHASE_BADGES[self]


_PHASE_COMMANDS: dict[WorkflowPhase, tuple[WorkflowCommandKind, ...]] = {
    WorkflowPhase.SPECIFY: (WorkflowCommandKind.SPECIFY,),
    WorkflowPhase.CLARIFY: (WorkflowCommandKind.CLARIFY, WorkflowCommandKind.PLAN),
    WorkflowPhase.TASKS: (WorkflowCommandKind.TASKS,),
    WorkflowPhase.IMPLEMENT: (WorkflowCommandKind.IMPLEMENT,),
}

_PHASE_BADGES: dict[WorkflowPhase, str] = {
    WorkflowPhase.SPECIFY: "[SPEC]",
    WorkflowPhase.CLARIFY: "[CLARIFY]",
    WorkflowPhase.TASKS: "[TASKS]",
    WorkflowPhase.IMPLEMENT: "[IMPL]",
}


@dataclass(frozen=True, slots=True)
class Specification:
    """A feature specification directory and its derived workflow phase."""

    id: SpecId
    directory: Path
    artifacts: SpecArtifacts = field(default_factory=SpecArtifacts)
    branch: str = ""

    def __post_init__(self) -> None:
        if not self.branch:
            object.__setattr__(self, "branch", self.id.value)

    @classmethod
    def from_directory(cls, directory: Path) -> "Specification":
        spec_id = SpecId.parse(directory.name)
        if spec_id is None:
            raise ValueError(f"Directory name '{directory.name}' is not a specification id")
        return cls(id=spec_id, directory=directory, artifacts=SpecArtifacts.scan(directory))

    @property
    def phase(self) -> WorkflowPhase:
        return WorkflowPhase.from_artifacts(self.artifacts)

    def available_commands(self) -> tuple[WorkflowCommandKind, ...]:
        return self.phase.available_commands()

    def rescan(self) -> "Specification":
        """Return a copy with artifact flags re-read from disk."""

        return replace(self, artifacts=SpecArtifacts.scan(self.directory))


__all__ = [
    "ArtifactKind",
    "SpecArtifacts",
    "SpecId",
    "Specification",
    "WorkflowCommandKind",
    "WorkflowPhase",
]
