"""Errors raised when a workflow command cannot be dispatched."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..specs.models import SpecId, WorkflowCommandKind, WorkflowPhase

if TYPE_CHECKING:
    from .models import WorkflowCommand


class OrchestrationError(RuntimeError):
    """Base class for orchestration errors."""


class PrerequisiteNotMetError(OrchestrationError):
    def __init__(self, spec_id: SpecId, kind: WorkflowCommandKind, phase: WorkflowPhase) -> None:
        self.spec_id = spec_id
        self.kind = kind
        self.phase = phase
        allowed = ", ".join(command.display_name for command in phase.available_commands())
        super().__init__(
            f"{kind.display_name} is not available for {spec_id} in phase {phase.value} (allowed: {allowed})"
        )


class AlreadyRunningError(OrchestrationError):
    def __init__(self, spec_id: SpecId, command: "WorkflowCommand") -> None:
        self.spec_id = spec_id
        self.command = command
        super().__init__(f"{command.kind.display_name} is already running for {spec_id}")


__all__ = ["AlreadyRunningError", "OrchestrationError", "PrerequisiteNotMetError"]
