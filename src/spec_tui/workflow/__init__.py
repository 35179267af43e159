"""Workflow command orchestration."""

from .errors import AlreadyRunningError, OrchestrationError, PrerequisiteNotMetError
from .logfile import CommandLog, read_output
from .models import CommandStatus, ExecutionState, OutputLine, OutputStream, WorkflowCommand
from .orchestrator import CallStarted, CommandEvent, CommandOrchestrator, OrchestrationPhase, StartFailed

__all__ = [
    "AlreadyRunningError",
    "CallStarted",
    "CommandEvent",
    "CommandLog",
    "CommandOrchestrator",
    "CommandStatus",
    "ExecutionState",
    "OrchestrationError",
    "OrchestrationPhase",
    "OutputLine",
    "OutputStream",
    "PrerequisiteNotMetError",
    "StartFailed",
    "WorkflowCommand",
    "read_output",
]
