"""Workflow command state."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from ..specs.models import SpecId, WorkflowCommandKind


class CommandStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (CommandStatus.COMPLETED, CommandStatus.CANCELLED, CommandStatus.FAILED)


_STATUS_BADGES = {
    CommandStatus.PENDING: "...",
    CommandStatus.RUNNING: ">>>",
    CommandStatus.COMPLETED: "ok",
    CommandStatus.CANCELLED: "--",
    CommandStatus.FAILED: "!!",
}


@dataclass(frozen=True, slots=True)
class ExecutionState:
    status: CommandStatus = CommandStatus.PENDING
    started_at: datetime | None = None
    exit_code: int | None = None
    duration: float | None = None
    error: str | None = None
    timed_out: bool = False

    @classmethod
    def running(cls, started_at: datetime) -> "ExecutionState":
        return cls(CommandStatus.RUNNING, started_at=started_at)

    @classmethod
    def completed(cls, exit_code: int, duration: float, started_at: datetime | None = None) -> "ExecutionState":
        return cls(CommandStatus.COMPLETED, started_at=started_at, exit_code=exit_code, duration=duration)

    @classmethod
    def cancelled(cls, started_at: datetime | None = None) -> "ExecutionState":
        return cls(CommandStatus.CANCELLED, started_at=started_at)

    @classmethod
    def failed(cls, error: str, *, timed_out: bool = False, started_at: datetime | None = None) -> "ExecutionState":
        return cls(CommandStatus.FAILED, started_at=started_at, error=error, timed_out=timed_out)

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    @property
    def badge(self) -> str:
        return _STATUS_BADGES[self.status]

    def describe(self) -> str:
        if self.status is CommandStatus.COMPLETED:
            return f"completed (exit {self.exit_code}, {self.duration or 0.0:.1f}s)"
        if self.status is CommandStatus.FAILED:
            return "failed: timed out" if self.timed_out else f"failed: {self.error}"
        return self.status.value


class OutputStream(str, Enum):
    STDOUT = "out"
    STDERR = "err"
    PROGRESS = "progress"

    @property
    def tag(self) -> str:
        return {"out": "[OUT]", "err": "[ERR]", "progress": "[PROGRESS]"}[self.value]


@dataclass(frozen=True, slots=True)
class OutputLine:
    timestamp: datetime
    text: str
    stream: OutputStream = OutputStream.STDOUT

    def format(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.stream.tag} {self.text}"


_command_ids = itertools.count(1)


@dataclass(slots=True)
class WorkflowCommand:
    """One workflow command run against a specification.

    State only moves forward: once terminal, further transitions are refused
    and return ``False``.
    """

    kind: WorkflowCommandKind
    spec_id: SpecId
    command_id: int = field(default_factory=lambda: next(_command_ids))
    state: ExecutionState = field(default_factory=ExecutionState)
    output: list[OutputLine] = field(default_factory=list)
    log_path: Path | None = None
    request_id: int | None = None
    progress: float | None = None
    started_monotonic: float | None = None

    @property
    def status(self) -> CommandStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def elapsed(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic

    def append(self, text: str, stream: OutputStream = OutputStream.STDOUT) -> OutputLine:
        line = OutputLine(timestamp=datetime.now(), text=text, stream=stream)
        self.output.append(line)
        return line

    def start(self) -> bool:
        if self.state.status is not CommandStatus.PENDING:
            return False
        self.started_monotonic = time.monotonic()
        self.state = ExecutionState.running(datetime.now())
        return True

    def complete(self, exit_code: int) -> bool:
        if self.is_terminal:
            return False
        self.state = ExecutionState.completed(exit_code, self.elapsed(), started_at=self.state.started_at)
        self.progress = 1.0
        return True

    def fail(self, error: str, *, timed_out: bool = False) -> bool:
        if self.is_terminal:
            return False
        self.state = ExecutionState.failed(error, timed_out=timed_out, started_at=self.state.started_at)
        return True

    def cancel(self) -> bool:
        if self.is_terminal:
            return False
        self.state = ExecutionState.cancelled(started_at=self.state.started_at)
        return True


__all__ = [
    "CommandStatus",
    "ExecutionState",
    "OutputLine",
    "OutputStream",
    "WorkflowCommand",
]
