"""Dispatch workflow commands to the agent and track their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..protocol.client import ProtocolClient, ToolCancelled, ToolCompleted, ToolEvent, ToolFailed, ToolProgress
from ..protocol.errors import ProtocolError, ProtocolTimeoutError
from ..specs.models import SpecId, Specification, WorkflowCommandKind
from .errors import AlreadyRunningError, PrerequisiteNotMetError
from .logfile import CommandLog
from .models import OutputStream, WorkflowCommand

logger = logging.getLogger(__name__)


class OrchestrationPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    TERMINAL = "terminal"


@dataclass(frozen=True, slots=True)
class CallStarted:
    request_id: int


@dataclass(frozen=True, slots=True)
class StartFailed:
    error: Exception


@dataclass(frozen=True, slots=True)
class CommandEvent:
    """A protocol-side occurrence for one command, applied on the loop by the scheduler."""

    command_id: int
    spec_id: SpecId
    payload: CallStarted | StartFailed | ToolEvent


class CommandOrchestrator:
    """Run at most one workflow command per specification.

    Streaming tasks never touch :class:`WorkflowCommand` objects; they hand
    :class:`CommandEvent` values to ``emit`` and the owner of the event loop
    feeds them back through :meth:`apply`.
    """

    def __init__(
        self,
        client: ProtocolClient,
        emit: Callable[[CommandEvent], None],
        *,
        log: CommandLog | None = None,
        timeout: float | None = 60.0,
    ) -> None:
        self._client = client
        self._emit = emit
        self._log = log
        self._timeout = timeout
        self._commands: dict[int, WorkflowCommand] = {}
        self._active: dict[SpecId, int] = {}
        self._latest: dict[SpecId, int] = {}
        self._phases: dict[SpecId, OrchestrationPhase] = {}
        self._tasks: dict[int, asyncio.Task] = {}
        self._ready_lock = asyncio.Lock()

    @property
    def client(self) -> ProtocolClient:
        return self._client

    def command(self, command_id: int) -> WorkflowCommand | None:
        return self._commands.get(command_id)

    def active_command(self, spec_id: SpecId) -> WorkflowCommand | None:
        command_id = self._active.get(spec_id)
        return self._commands.get(command_id) if command_id is not None else None

    def latest_command(self, spec_id: SpecId) -> WorkflowCommand | None:
        command_id = self._latest.get(spec_id)
        return self._commands.get(command_id) if command_id is not None else None

    def running(self) -> list[WorkflowCommand]:
        return [self._commands[command_id] for command_id in self._active.values()]

    def phase_of(self, spec_id: SpecId) -> OrchestrationPhase:
        return self._phases.get(spec_id, OrchestrationPhase.IDLE)

    def dispatch(self, spec: Specification, kind: WorkflowCommandKind) -> WorkflowCommand:
        """Validate and start ``kind`` for ``spec``; must be called on the event loop."""

        previous = self.phase_of(spec.id)
        self._phases[spec.id] = OrchestrationPhase.VALIDATING
        try:
            if kind not in spec.available_commands():
                raise PrerequisiteNotMetError(spec.id, kind, spec.phase)
            active = self.active_command(spec.id)
            if active is not None:
                raise AlreadyRunningError(spec.id, active)
        except (PrerequisiteNotMetError, AlreadyRunningError):
            self._phases[spec.id] = previous
            raise

        command = WorkflowCommand(kind=kind, spec_id=spec.id)
        self._commands[command.command_id] = command
        self._active[spec.id] = command.command_id
        self._latest[spec.id] = command.command_id
        self._phases[spec.id] = OrchestrationPhase.DISPATCHED

        if self._log is not None:
            try:
                self._log.open(command, spec.directory)
            except OSError as exc:
                logger.warning("Command log unavailable", extra={"command_id": command.command_id, "error": str(exc)})

        task = asyncio.create_task(self._stream(command, spec), name=f"spec-tui-command-{command.command_id}")
        self._tasks[command.command_id] = task
        task.add_done_callback(lambda _task, command_id=command.command_id: self._tasks.pop(command_id, None))
        logger.info(
            "Dispatched command",
            extra={"command_id": command.command_id, "spec_id": spec.id.value, "tool": kind.tool_name},
        )
        return command

    async def _ensure_ready(self) -> None:
        async with self._ready_lock:
            if self._client.is_ready:
                return
            await self._client.initialize()
            await self._client.list_tools()

    async def _stream(self, command: WorkflowCommand, spec: Specification) -> None:
        def emit(payload: CallStarted | StartFailed | ToolEvent) -> None:
            self._emit(CommandEvent(command.command_id, command.spec_id, payload))

        arguments = {"spec_directory": str(spec.directory.resolve()), "spec_id": spec.id.value}
        try:
            await self._ensure_ready()
            available = {tool.name for tool in self._client.tools}
            if available and command.kind.tool_name not in available:
                logger.warning("Agent does not advertise tool", extra={"tool": command.kind.tool_name})
            call = await self._client.call_tool(command.kind.tool_name, arguments, timeout=self._timeout)
        except ProtocolError as exc:
            emit(StartFailed(exc))
            return
        except Exception as exc:
            logger.exception("Command failed to start", extra={"command_id": command.command_id})
            emit(StartFailed(exc))
            return

        emit(CallStarted(call.request_id))
        async for event in call:
            emit(event)

    def apply(self, event: CommandEvent) -> WorkflowCommand | None:
        """Fold one event into its command; returns the command when it changed."""

        command = self._commands.get(event.command_id)
        if command is None:
            return None
        payload = event.payload

        if isinstance(payload, CallStarted):
            command.request_id = payload.request_id
            if command.is_terminal:
                # cancelled while the request was still being sent
                self._client.cancel(payload.request_id)
                return None
            command.start()
            self._phases[command.spec_id] = OrchestrationPhase.STREAMING
            return command

        if command.is_terminal:
            logger.debug(
                "Discarding event for finished command",
                extra={"command_id": command.command_id, "event": type(payload).__name__},
            )
            return None

        if isinstance(payload, ToolProgress):
            if payload.ratio is not None:
                command.progress = payload.ratio
            if payload.message:
                self._record(command, payload.message, OutputStream.PROGRESS)
        elif isinstance(payload, ToolCompleted):
            result = payload.result
            stream = OutputStream.STDERR if result.is_error else OutputStream.STDOUT
            for line in result.text.splitlines():
                self._record(command, line, stream)
            command.complete(1 if result.is_error else 0)
            self._finish(command)
        elif isinstance(payload, ToolFailed):
            timed_out = isinstance(payload.error, ProtocolTimeoutError)
            self._record(command, str(payload.error), OutputStream.STDERR)
            command.fail(str(payload.error), timed_out=timed_out)
            self._finish(command)
        elif isinstance(payload, ToolCancelled):
            command.cancel()
            self._finish(command)
        elif isinstance(payload, StartFailed):
            self._record(command, str(payload.error), OutputStream.STDERR)
            command.fail(str(payload.error))
            self._finish(command)
        return command

    def cancel(self, spec_id: SpecId) -> WorkflowCommand | None:
        """Cancel the running command for ``spec_id`` immediately.

        The agent is notified in the background. Returns ``None`` when
        nothing was running.
        """

        command = self.active_command(spec_id)
        if command is None or not command.cancel():
            return None
        if command.request_id is not None:
            self._client.cancel(command.request_id)
        self._finish(command)
        logger.info("Cancelled command", extra={"command_id": command.command_id, "spec_id": spec_id.value})
        return command

    async def close(self) -> None:
        for spec_id in list(self._active):
            self.cancel(spec_id)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _record(self, command: WorkflowCommand, text: str, stream: OutputStream) -> None:
        line = command.append(text, stream)
        if self._log is None:
            return
        try:
            self._log.append(command, line)
        except OSError as exc:
            logger.warning("Failed to write command log", extra={"command_id": command.command_id, "error": str(exc)})

    def _finish(self, command: WorkflowCommand) -> None:
        if self._active.get(command.spec_id) == command.command_id:
            del self._active[command.spec_id]
        self._phases[command.spec_id] = OrchestrationPhase.TERMINAL
        logger.info(
            "Command finished",
            extra={"command_id": command.command_id, "status": command.state.describe()},
        )
        if self._log is None:
            return
        try:
            self._log.finish(command)
        except OSError as exc:
            logger.warning("Failed to close command log", extra={"command_id": command.command_id, "error": str(exc)})


__all__ = [
    "CallStarted",
    "CommandEvent",
    "CommandOrchestrator",
    "OrchestrationPhase",
    "StartFailed",
]
