"""The single event loop consumer that owns application state.

Key presses, finished worktree operations, protocol command events and
render ticks all land on one :class:`asyncio.Queue`. The scheduler applies
them strictly one at a time and redraws only on :class:`Tick`, so the
renderer always sees a state between two events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Protocol

from .protocol.client import ProtocolClient
from .protocol.errors import ProtocolError
from .specs.loader import SpecDiscovery, SpecLoadError
from .specs.models import Specification, WorkflowCommandKind
from .workflow.errors import OrchestrationError
from .workflow.logfile import CommandLog
from .workflow.models import ExecutionState, OutputLine
from .workflow.orchestrator import CommandEvent, CommandOrchestrator, OrchestrationPhase
from .worktrees.dispatcher import BlockingOperationDispatcher, OperationResult, PendingOperation
from .worktrees.errors import ResourceError
from .worktrees.manager import WorktreeManager, find_by_branch, guard_create, guard_delete
from .worktrees.models import SyncStatus, Worktree

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 20

OP_DISCOVER = "discover"
OP_LIST = "list"
OP_CREATE = "create"
OP_DELETE = "delete"
OP_SYNC = "sync"

_MUTATING = frozenset({OP_CREATE, OP_DELETE})


@dataclass(frozen=True, slots=True)
class KeyPressed:
    key: str


@dataclass(frozen=True, slots=True)
class OperationFinished:
    result: OperationResult


@dataclass(frozen=True, slots=True)
class Tick:
    at: float = 0.0


SchedulerEvent = KeyPressed | OperationFinished | CommandEvent | Tick


@dataclass(frozen=True, slots=True)
class SpecRow:
    spec: Specification
    worktree: Worktree | None = None
    sync: SyncStatus | None = None
    command_kind: WorkflowCommandKind | None = None
    command_state: ExecutionState | None = None
    progress: float | None = None
    orchestration: OrchestrationPhase = OrchestrationPhase.IDLE


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    """Immutable view of :class:`AppState` handed to the renderer."""

    rows: tuple[SpecRow, ...]
    selected: int
    available_commands: tuple[WorkflowCommandKind, ...]
    output: tuple[OutputLine, ...]
    message: str | None
    active_worktree: Path | None
    operations: tuple[PendingOperation, ...]


@dataclass(slots=True)
class AppState:
    specs: list[Specification] = field(default_factory=list)
    worktrees: list[Worktree] = field(default_factory=list)
    sync: dict[str, SyncStatus] = field(default_factory=dict)
    selected: int = 0
    active_worktree: Path | None = None
    message: str | None = None
    dirty: bool = True
    running: bool = True

    def selected_spec(self) -> Specification | None:
        if not self.specs:
            return None
        return self.specs[min(self.selected, len(self.specs) - 1)]

    def worktree_for(self, spec: Specification) -> Worktree | None:
        return find_by_branch(self.worktrees, spec.branch)

    @property
    def available_commands(self) -> tuple[WorkflowCommandKind, ...]:
        """Next commands for the selection; in Clarify both Clarify and Plan are offered."""

        spec = self.selected_spec()
        return spec.available_commands() if spec is not None else ()

    def move(self, delta: int) -> None:
        if not self.specs:
            self.selected = 0
            return
        self.selected = max(0, min(self.selected + delta, len(self.specs) - 1))


class Renderer(Protocol):
    def render(self, snapshot: StateSnapshot) -> None:
        ...


class KeySource(Protocol):
    def __aiter__(self) -> AsyncIterator[str]:
        ...


def list_with_status(manager: WorktreeManager) -> list[Worktree]:
    """Enumerate worktrees and fill in each status; runs on the worker pool."""

    worktrees = manager.list()
    for worktree in worktrees:
        if worktree.is_bare:
            continue
        worktree.status = manager.status(worktree.path)
    return worktrees


def create_for_spec(manager: WorktreeManager, branch: str, start_point: str | None = None) -> Worktree:
    """Create the spec branch if it is missing, then its worktree; runs on the worker pool."""

    manager.ensure_branch(branch, start_point)
    return manager.create(branch)


class Scheduler:
    """Merge every event source into one ordered stream applied to :class:`AppState`."""

    def __init__(
        self,
        *,
        discovery: SpecDiscovery,
        worktrees: WorktreeManager,
        client: ProtocolClient,
        renderer: Renderer,
        keys: KeySource | None = None,
        command_log: CommandLog | None = None,
        command_timeout: float | None = 60.0,
        refresh_interval: float = 0.1,
        max_workers: int = 4,
        active_worktree: Path | None = None,
        main_branch: str | None = None,
    ) -> None:
        self._discovery = discovery
        self._worktrees = worktrees
        self._renderer = renderer
        self._keys = keys
        self._refresh_interval = refresh_interval
        self._main_branch = main_branch
        self._queue: asyncio.Queue[SchedulerEvent] = asyncio.Queue()
        self.state = AppState(active_worktree=active_worktree)
        self.dispatcher = BlockingOperationDispatcher(self._on_result, max_workers=max_workers)
        self.orchestrator = CommandOrchestrator(client, self.post, log=command_log, timeout=command_timeout)
        self._bindings: dict[str, Callable[[], None]] = {
            "q": self.quit,
            "j": lambda: self.state.move(1),
            "down": lambda: self.state.move(1),
            "k": lambda: self.state.move(-1),
            "up": lambda: self.state.move(-1),
            "r": self.refresh,
            "w": self.switch_worktree,
            "d": lambda: self.delete_worktree(force=False),
            "D": lambda: self.delete_worktree(force=True),
            "x": self.cancel_command,
            "S": self.refresh_sync,
        }
        for kind in WorkflowCommandKind:
            self._bindings[kind.shortcut] = lambda kind=kind: self.trigger(kind)

    # ------------------------------------------------------------------ event loop

    def post(self, event: SchedulerEvent) -> None:
        """Enqueue ``event``; safe to call from loop callbacks and tasks."""

        self._queue.put_nowait(event)

    @property
    def idle(self) -> bool:
        """True when no event is queued and no worktree operation is in flight."""

        return self._queue.empty() and not self.dispatcher.in_flight

    def _on_result(self, result: OperationResult) -> None:
        self.post(OperationFinished(result))

    async def run(self) -> AppState:
        """Consume events until quit, then stop background work."""

        self.refresh()
        tasks = [asyncio.create_task(self._tick_loop(), name="spec-tui-ticker")]
        if self._keys is not None:
            tasks.append(asyncio.create_task(self._key_loop(), name="spec-tui-keys"))
        try:
            while self.state.running:
                await self.step()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.orchestrator.close()
            self.dispatcher.shutdown()
        return self.state

    async def step(self) -> SchedulerEvent:
        """Wait for the next event and apply it."""

        event = await self._queue.get()
        self.handle(event)
        return event

    async def _tick_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._refresh_interval)
            self.post(Tick(loop.time()))

    async def _key_loop(self) -> None:
        async for key in self._keys:
            self.post(KeyPressed(key))

    def handle(self, event: SchedulerEvent) -> None:
        """Apply one event; errors become the status message and never stop the loop."""

        if isinstance(event, Tick):
            self._render()
            return
        try:
            if isinstance(event, KeyPressed):
                self._on_key(event.key)
            elif isinstance(event, OperationFinished):
                self._on_operation(event.result)
            elif isinstance(event, CommandEvent):
                self._on_command(event)
        except (ResourceError, OrchestrationError, ProtocolError, SpecLoadError) as exc:
            self.state.message = str(exc)
        except Exception as exc:
            logger.exception("Failed to apply event", extra={"event": type(event).__name__})
            self.state.message = f"Internal error: {exc}"
        self.state.dirty = True

    def _render(self) -> None:
        if not self.state.dirty:
            return
        self.state.dirty = False
        try:
            self._renderer.render(self.snapshot())
        except Exception:
            logger.exception("Renderer failed")

    def snapshot(self) -> StateSnapshot:
        state = self.state
        rows = []
        for spec in state.specs:
            worktree = state.worktree_for(spec)
            command = self.orchestrator.latest_command(spec.id)
            rows.append(
                SpecRow(
                    spec=spec,
                    worktree=worktree,
                    sync=state.sync.get(spec.branch),
                    command_kind=command.kind if command else None,
                    command_state=command.state if command else None,
                    progress=command.progress if command else None,
                    orchestration=self.orchestrator.phase_of(spec.id),
                )
            )

        output: tuple[OutputLine, ...] = ()
        selected = state.selected_spec()
        if selected is not None:
            command = self.orchestrator.latest_command(selected.id)
            if command is not None:
                output = tuple(command.output[-OUTPUT_TAIL:])

        return StateSnapshot(
            rows=tuple(rows),
            selected=state.selected,
            available_commands=state.available_commands,
            output=output,
            message=state.message,
            active_worktree=state.active_worktree,
            operations=tuple(self.dispatcher.in_flight),
        )

    # ------------------------------------------------------------------ handlers

    def _on_key(self, key: str) -> None:
        action = self._bindings.get(key)
        if action is None:
            logger.debug("Unbound key", extra={"key": key})
            return
        self.state.message = None
        action()

    def _on_operation(self, result: OperationResult) -> None:
        operation = result.operation
        if operation.kind in _MUTATING:
            self._submit_list()

        if not result.ok:
            logger.info(
                "Operation failed",
                extra={"kind": operation.kind, "target": operation.target, "error": str(result.error)},
            )
            self.state.message = str(result.error)
            return

        if operation.kind == OP_DISCOVER:
            self.state.specs = list(result.value)
            self.state.move(0)
        elif operation.kind == OP_LIST:
            self.state.worktrees = list(result.value)
        elif operation.kind == OP_CREATE:
            worktree: Worktree = result.value
            self.state.active_worktree = worktree.path
            self.state.message = f"Switched to {worktree.branch} at {worktree.path}"
        elif operation.kind == OP_DELETE:
            self.state.message = f"Deleted worktree {operation.target}"
        elif operation.kind == OP_SYNC:
            self.state.sync[operation.target] = result.value

    def _on_command(self, event: CommandEvent) -> None:
        command = self.orchestrator.apply(event)
        if command is None or not command.is_terminal:
            return
        self.state.message = f"{command.kind.display_name} for {command.spec_id}: {command.state.describe()}"
        # new artifacts change the phase
        self._submit(OP_DISCOVER, self._discovery.discover, target=str(self._discovery.specs_dir))

    # ------------------------------------------------------------------ actions

    def quit(self) -> None:
        self.state.running = False

    def refresh(self) -> None:
        self._submit(OP_DISCOVER, self._discovery.discover, target=str(self._discovery.specs_dir))
        self._submit_list()

    def _submit_list(self) -> None:
        self._submit(OP_LIST, list_with_status, self._worktrees)

    def _submit(self, kind: str, fn: Callable, *args, target: str = "", **kwargs) -> PendingOperation:
        return self.dispatcher.submit(kind, fn, *args, target=target, **kwargs)

    def _in_flight(self, kind: str, target: str) -> bool:
        return any(op.kind == kind and op.target == target for op in self.dispatcher.in_flight)

    def _require_selection(self) -> Specification:
        spec = self.state.selected_spec()
        if spec is None:
            raise SpecLoadError("No specification selected")
        return spec

    def switch_worktree(self) -> None:
        spec = self._require_selection()
        worktree = self.state.worktree_for(spec)
        if worktree is not None:
            self.state.active_worktree = worktree.path
            self.state.message = f"Switched to {worktree.branch} at {worktree.path}"
            return
        if self._in_flight(OP_CREATE, spec.branch):
            self.state.message = f"Worktree for {spec.branch} is already being created"
            return
        guard_create(self.state.worktrees, spec.branch)
        self._submit(OP_CREATE, create_for_spec, self._worktrees, spec.branch, self._main_branch, target=spec.branch)
        self.state.message = f"Creating worktree for {spec.branch}"

    def delete_worktree(self, *, force: bool) -> None:
        spec = self._require_selection()
        worktree = self.state.worktree_for(spec)
        if worktree is None:
            self.state.message = f"No worktree for {spec.id}"
            return
        target = str(worktree.path)
        if self._in_flight(OP_DELETE, target):
            self.state.message = f"Worktree {target} is already being deleted"
            return
        guard_delete(self.state.worktrees, worktree.path, self.state.active_worktree)
        self._submit(
            OP_DELETE,
            self._worktrees.delete,
            worktree.path,
            force=force,
            active_path=self.state.active_worktree,
            target=target,
        )
        self.state.message = f"Deleting worktree {target}"

    def cancel_command(self) -> None:
        spec = self._require_selection()
        command = self.orchestrator.cancel(spec.id)
        if command is None:
            self.state.message = f"Nothing running for {spec.id}"
        else:
            self.state.message = f"Cancelled {command.kind.display_name} for {spec.id}"

    def trigger(self, kind: WorkflowCommandKind) -> None:
        spec = self._require_selection()
        command = self.orchestrator.dispatch(spec, kind)
        self.state.message = f"Started {command.kind.display_name} for {spec.id}"

    def refresh_sync(self) -> None:
        for worktree in self.state.worktrees:
            if worktree.is_main or worktree.is_detached or self._in_flight(OP_SYNC, worktree.branch):
                continue
            self._submit(OP_SYNC, self._worktrees.sync_status, worktree.branch, target=worktree.branch)


__all__ = [
    "AppState",
    "KeyPressed",
    "KeySource",
    "OperationFinished",
    "Renderer",
    "Scheduler",
    "SchedulerEvent",
    "SpecRow",
    "StateSnapshot",
    "Tick",
    "create_for_spec",
    "list_with_status",
]
