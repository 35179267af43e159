"""Interactive entry point for spec-tui."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator, TextIO

from .config import SettingsLoadError, SpecTuiSettings, get_settings, load_settings
from .protocol.client import ProtocolClient
from .protocol.transport import StdioTransport, Transport
from .scheduler import AppState, KeySource, Renderer, Scheduler, StateSnapshot
from .specs.loader import SpecDiscovery
from .workflow.logfile import CommandLog
from .worktrees.backend import GitWorktreeBackend, WorktreeBackend
from .worktrees.errors import NotARepositoryError
from .worktrees.manager import WorktreeManager

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
NAMED_KEYS = frozenset({"up", "down"})

logger = logging.getLogger(__name__)


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure root logging; the terminal belongs to the renderer, so prefer a file."""

    options: dict = {"level": getattr(logging, level, logging.WARNING), "format": LOG_FORMAT}
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        options["filename"] = str(log_file)
    logging.basicConfig(**options)


def split_keys(line: str) -> Iterator[str]:
    """Turn one input line into key names: ``up``/``down`` words or single characters."""

    for token in line.split():
        if token in NAMED_KEYS:
            yield token
        else:
            yield from token


class StdinKeySource:
    """Line-buffered key source; end of input is treated as ``q``."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdin

    async def __aiter__(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str | None] = asyncio.Queue()

        def pump() -> None:
            try:
                for line in self._stream:
                    for key in split_keys(line):
                        loop.call_soon_threadsafe(queue.put_nowait, key)
                loop.call_soon_threadsafe(queue.put_nowait, None)
            except RuntimeError:
                # loop already closed
                return

        # daemon: a blocked readline must not hold up interpreter exit
        threading.Thread(target=pump, name="spec-tui-stdin", daemon=True).start()
        while True:
            key = await queue.get()
            if key is None:
                yield "q"
                return
            yield key


def format_snapshot(snapshot: StateSnapshot) -> list[str]:
    lines: list[str] = []
    for index, row in enumerate(snapshot.rows):
        marker = ">" if index == snapshot.selected else " "
        parts = [f"{marker} {row.spec.id}", row.spec.phase.badge]
        if row.worktree is not None:
            active = snapshot.active_worktree is not None and row.worktree.path == snapshot.active_worktree
            parts.append(f"wt:{row.worktree.branch}{row.worktree.status.indicator}{' (active)' if active else ''}")
        if row.sync is not None:
            parts.append(row.sync.describe())
        if row.command_kind is not None and row.command_state is not None:
            progress = f" {row.progress:.0%}" if row.progress is not None and not row.command_state.is_terminal else ""
            parts.append(f"{row.command_state.badge} {row.command_kind.display_name}{progress}")
        lines.append(" ".join(parts))

    if not snapshot.rows:
        lines.append("  (no specifications)")
    if snapshot.available_commands:
        lines.append(
            "next: " + " / ".join(f"[{kind.shortcut}] {kind.display_name}" for kind in snapshot.available_commands)
        )
    lines.extend(f"  {line.format()}" for line in snapshot.output)
    if snapshot.operations:
        lines.append("busy: " + ", ".join(f"{op.kind} {op.target}".strip() for op in snapshot.operations))
    if snapshot.message:
        lines.append(f"-- {snapshot.message}")
    return lines


class LineRenderer:
    """Print a plain-text frame whenever the visible state changes."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._last: str | None = None

    def render(self, snapshot: StateSnapshot) -> None:
        text = "\n".join(format_snapshot(snapshot))
        if text == self._last:
            return
        self._last = text
        self._stream.write(text + "\n\n")
        self._stream.flush()


@dataclass(slots=True)
class Application:
    settings: SpecTuiSettings
    client: ProtocolClient
    scheduler: Scheduler

    async def run(self) -> AppState:
        try:
            return await self.scheduler.run()
        finally:
            await self.client.shutdown()


def create_app(
    settings: SpecTuiSettings | None = None,
    *,
    renderer: Renderer | None = None,
    keys: KeySource | None = None,
    backend: WorktreeBackend | None = None,
    transport_factory: Callable[[], Transport] | None = None,
) -> Application:
    """Wire settings, services and the scheduler together."""

    settings = settings or get_settings()
    backend = backend or GitWorktreeBackend(settings.project_root, remote=settings.remote)

    def spawn_agent() -> Transport:
        return StdioTransport(settings.agent_argv, cwd=settings.project_root, framing=settings.framing)

    client = ProtocolClient(
        transport_factory or spawn_agent,
        request_timeout=settings.request_timeout,
        shutdown_timeout=settings.shutdown_timeout,
    )
    scheduler = Scheduler(
        discovery=SpecDiscovery(settings.specs_dir),
        worktrees=WorktreeManager(backend, settings.worktree_dir),
        client=client,
        renderer=renderer or LineRenderer(),
        keys=keys if keys is not None else StdinKeySource(),
        command_log=CommandLog(settings.log_dir),
        command_timeout=settings.command_timeout,
        refresh_interval=settings.refresh_interval,
        max_workers=settings.worker_count,
        active_worktree=settings.project_root,
        main_branch=settings.main_branch,
    )
    logger.info(
        "Application created",
        extra={"project_root": str(settings.project_root), "agent": settings.agent_argv},
    )
    return Application(settings=settings, client=client, scheduler=scheduler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spec-tui", description="Spec-driven workflow terminal")
    parser.add_argument("--project", type=Path, default=None, help="Project directory (defaults to the current one)")
    parser.add_argument(
        "--log-level",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        type=str.upper,
        default=None,
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.project)
    except SettingsLoadError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    if args.log_level:
        settings = settings.model_copy(update={"log_level": args.log_level})

    configure_logging(settings.log_level, settings.log_file)
    try:
        app = create_app(settings)
    except NotARepositoryError as exc:
        print(f"spec-tui: {exc}", file=sys.stderr)
        return 1
    asyncio.run(app.run())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
