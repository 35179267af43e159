"""Per-command log files.

Each command gets one file under the log directory::

    # Workflow: speckit.plan for 003-export
    # Started: 2025-01-01T10:00:00
    # Directory: /repo/specs/003-export
    ---
    [10:00:01] [OUT] ...
    ---
    # Finished: 2025-01-01T10:00:09
    # Status: completed (exit 0, 8.0s)

Lines are appended (and flushed) as they arrive, so a crash leaves a
readable prefix behind.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from .models import OutputLine, WorkflowCommand

logger = logging.getLogger(__name__)

SEPARATOR = "---"


class CommandLog:
    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def path_for(self, command: WorkflowCommand, now: datetime | None = None) -> Path:
        stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
        return self._log_dir / f"{command.spec_id}-{command.kind.value}-{stamp}-{command.command_id}.log"

    def open(self, command: WorkflowCommand, directory: Path) -> Path:
        """Create the log file with its header and attach it to ``command``."""

        now = datetime.now()
        path = self.path_for(command, now)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        header = [
            f"# Workflow: {command.kind.tool_name} for {command.spec_id}",
            f"# Started: {now.isoformat(timespec='seconds')}",
            f"# Directory: {directory}",
            SEPARATOR,
        ]
        path.write_text("\n".join(header) + "\n", encoding="utf-8")
        command.log_path = path
        logger.debug("Opened command log", extra={"command_id": command.command_id, "path": str(path)})
        return path

    def append(self, command: WorkflowCommand, line: OutputLine) -> None:
        if command.log_path is None:
            return
        with command.log_path.open("a", encoding="utf-8") as handle:
            handle.write(line.format() + "\n")
            handle.flush()

    def finish(self, command: WorkflowCommand) -> None:
        if command.log_path is None:
            return
        footer = [
            SEPARATOR,
            f"# Finished: {datetime.now().isoformat(timespec='seconds')}",
            f"# Status: {command.state.describe()}",
        ]
        with command.log_path.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(footer) + "\n")


def read_output(path: Path) -> list[str]:
    """Return the output lines of a command log, without header or footer."""

    lines = Path(path).read_text(encoding="utf-8").splitlines()
    try:
        start = lines.index(SEPARATOR) + 1
    except ValueError:
        return []
    body = lines[start:]
    if SEPARATOR in body:
        body = body[: body.index(SEPARATOR)]
    return body


__all__ = ["CommandLog", "SEPARATOR", "read_output"]
