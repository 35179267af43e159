from __future__ import annotations

import asyncio
import io
from datetime import datetime
from pathlib import Path

import pytest

from spec_tui.app import LineRenderer, StdinKeySource, create_app, format_snapshot, main, split_keys
from spec_tui.config import SpecTuiSettings
from spec_tui.protocol import ScriptedAgent
from spec_tui.scheduler import SpecRow, StateSnapshot
from spec_tui.specs import Specification, WorkflowCommandKind
from spec_tui.workflow import ExecutionState, OutputLine, OutputStream
from spec_tui.worktrees import SyncStatus, Worktree, WorktreeStatus


class QuitLater:
    def __init__(self, delay: float = 0.1) -> None:
        self.delay = delay

    async def __aiter__(self):
        await asyncio.sleep(self.delay)
        yield "q"


class Frames:
    def __init__(self) -> None:
        self.frames: list[StateSnapshot] = []

    def render(self, snapshot: StateSnapshot) -> None:
        self.frames.append(snapshot)


def snapshot_for(spec_repo: Path, **overrides) -> StateSnapshot:
    auth = Specification.from_directory(spec_repo / "specs" / "001-feature-auth")
    export = Specification.from_directory(spec_repo / "specs" / "002-export")
    worktree = Worktree(
        path=spec_repo / ".worktrees" / "002-export",
        branch="002-export",
        status=WorktreeStatus.dirty(modified=1),
    )
    values = dict(
        rows=(
            SpecRow(spec=auth),
            SpecRow(
                spec=export,
                worktree=worktree,
                sync=SyncStatus(ahead=1, behind=3),
                command_kind=WorkflowCommandKind.PLAN,
                command_state=ExecutionState.running(datetime(2025, 1, 1, 10, 0, 0)),
                progress=0.5,
            ),
        ),
        selected=1,
        available_commands=(WorkflowCommandKind.CLARIFY, WorkflowCommandKind.PLAN),
        output=(OutputLine(datetime(2025, 1, 1, 10, 0, 5), "Analyzing", OutputStream.PROGRESS),),
        message="Started Plan for 002-export",
        active_worktree=worktree.path,
        operations=(),
    )
    values.update(overrides)
    return StateSnapshot(**values)


def test_split_keys() -> None:
    assert list(split_keys("jj down q\n")) == ["j", "j", "down", "q"]
    assert list(split_keys("   \n")) == []


def test_format_snapshot(spec_repo: Path) -> None:
    lines = format_snapshot(snapshot_for(spec_repo))

    assert lines[0] == "  001-feature-auth [IMPL]"
    assert lines[1].startswith("> 002-export [CLARIFY] wt:002-export* (active) +1/-3 ")
    assert lines[1].endswith("Plan 50%")
    assert lines[2] == "next: [c] Clarify / [p] Plan"
    assert lines[3] == "  [10:00:05] [PROGRESS] Analyzing"
    assert lines[-1] == "-- Started Plan for 002-export"


def test_format_empty_snapshot(spec_repo: Path) -> None:
    lines = format_snapshot(snapshot_for(spec_repo, rows=(), available_commands=(), output=(), message=None))

    assert lines == ["  (no specifications)"]


def test_line_renderer_skips_unchanged_frames(spec_repo: Path) -> None:
    stream = io.StringIO()
    renderer = LineRenderer(stream)
    snapshot = snapshot_for(spec_repo)

    renderer.render(snapshot)
    renderer.render(snapshot)
    renderer.render(snapshot_for(spec_repo, message="Cancelled Plan for 002-export"))

    frames = [frame for frame in stream.getvalue().split("\n\n") if frame]
    assert len(frames) == 2
    assert frames[1].endswith("-- Cancelled Plan for 002-export")


def test_stdin_key_source_ends_with_quit() -> None:
    async def scenario():
        source = StdinKeySource(io.StringIO("j k\ndown\n"))
        return [key async for key in source]

    assert asyncio.run(scenario()) == ["j", "k", "down", "q"]


def test_main_reports_configuration_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    (root / ".spec-tui.yaml").write_text("worker_count: [", encoding="utf-8")
    monkeypatch.chdir(root)

    assert main(["--project", str(root)]) == 2
    assert "Configuration error" in capsys.readouterr().err


def test_main_requires_a_repository(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    root = tmp_path / "plain"
    root.mkdir()
    monkeypatch.chdir(root)

    assert main(["--project", str(root)]) == 1
    assert "Not a git repository" in capsys.readouterr().err


def test_create_app_runs_until_quit(spec_repo: Path, stub_backend) -> None:
    agent = ScriptedAgent()
    renderer = Frames()
    settings = SpecTuiSettings(project_root=spec_repo, refresh_rate_ms=10).resolved()
    app = create_app(settings, renderer=renderer, keys=QuitLater(), backend=stub_backend, transport_factory=agent)

    state = asyncio.run(app.run())

    assert not state.running
    assert [spec.id.value for spec in state.specs] == ["001-feature-auth", "002-export", "003-import"]
    assert state.active_worktree == spec_repo.resolve()
    assert any(len(frame.rows) == 3 for frame in renderer.frames)
    assert agent.transports == []
    assert app.settings.specs_dir == spec_repo.resolve() / "specs"
