from __future__ import annotations

import importlib.util
import json
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SCRIPT = REPO_ROOT / "scripts" / "spec_tui_diag.py"


def load_diag(name: str):
    spec = importlib.util.spec_from_file_location(name, SCRIPT)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def project(tmp_path: Path, make_spec, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    make_spec(root / "specs", "001-feature-auth", "spec.md", "plan.md", "tasks.md")
    make_spec(root / "specs", "002-export", "spec.md")
    monkeypatch.chdir(root)
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    return root


def test_specs_as_json(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    diag = load_diag("spec_tui_diag_specs")

    diag.main(["--project", str(project), "specs", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert [(item["id"], item["phase"], item["next"]) for item in payload] == [
        ("001-feature-auth", "implement", ["implement"]),
        ("002-export", "clarify", ["clarify", "plan"]),
    ]


def test_new_prints_next_id(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    diag = load_diag("spec_tui_diag_new")

    diag.main(["--project", str(project), "new", "Data Sync"])

    captured = capsys.readouterr()
    assert captured.out.strip() == "003-data-sync"
    assert captured.err.startswith("Branch 003-data-sync not created")
    assert (project / "specs" / "003-data-sync" / "spec.md").exists()


def test_run_rejects_unavailable_command(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    diag = load_diag("spec_tui_diag_reject")

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["--project", str(project), "run", "002-export", "tasks"])

    assert excinfo.value.code == 1
    assert capsys.readouterr().out.strip() == "Tasks is not available for 002-export (allowed: clarify, plan)"


def test_tools_reports_missing_agent(
    project: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("SPEC_TUI_AGENT_COMMAND", str(tmp_path / "no-such-agent"))
    monkeypatch.setenv("SPEC_TUI_AGENT_ARGS", "")
    diag = load_diag("spec_tui_diag_tools")

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["--project", str(project), "tools"])

    assert excinfo.value.code == 1
    assert "Agent unavailable" in capsys.readouterr().out


def test_run_streams_agent_output(
    project: Path,
    agent_script: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("SPEC_TUI_AGENT_COMMAND", sys.executable)
    monkeypatch.setenv("SPEC_TUI_AGENT_ARGS", f"{shlex.quote(str(agent_script))} newline")
    diag = load_diag("spec_tui_diag_run")

    diag.main(["--project", str(project), "run", "002-export", "plan", "--timeout", "10"])

    assert capsys.readouterr().out.splitlines() == ["[PROGRESS] halfway", "[OUT] planned 002-export"]


def test_script_runs_standalone(project: Path) -> None:
    env = os.environ.copy()
    env["PYTHONPATH"] = str(REPO_ROOT / "src") + os.pathsep + env.get("PYTHONPATH", "")
    process = subprocess.run(
        [sys.executable, str(SCRIPT), "--project", str(project), "specs"],
        cwd=str(project),
        capture_output=True,
        text=True,
        env=env,
    )

    assert process.returncode == 0
    assert process.stdout.splitlines() == ["001-feature-auth [IMPL]", "002-export [CLARIFY]"]


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_new_creates_spec_branch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    root = tmp_path / "repo"
    root.mkdir()
    for args in (("init",), ("symbolic-ref", "HEAD", "refs/heads/main"), ("commit", "--allow-empty", "-m", "initial")):
        subprocess.run(
            ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", "-c", "commit.gpgsign=false", *args],
            cwd=root,
            check=True,
            capture_output=True,
        )
    monkeypatch.chdir(root)
    diag = load_diag("spec_tui_diag_branch")

    diag.main(["--project", str(root), "new", "Data Sync"])

    captured = capsys.readouterr()
    assert captured.out.strip() == "001-data-sync"
    assert captured.err == ""
    branches = subprocess.run(
        ["git", "branch", "--list", "001-data-sync"], cwd=root, capture_output=True, text=True, check=True
    ).stdout
    assert "001-data-sync" in branches
