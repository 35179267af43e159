from __future__ import annotations

import pytest

from spec_tui.utils import git_environment, sanitize_environment


def test_child_environment_drops_interpreter_and_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    monkeypatch.setenv("PYTHONPATH", "/venv/src")
    monkeypatch.setenv("SPEC_TUI_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("AGENT_TOKEN", "abc")

    env = sanitize_environment({"EXTRA": "1"})

    assert "VIRTUAL_ENV" not in env
    assert "PYTHONPATH" not in env
    assert "SPEC_TUI_LOG_LEVEL" not in env
    assert env["AGENT_TOKEN"] == "abc"
    assert env["EXTRA"] == "1"


def test_git_environment_never_prompts() -> None:
    env = git_environment()

    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["GIT_OPTIONAL_LOCKS"] == "0"
