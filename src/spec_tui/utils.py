"""Environment construction for the agent and git child processes."""

from __future__ import annotations

import os
from typing import Mapping

# Interpreter overrides from our own virtualenv stay out of child processes.
_INTERPRETER_VARS = frozenset({"PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV", "PIP_RESPECT_VIRTUALENV"})
_SETTINGS_PREFIX = "SPEC_TUI_"

# git must never prompt, and `status` must not take the index lock while a
# worker adds or removes a worktree.
_GIT_VARS = {"GIT_TERMINAL_PROMPT": "0", "GIT_OPTIONAL_LOCKS": "0"}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy ``os.environ`` without interpreter overrides or spec-tui settings, then apply ``additional``."""

    env = {
        key: value
        for key, value in os.environ.items()
        if key not in _INTERPRETER_VARS and not key.startswith(_SETTINGS_PREFIX)
    }
    if additional:
        env.update(additional)
    return env


def git_environment() -> dict[str, str]:
    return sanitize_environment(_GIT_VARS)


__all__ = ["git_environment", "sanitize_environment"]
