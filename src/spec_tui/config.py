"""Configuration management for spec-tui."""

from __future__ import annotations

import logging
import shlex
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

PROJECT_CONFIG_NAME = ".spec-tui.yaml"

logger = logging.getLogger(__name__)


class SettingsLoadError(RuntimeError):
    """Raised when the project configuration file cannot be used."""


class SpecTuiSettings(BaseSettings):
    """Runtime configuration sourced from environment variables, .env and the project file."""

    model_config = SettingsConfigDict(
        env_prefix="SPEC_TUI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    project_root: Path = Field(default=Path("."))
    specs_dir: Path = Field(default=Path("specs"))
    worktree_dir: Path = Field(default=Path(".worktrees"))
    log_dir: Path = Field(default=Path(".spec-tui/logs"))
    log_file: Path | None = Field(default=Path(".spec-tui/spec-tui.log"))
    log_level: str = Field(default="WARNING")
    agent_command: str = Field(default="claude")
    agent_args: str = Field(default="--mcp")
    framing: Literal["newline", "content-length"] = Field(default="newline")
    command_timeout: float = Field(default=60.0)
    request_timeout: float = Field(default=30.0)
    shutdown_timeout: float = Field(default=5.0)
    refresh_rate_ms: int = Field(default=100)
    worker_count: int = Field(default=4)
    main_branch: str = Field(default="main")
    remote: str = Field(default="origin")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Keyword arguments carry project file values, so the environment wins over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SPEC_TUI_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("framing", mode="before")
    @classmethod
    def _normalize_framing(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("command_timeout", "request_timeout", "shutdown_timeout")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("refresh_rate_ms", "worker_count")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("refresh_rate_ms and worker_count must be >= 1")
        return value

    @property
    def agent_argv(self) -> list[str]:
        """Return the agent command line as an argument vector."""

        return [self.agent_command, *shlex.split(self.agent_args)]

    @property
    def refresh_interval(self) -> float:
        return self.refresh_rate_ms / 1000.0

    def resolved(self) -> "SpecTuiSettings":
        """Return a copy whose relative paths are anchored at the project root."""

        root = self.project_root.expanduser().resolve()

        def anchor(path: Path) -> Path:
            path = path.expanduser()
            return path if path.is_absolute() else root / path

        return self.model_copy(
            update={
                "project_root": root,
                "specs_dir": anchor(self.specs_dir),
                "worktree_dir": anchor(self.worktree_dir),
                "log_dir": anchor(self.log_dir),
                "log_file": anchor(self.log_file) if self.log_file is not None else None,
            }
        )


def discover_project_root(start: Path | None = None) -> Path:
    """Walk up from ``start`` to the first directory holding a ``.git`` entry.

    Worktrees carry a ``.git`` file rather than a directory, so either counts.
    Falls back to ``start`` itself when no repository is found.
    """

    origin = Path(start or Path.cwd()).expanduser().resolve()
    for candidate in (origin, *origin.parents):
        if (candidate / ".git").exists():
            return candidate
    return origin


def read_project_file(path: Path) -> dict[str, Any]:
    """Load the flat mapping stored in a project configuration file."""

    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise SettingsLoadError(f"Failed to parse YAML in {path}: {exc}") from exc

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise SettingsLoadError(f"{path} must contain a mapping of settings")

    known = set(SpecTuiSettings.model_fields)
    unknown = sorted(str(key) for key in document if key not in known)
    if unknown:
        logger.warning("Ignoring unknown settings", extra={"path": str(path), "keys": unknown})
    return {key: value for key, value in document.items() if key in known}


def load_settings(project_root: Path | None = None) -> SpecTuiSettings:
    """Build settings for a project: defaults, then project file, then environment."""

    root = discover_project_root(project_root)
    values = read_project_file(root / PROJECT_CONFIG_NAME)
    values.setdefault("project_root", root)
    try:
        settings = SpecTuiSettings(**values)
    except ValidationError as exc:
        raise SettingsLoadError(f"Invalid configuration for {root}: {exc}") from exc
    return settings.resolved()


@lru_cache(maxsize=1)
def get_settings() -> SpecTuiSettings:
    """Return cached settings for the project containing the working directory."""

    return load_settings()


__all__ = [
    "PROJECT_CONFIG_NAME",
    "SettingsLoadError",
    "SpecTuiSettings",
    "discover_project_root",
    "get_settings",
    "load_settings",
    "read_project_file",
]
