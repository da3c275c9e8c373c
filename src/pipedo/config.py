"""Configuration management for pipedo."""

from __future__ import annotations

import shlex
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

CommandLine = Annotated[tuple[str, ...], NoDecode]


class PipedoSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_home: Path = Field(default=Path("."), validation_alias="PIPEDO_APP")
    run_root: Path | None = Field(default=None, validation_alias="PIPEDO_RUN_ROOT")
    log_level: str = Field(default="INFO", validation_alias="PIPEDO_LOG_LEVEL")
    verbosity: int = Field(default=1, validation_alias="PIPEDO_VERBOSITY")
    edit_plan: bool = Field(default=True, validation_alias="PIPEDO_PLAN_EDIT")
    editor: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PIPEDO_EDITOR", "VISUAL", "EDITOR"),
    )
    done_command: CommandLine = Field(
        default=("pipedo-done",), validation_alias="PIPEDO_DONE_COMMAND"
    )
    plan_command: CommandLine = Field(
        default=("pipedo-plan",), validation_alias="PIPEDO_PLAN_COMMAND"
    )
    version_command: CommandLine = Field(
        default=("pipedo-version",), validation_alias="PIPEDO_VERSION_COMMAND"
    )
    plan_shell: str = Field(default="bash", validation_alias="PIPEDO_PLAN_SHELL")
    progress_marker: str = Field(default="## done: ", validation_alias="PIPEDO_PROGRESS_MARKER")
    done_marker_pattern: str = Field(
        default="{target}*", validation_alias="PIPEDO_DONE_MARKER_PATTERN"
    )
    escalation_initial_backoff: float = Field(
        default=1.0, validation_alias="PIPEDO_ESCALATION_BACKOFF"
    )
    escalation_max_rounds: int = Field(default=6, validation_alias="PIPEDO_ESCALATION_MAX_ROUNDS")
    log_tail_lines: int = Field(default=40, validation_alias="PIPEDO_LOG_TAIL_LINES")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "PIPEDO_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("done_command", "plan_command", "version_command", mode="before")
    @classmethod
    def _parse_command(cls, value):
        if isinstance(value, str):
            parts = tuple(shlex.split(value))
            if not parts:
                raise ValueError("command must not be empty")
            return parts
        if isinstance(value, (list, tuple)):
            if not value:
                raise ValueError("command must not be empty")
            return tuple(str(item) for item in value)
        raise TypeError("commands must be a shell-style string or a sequence of arguments")

    @field_validator("editor", mode="before")
    @classmethod
    def _blank_editor(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("verbosity", "log_tail_lines")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("PIPEDO_VERBOSITY and PIPEDO_LOG_TAIL_LINES must be >= 0")
        return value

    @field_validator("escalation_initial_backoff")
    @classmethod
    def _validate_backoff(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("PIPEDO_ESCALATION_BACKOFF must be > 0")
        return value

    @field_validator("escalation_max_rounds")
    @classmethod
    def _validate_max_rounds(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PIPEDO_ESCALATION_MAX_ROUNDS must be >= 1")
        return value

    @property
    def resolved_run_root(self) -> Path:
        """Directory holding session workspaces and status pointers."""

        return self.run_root if self.run_root is not None else self.app_home / "run"


@lru_cache(maxsize=1)
def get_settings() -> PipedoSettings:
    """Return cached settings instance."""

    settings = PipedoSettings()
    settings.app_home = settings.app_home.expanduser().resolve()
    if settings.run_root is not None:
        settings.run_root = settings.run_root.expanduser().resolve()
    return settings


__all__ = ["PipedoSettings", "get_settings"]
