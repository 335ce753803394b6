"""Configuration management for Grove MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os
import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_TOOL_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_:()*.-]*$")


class GroveSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    claude_path: str | None = Field(default=None, validation_alias="GROVE_CLAUDE_PATH")
    git_path: str | None = Field(default=None, validation_alias="GROVE_GIT_PATH")
    allowed_tools: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("Read", "Edit", "Write", "Bash", "Glob", "Grep"),
        validation_alias="GROVE_ALLOWED_TOOLS",
    )
    max_sessions: int = Field(default=20, validation_alias="GROVE_MAX_SESSIONS")
    max_prompt_length: int = Field(default=100_000, validation_alias="GROVE_MAX_PROMPT_LENGTH")
    kill_grace_seconds: float = Field(default=5.0, validation_alias="GROVE_KILL_GRACE_SECONDS")
    workspace_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("workspaces"),), validation_alias="GROVE_WORKSPACE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="GROVE_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "GROVE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def _parse_allowed_tools(cls, value):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, (list, tuple)) or not value:
            raise ValueError("GROVE_ALLOWED_TOOLS must list at least one tool")
        tools = tuple(str(item).strip() for item in value)
        for tool in tools:
            if not _TOOL_NAME.match(tool):
                raise ValueError(f"Invalid tool name in GROVE_ALLOWED_TOOLS: {tool!r}")
        return tools

    @field_validator("workspace_paths", mode="before")
    @classmethod
    def _parse_workspace_paths(cls, value):
        if value is None or value == "":
            return (Path("workspaces"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("workspaces"),)
        raise TypeError("GROVE_WORKSPACE_PATHS must be a list of paths or a path-separated string")

    @field_validator("max_sessions", "max_prompt_length")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("GROVE_MAX_SESSIONS and GROVE_MAX_PROMPT_LENGTH must be >= 1")
        return value

    @field_validator("kill_grace_seconds")
    @classmethod
    def _validate_grace(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("GROVE_KILL_GRACE_SECONDS must be > 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> GroveSettings:
    """Return cached settings instance."""

    settings = GroveSettings()
    settings.workspace_paths = tuple(path.expanduser().resolve() for path in settings.workspace_paths)
    return settings


__all__ = ["GroveSettings", "get_settings"]
