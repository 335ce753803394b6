"""Workspace models describing the repositories Grove manages."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RepositoryEntry(BaseModel):
    """A git repository whose worktrees sessions may run in."""

    path: Path = Field(..., description="Path to the repository (any worktree of it).")
    name: str | None = Field(default=None, description="Optional display name.")

    @field_validator("path", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValueError("Repository path must not be empty")
            return Path(stripped).expanduser()
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.path.name


class Workspace(BaseModel):
    """A named group of repositories loaded from a YAML file."""

    id: str = Field(..., description="Unique identifier for the workspace.")
    repositories: list[RepositoryEntry] = Field(
        default_factory=list,
        description="Repositories whose worktrees are registered at startup.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Workspace id must not be empty")
        return normalized

    @field_validator("repositories", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [{"path": item} if isinstance(item, str) else item for item in value]
        raise ValueError("repositories must be a sequence")


__all__ = ["RepositoryEntry", "Workspace"]
