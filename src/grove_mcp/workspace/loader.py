"""Workspace files and the worktree registry seeding built on them."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

import yaml
from pydantic import ValidationError

from ..agent.validation import PathValidationError, canonicalize_path
from ..git import Worktree
from .models import RepositoryEntry, Workspace

logger = logging.getLogger(__name__)

WORKSPACE_SUFFIXES = (".yml", ".yaml")


class WorkspaceLoadError(RuntimeError):
    """Raised when one or more workspace files cannot be parsed."""


class WorktreeLister(Protocol):
    async def list_worktrees(self, repo_path: str | Path) -> list[Worktree]: ...


class WorkspaceLoader:
    """Reads workspace YAML files and registers the worktrees they point at."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths: list[Path] = [Path(path) for path in (search_paths or []) if Path(path).is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _workspace_files(self) -> Iterator[Path]:
        for base in self._search_paths:
            files = [path for path in base.iterdir() if path.suffix in WORKSPACE_SUFFIXES and path.is_file()]
            # .yml before .yaml within a directory, then by name.
            yield from sorted(files, key=lambda path: (WORKSPACE_SUFFIXES.index(path.suffix), path.name))

    def load_all(self) -> dict[str, Workspace]:
        """Load every workspace; a later search path wins when ids collide."""

        workspaces: dict[str, Workspace] = {}
        errors: list[str] = []

        for path in self._workspace_files():
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
                if document is None:
                    continue
                workspace = Workspace.model_validate(document)
            except yaml.YAMLError as exc:
                errors.append(f"{path}: invalid YAML ({exc})")
            except ValidationError as exc:
                errors.append(f"{path}: invalid workspace ({exc})")
            else:
                workspaces[workspace.id] = workspace

        if errors:
            raise WorkspaceLoadError("; ".join(errors))
        return workspaces

    def get(self, workspace_id: str) -> Workspace:
        workspace = self.load_all().get(workspace_id)
        if workspace is None:
            raise WorkspaceLoadError(f"Workspace '{workspace_id}' not found in search paths")
        return workspace

    def repositories(
        self,
        workspaces: dict[str, Workspace] | None = None,
    ) -> Iterator[tuple[str, RepositoryEntry, Path]]:
        """Yield ``(workspace id, entry, canonical repository path)`` once per repository.

        A repository listed by several workspaces is reported under the first
        one. Entries whose path cannot be canonicalized are logged and skipped.
        """

        seen: set[Path] = set()
        for workspace in (workspaces if workspaces is not None else self.load_all()).values():
            for entry in workspace.repositories:
                try:
                    path = canonicalize_path(entry.path)
                except PathValidationError as exc:
                    logger.warning(
                        "Skipping workspace repository",
                        extra={"workspace": workspace.id, "repo_path": str(entry.path), "error": str(exc)},
                    )
                    continue
                if path in seen:
                    continue
                seen.add(path)
                yield workspace.id, entry, path

    async def register_worktrees(self, git_service: WorktreeLister) -> dict[str, Any]:
        """List the worktrees of every workspace repository so they become known.

        Returns a summary grouped by workspace. Load errors are reported in the
        summary instead of being raised.
        """

        summary: dict[str, Any] = {
            "search_paths": [str(path) for path in self._search_paths],
            "workspaces": [],
            "worktree_count": 0,
            "error": None,
        }
        try:
            workspaces = self.load_all()
        except WorkspaceLoadError as exc:
            summary["error"] = str(exc)
            logger.error("Failed to load workspaces", extra={"error": str(exc)})
            return summary

        entries = list(self.repositories(workspaces))
        listings = await asyncio.gather(*(git_service.list_worktrees(path) for _, _, path in entries))

        grouped: dict[str, list[dict[str, Any]]] = {workspace_id: [] for workspace_id in workspaces}
        for (workspace_id, entry, path), worktrees in zip(entries, listings):
            grouped[workspace_id].append(
                {"name": entry.display_name, "path": str(path), "worktrees": len(worktrees)}
            )
            summary["worktree_count"] += len(worktrees)
        summary["workspaces"] = [
            {"id": workspace_id, "repositories": repositories} for workspace_id, repositories in grouped.items()
        ]

        logger.info(
            "Seeded worktree registry",
            extra={"workspaces": len(workspaces), "worktrees": summary["worktree_count"]},
        )
        return summary


def load_workspaces(search_paths: Iterable[Path] | None = None) -> dict[str, Workspace]:
    return WorkspaceLoader(search_paths).load_all()


__all__ = ["WorkspaceLoadError", "WorkspaceLoader", "WorktreeLister", "load_workspaces"]
