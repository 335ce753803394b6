"""Workspace models and loader exports."""

from .loader import WorkspaceLoadError, WorkspaceLoader, load_workspaces
from .models import RepositoryEntry, Workspace

__all__ = [
    "RepositoryEntry",
    "Workspace",
    "WorkspaceLoadError",
    "WorkspaceLoader",
    "load_workspaces",
]
