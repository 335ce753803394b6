"""Git worktree registry."""

from .models import Worktree, worktree_id_for
from .service import (
    GitCommandError,
    GitService,
    GitServiceError,
    GitUnavailableError,
    WorktreeValidationError,
    parse_worktree_output,
)

__all__ = [
    "GitCommandError",
    "GitService",
    "GitServiceError",
    "GitUnavailableError",
    "Worktree",
    "WorktreeValidationError",
    "parse_worktree_output",
    "worktree_id_for",
]
