"""Data models for git worktrees."""

from __future__ import annotations

import base64
import re
from dataclasses import asdict, dataclass
from typing import Any


def worktree_id_for(path: str) -> str:
    """Stable identifier derived from a worktree path."""

    encoded = base64.b64encode(path.encode("utf-8")).decode("ascii")
    return re.sub(r"[/+=]", "_", encoded)


@dataclass(slots=True)
class Worktree:
    id: str
    path: str
    branch: str
    is_main: bool
    has_changes: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = ["Worktree", "worktree_id_for"]
