"""Path canonicalization and agent binary provenance checks."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Iterable

MAX_PATH_LENGTH = 4096

_ENCODED_TRAVERSAL = ("%2e", "%2f")


class PathValidationError(ValueError):
    """Raised when a caller-supplied path is rejected."""


class AgentNotFoundError(RuntimeError):
    """Raised when no trusted agent executable can be located."""


def _check_raw_path(raw: object) -> str:
    if not isinstance(raw, (str, os.PathLike)):
        raise PathValidationError("Path must be a string")
    text = os.fspath(raw)
    if not isinstance(text, str) or not text:
        raise PathValidationError("Path must be a non-empty string")
    if len(text) > MAX_PATH_LENGTH:
        raise PathValidationError(f"Path exceeds {MAX_PATH_LENGTH} characters")
    if "\0" in text:
        raise PathValidationError("Path contains a NUL byte")
    lowered = text.lower()
    if any(token in lowered for token in _ENCODED_TRAVERSAL):
        raise PathValidationError("Path contains URL-encoded traversal sequences")
    return text


def canonicalize_path(
    raw: str | os.PathLike[str],
    *,
    base: str | os.PathLike[str] | None = None,
    strict: bool = False,
) -> Path:
    """Return the absolute, symlink-free form of ``raw``.

    With ``strict`` the path must exist. Otherwise a missing leaf is appended to
    its resolved parent, which lets callers validate paths they are about to
    create. When ``base`` is given the result must equal or lie inside it.
    """

    text = _check_raw_path(raw)
    candidate = Path(text).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate

    try:
        if strict:
            resolved = candidate.resolve(strict=True)
        else:
            normalized = Path(os.path.normpath(candidate))
            if normalized.exists():
                resolved = normalized.resolve(strict=True)
            else:
                resolved = normalized.parent.resolve() / normalized.name
    except (OSError, RuntimeError) as exc:
        raise PathValidationError(f"Cannot canonicalize path {text!r}: {exc}") from exc

    if base is not None:
        resolved_base = canonicalize_path(base)
        if resolved != resolved_base and resolved_base not in resolved.parents:
            raise PathValidationError(f"Path {resolved} escapes {resolved_base}")

    return resolved


def validate_working_directory(raw: str | os.PathLike[str]) -> Path:
    """Validate a worktree directory supplied by a caller."""

    resolved = canonicalize_path(raw, strict=True)
    if not resolved.is_dir():
        raise PathValidationError(f"Working directory {resolved} is not a directory")
    return resolved


def verify_trusted_binary(path: str | os.PathLike[str]) -> bool:
    """Return True when ``path`` is safe to execute as the agent CLI.

    The file must be a regular file (symlinks are refused), executable by the
    current user, and owned by root or by the user running this process.
    """

    try:
        info = os.lstat(path)
    except (OSError, ValueError):
        return False

    if not stat.S_ISREG(info.st_mode):
        return False
    if not os.access(path, os.X_OK):
        return False
    return info.st_uid in (0, os.geteuid())


def default_agent_candidates(home: str | None = None) -> tuple[Path, ...]:
    """Hardcoded install locations for the ``claude`` CLI."""

    home_dir = home if home is not None else os.environ.get("HOME", "")
    candidates: list[Path] = []
    if home_dir:
        candidates.append(Path(home_dir) / ".local" / "bin" / "claude")
        candidates.append(Path(home_dir) / ".claude" / "local" / "claude")
    candidates.append(Path("/usr/local/bin/claude"))
    candidates.append(Path("/opt/homebrew/bin/claude"))
    return tuple(candidates)


def resolve_agent_binary(candidates: Iterable[str | os.PathLike[str]]) -> Path:
    """Return the first trusted candidate; ``PATH`` is never searched."""

    checked: list[str] = []
    for candidate in candidates:
        path = Path(candidate)
        checked.append(str(path))
        if verify_trusted_binary(path):
            return path
    raise AgentNotFoundError(
        "No trusted agent executable found (checked: " + ", ".join(checked or ["nothing"]) + ")"
    )


__all__ = [
    "AgentNotFoundError",
    "MAX_PATH_LENGTH",
    "PathValidationError",
    "canonicalize_path",
    "default_agent_candidates",
    "resolve_agent_binary",
    "validate_working_directory",
    "verify_trusted_binary",
]
