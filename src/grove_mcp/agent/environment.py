"""Environment helpers for agent subprocesses."""

from __future__ import annotations

import os
from typing import Mapping

_ALLOWED_VARS = (
    "LANG",
    "LANGUAGE",
    "LC_ALL",
    "LC_CTYPE",
    "LC_MESSAGES",
    "TERM",
    "COLORTERM",
    "TMPDIR",
    "TMP",
    "TEMP",
    "PATH",
)

# The agent CLI locates its config and credentials through these.
_IDENTITY_VARS = (
    "HOME",
    "USER",
    "LOGNAME",
)


def allowed_variables(*, include_identity: bool = True) -> tuple[str, ...]:
    """Return the names copied into a child environment."""

    if include_identity:
        return _ALLOWED_VARS + _IDENTITY_VARS
    return _ALLOWED_VARS


def build_child_environment(
    source: Mapping[str, str] | None = None,
    *,
    include_identity: bool = True,
    additional: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return an allow-listed environment suitable for subprocess execution."""

    host = os.environ if source is None else source
    env = {
        key: host[key]
        for key in allowed_variables(include_identity=include_identity)
        if key in host
    }
    if additional:
        env.update(additional)
    return env


__all__ = ["allowed_variables", "build_child_environment"]
