"""Git worktree discovery and the registry of permitted working directories."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Iterable

from ..agent.validation import PathValidationError, canonicalize_path, verify_trusted_binary
from .models import Worktree, worktree_id_for

logger = logging.getLogger(__name__)

MAX_BRANCH_LENGTH = 100

_BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9_\-/]+$")

DEFAULT_GIT_CANDIDATES: tuple[Path, ...] = (
    Path("/usr/bin/git"),
    Path("/usr/local/bin/git"),
    Path("/opt/homebrew/bin/git"),
)


class GitServiceError(RuntimeError):
    """Base class for git service errors."""


class GitUnavailableError(GitServiceError):
    """Raised when no trusted git executable can be located."""


class GitCommandError(GitServiceError):
    """Raised when a git command exits with a non-zero status."""


class WorktreeValidationError(GitServiceError, ValueError):
    """Raised when a repository path, worktree path, or branch name is rejected."""


def is_valid_branch_name(branch: object) -> bool:
    if not isinstance(branch, str) or not branch:
        return False
    if len(branch) > MAX_BRANCH_LENGTH:
        return False
    return bool(_BRANCH_PATTERN.match(branch)) and ".." not in branch


def _validate(path: str | Path) -> Path | None:
    try:
        return canonicalize_path(path)
    except PathValidationError:
        return None


def parse_worktree_output(output: str) -> list[Worktree]:
    """Parse ``git worktree list --porcelain``; bare entries are skipped."""

    worktrees: list[Worktree] = []
    for entry in output.strip().split("\n\n"):
        if not entry.strip():
            continue

        path = ""
        branch = ""
        is_bare = False
        for line in entry.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("branch refs/heads/"):
                branch = line[len("branch refs/heads/"):]
            elif line == "bare":
                is_bare = True
            elif line == "detached":
                branch = "detached HEAD"

        if path and not is_bare:
            worktrees.append(
                Worktree(
                    id=worktree_id_for(path),
                    path=path,
                    branch=branch or "unknown",
                    is_main=not worktrees,
                )
            )
    return worktrees


class GitService:
    """Runs git for worktree operations and remembers which paths are worktrees."""

    def __init__(
        self,
        git_executable: Path | None = None,
        *,
        candidates: Iterable[Path] = DEFAULT_GIT_CANDIDATES,
    ) -> None:
        self._git = self._resolve_executable(git_executable, candidates)
        self._known_worktrees: set[Path] = set()

    @staticmethod
    def _resolve_executable(explicit: Path | None, candidates: Iterable[Path]) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if verify_trusted_binary(candidate):
                return candidate
            raise GitUnavailableError(f"git executable at {candidate} is missing or untrusted")

        for candidate in candidates:
            if verify_trusted_binary(candidate):
                return candidate
        raise GitUnavailableError("No trusted git executable found")

    @property
    def executable(self) -> Path:
        return self._git

    @property
    def known_worktree_paths(self) -> frozenset[Path]:
        return frozenset(self._known_worktrees)

    async def _run(self, *args: str, cwd: Path) -> str:
        process = await asyncio.create_subprocess_exec(
            str(self._git),
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        if process.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise GitCommandError(stderr or f"git command failed with code {process.returncode}")
        return stdout_bytes.decode("utf-8", errors="replace")

    def register_worktree_path(self, path: str | Path) -> Path:
        """Mark ``path`` as a worktree sessions may run in."""

        resolved = canonicalize_path(path)
        self._known_worktrees.add(resolved)
        return resolved

    def unregister_worktree_path(self, path: str | Path) -> None:
        resolved = _validate(path)
        if resolved is not None:
            self._known_worktrees.discard(resolved)

    def is_known_worktree_path(self, path: str | Path) -> bool:
        resolved = _validate(path)
        if resolved is None:
            return False
        for known in self._known_worktrees:
            if resolved == known or known in resolved.parents:
                return True
        return False

    async def is_git_repository(self, path: str | Path) -> bool:
        valid_path = _validate(path)
        if valid_path is None or not valid_path.is_dir():
            return False
        try:
            await self._run("rev-parse", "--git-dir", cwd=valid_path)
        except GitCommandError:
            return False
        return True

    async def get_repo_root(self, path: str | Path) -> Path:
        valid_path = _validate(path)
        if valid_path is None or not valid_path.is_dir():
            raise WorktreeValidationError("Invalid path provided")

        stdout = await self._run("rev-parse", "--show-toplevel", cwd=valid_path)
        return self.register_worktree_path(stdout.strip())

    async def list_worktrees(self, repo_path: str | Path) -> list[Worktree]:
        """List worktrees of a repository and register each of them.

        Invalid paths and git failures yield an empty list.
        """

        valid_path = _validate(repo_path)
        if valid_path is None or not valid_path.is_dir():
            logger.error("Invalid repository path", extra={"repo_path": str(repo_path)})
            return []

        try:
            await self.get_repo_root(valid_path)
            stdout = await self._run("worktree", "list", "--porcelain", cwd=valid_path)
        except GitServiceError as exc:
            logger.error("Failed to list worktrees", extra={"repo_path": str(valid_path), "error": str(exc)})
            return []

        worktrees = parse_worktree_output(stdout)
        changes = await asyncio.gather(*(self.has_uncommitted_changes(wt.path) for wt in worktrees))
        for worktree, has_changes in zip(worktrees, changes):
            worktree.has_changes = has_changes
            if Path(worktree.path).is_dir():
                self.register_worktree_path(worktree.path)
        return worktrees

    async def has_uncommitted_changes(self, worktree_path: str | Path) -> bool:
        valid_path = _validate(worktree_path)
        if valid_path is None or not valid_path.is_dir():
            return False
        try:
            stdout = await self._run("status", "--porcelain", cwd=valid_path)
        except GitCommandError:
            return False
        return bool(stdout.strip())

    async def get_default_branch(self, repo_path: str | Path) -> str:
        valid_path = _validate(repo_path)
        if valid_path is None or not valid_path.is_dir():
            return "main"

        try:
            stdout = await self._run("symbolic-ref", "refs/remotes/origin/HEAD", "--short", cwd=valid_path)
            return stdout.strip().replace("origin/", "", 1) or "main"
        except GitCommandError:
            pass

        for candidate in ("main", "master"):
            try:
                await self._run("rev-parse", "--verify", candidate, cwd=valid_path)
                return candidate
            except GitCommandError:
                continue
        return "main"

    async def add_worktree(
        self,
        repo_path: str | Path,
        branch: str,
        base_branch: str | None = None,
    ) -> Path:
        """Create ``<repo>-<branch>`` beside the repository and register it."""

        valid_repo = _validate(repo_path)
        if valid_repo is None or not valid_repo.is_dir():
            raise WorktreeValidationError("Invalid repository path")
        if not is_valid_branch_name(branch):
            raise WorktreeValidationError(
                "Invalid branch name. Use only alphanumeric characters, hyphens, underscores, "
                f"and forward slashes (max {MAX_BRANCH_LENGTH} chars)."
            )
        if base_branch and not is_valid_branch_name(base_branch):
            raise WorktreeValidationError("Invalid base branch name")

        parent = valid_repo.parent
        worktree_name = f"{valid_repo.name}-{branch.replace('/', '-')}"
        try:
            worktree_path = canonicalize_path(parent / worktree_name, base=parent)
        except PathValidationError as exc:
            raise WorktreeValidationError("Invalid worktree path - path traversal detected") from exc

        if worktree_path.exists():
            raise WorktreeValidationError(f"Worktree path already exists: {worktree_path}")

        if base_branch:
            await self._run("worktree", "add", "-b", branch, str(worktree_path), base_branch, cwd=valid_repo)
        else:
            try:
                await self._run("worktree", "add", str(worktree_path), branch, cwd=valid_repo)
            except GitCommandError as exc:
                if "invalid reference" not in str(exc):
                    raise
                await self._run("worktree", "add", "-b", branch, str(worktree_path), cwd=valid_repo)

        logger.info("Added worktree", extra={"repo_path": str(valid_repo), "path": str(worktree_path)})
        return self.register_worktree_path(worktree_path)

    async def find_worktree(self, repo_path: str | Path, worktree_path: str | Path) -> Worktree:
        """Return the repository's worktree entry for ``worktree_path``, however it is spelled."""

        valid_repo = _validate(repo_path)
        if valid_repo is None or not valid_repo.is_dir():
            raise WorktreeValidationError("Invalid repository path")
        valid_worktree = _validate(worktree_path)
        if valid_worktree is None:
            raise WorktreeValidationError("Invalid worktree path")

        for worktree in await self.list_worktrees(valid_repo):
            if _validate(worktree.path) == valid_worktree:
                return worktree
        raise WorktreeValidationError("Worktree does not belong to this repository")

    async def remove_worktree(self, repo_path: str | Path, worktree_path: str | Path) -> None:
        worktree = await self.find_worktree(repo_path, worktree_path)
        valid_repo = _validate(repo_path)
        valid_worktree = _validate(worktree.path)

        try:
            await self._run("worktree", "remove", str(valid_worktree), cwd=valid_repo)
        except GitCommandError:
            await self._run("worktree", "remove", "--force", str(valid_worktree), cwd=valid_repo)
        self.unregister_worktree_path(valid_worktree)

        try:
            await self._run("worktree", "prune", cwd=valid_repo)
        except GitCommandError as exc:
            logger.error("Failed to prune worktrees", extra={"repo_path": str(valid_repo), "error": str(exc)})

        logger.info("Removed worktree", extra={"repo_path": str(valid_repo), "path": str(valid_worktree)})

    async def get_branches(self, repo_path: str | Path) -> list[str]:
        valid_path = _validate(repo_path)
        if valid_path is None or not valid_path.is_dir():
            logger.error("Invalid repository path for get_branches", extra={"repo_path": str(repo_path)})
            return []
        try:
            stdout = await self._run("branch", "--format=%(refname:short)", cwd=valid_path)
        except GitCommandError as exc:
            logger.error("Failed to get branches", extra={"repo_path": str(valid_path), "error": str(exc)})
            return []
        return [branch for branch in stdout.strip().splitlines() if branch]

    async def get_current_branch(self, repo_path: str | Path) -> str:
        valid_path = _validate(repo_path)
        if valid_path is None or not valid_path.is_dir():
            return "unknown"
        try:
            stdout = await self._run("branch", "--show-current", cwd=valid_path)
        except GitCommandError:
            return "unknown"
        return stdout.strip()


__all__ = [
    "DEFAULT_GIT_CANDIDATES",
    "GitCommandError",
    "GitService",
    "GitServiceError",
    "GitUnavailableError",
    "MAX_BRANCH_LENGTH",
    "WorktreeValidationError",
    "is_valid_branch_name",
    "parse_worktree_output",
]
