"""Async process handling for the agent CLI."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Iterable, Mapping, Sequence

from .environment import build_child_environment
from .validation import AgentNotFoundError, default_agent_candidates, resolve_agent_binary

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = ("Read", "Edit", "Write", "Bash", "Glob", "Grep")

AUTH_FAILURE_PATTERN = re.compile(
    r"not authenticated|please log ?in|invalid api key|claude login|authentication (?:failed|required)",
    re.IGNORECASE,
)

AUTH_REMEDIATION = (
    "The Claude CLI is not authenticated. Run `claude login` in a terminal, "
    "then send the message again."
)

_READ_CHUNK_SIZE = 64 * 1024


class AgentRunnerError(RuntimeError):
    """Base class for agent process errors."""


class AgentSpawnError(AgentRunnerError):
    """Raised when the agent process cannot be started."""


class ShutdownState(str, Enum):
    RUNNING = "running"
    SIGNALLED = "signalled"
    KILLED = "killed"
    EXITED = "exited"


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of a one-shot agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def build_agent_command(
    executable: Path,
    prompt: str,
    *,
    allowed_tools: Sequence[str] = DEFAULT_ALLOWED_TOOLS,
) -> list[str]:
    """Build the argv for a one-shot streaming turn.

    The prompt follows ``--`` so text starting with ``-`` is never read as a flag.
    """

    return [
        str(executable),
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--allowedTools",
        ",".join(allowed_tools),
        "--",
        prompt,
    ]


def is_auth_failure(text: str) -> bool:
    return AUTH_FAILURE_PATTERN.search(text) is not None


class AgentProcess:
    """A running agent CLI child with a two-phase shutdown sequence."""

    def __init__(self, process: asyncio.subprocess.Process, args: Sequence[str]) -> None:
        self._process = process
        self._args = tuple(args)
        self._state = ShutdownState.RUNNING
        self._shutdown: asyncio.Task[int | None] | None = None

    @classmethod
    async def spawn(
        cls,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
    ) -> AgentProcess:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                env=dict(env),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AgentSpawnError(f"Failed to start agent process: {exc}") from exc

        # One-shot mode reads no input.
        if process.stdin is not None:
            process.stdin.close()

        logger.debug("Spawned agent process", extra={"pid": process.pid, "cwd": str(cwd)})
        return cls(process, args)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def args(self) -> tuple[str, ...]:
        return self._args

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def state(self) -> ShutdownState:
        if self._process.returncode is not None and self._state is ShutdownState.RUNNING:
            return ShutdownState.EXITED
        return self._state

    async def iter_stdout(self) -> AsyncIterator[bytes]:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    async def iter_stderr_lines(self) -> AsyncIterator[str]:
        """Yield stderr lines; a line longer than one read chunk is yielded in pieces."""

        stream = self._process.stderr
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += chunk
            while True:
                newline = pending.find(b"\n")
                if newline < 0:
                    break
                line, pending = pending[: newline + 1], pending[newline + 1 :]
                yield line.decode("utf-8", errors="replace")
            if len(pending) >= _READ_CHUNK_SIZE:
                yield pending.decode("utf-8", errors="replace")
                pending = b""
        if pending:
            yield pending.decode("utf-8", errors="replace")

    async def wait(self) -> int:
        return await self._process.wait()

    async def terminate(self, grace_seconds: float) -> int | None:
        """SIGTERM, wait up to ``grace_seconds``, then SIGKILL.

        Concurrent and repeated calls share a single shutdown sequence.
        """

        if self._process.returncode is not None:
            return self._process.returncode
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._shutdown_sequence(grace_seconds))
        return await asyncio.shield(self._shutdown)

    async def _shutdown_sequence(self, grace_seconds: float) -> int | None:
        try:
            self._process.send_signal(signal.SIGTERM)
            self._state = ShutdownState.SIGNALLED
        except ProcessLookupError:
            return self._process.returncode

        try:
            return await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent process ignored SIGTERM; killing",
                extra={"pid": self._process.pid, "grace_seconds": grace_seconds},
            )

        try:
            self._process.kill()
            self._state = ShutdownState.KILLED
        except ProcessLookupError:
            pass
        return await self._process.wait()


async def run_agent_command(
    executable: Path,
    *args: str,
    env: Mapping[str, str] | None = None,
) -> AgentExecutionResult:
    """Run the agent CLI to completion and capture its output."""

    cmd = [str(executable), *args]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else build_child_environment(),
        )
    except OSError as exc:
        raise AgentSpawnError(f"Failed to start agent process: {exc}") from exc
    stdout_bytes, stderr_bytes = await process.communicate()
    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    return AgentExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


async def probe_agent(candidates: Iterable[Path] | None = None) -> dict[str, object]:
    """Report whether a trusted agent CLI is installed and which version it is."""

    metadata: dict[str, object] = {
        "available": False,
        "path": None,
        "version": None,
        "error": None,
    }
    try:
        executable = resolve_agent_binary(candidates if candidates is not None else default_agent_candidates())
    except AgentNotFoundError as exc:
        metadata["error"] = str(exc)
        return metadata

    metadata["path"] = str(executable)
    try:
        result = await run_agent_command(executable, "--version")
    except AgentSpawnError as exc:
        metadata["error"] = str(exc)
        return metadata

    metadata["available"] = True
    if result.ok:
        metadata["version"] = result.stdout.strip()
    else:
        metadata["error"] = result.stderr.strip() or f"Version command failed with exit code {result.returncode}"
    return metadata


__all__ = [
    "AUTH_FAILURE_PATTERN",
    "AUTH_REMEDIATION",
    "AgentExecutionResult",
    "AgentProcess",
    "AgentRunnerError",
    "AgentSpawnError",
    "DEFAULT_ALLOWED_TOOLS",
    "ShutdownState",
    "build_agent_command",
    "is_auth_failure",
    "probe_agent",
    "run_agent_command",
]
