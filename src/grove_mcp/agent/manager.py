"""Per-worktree agent session orchestration."""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from collections import deque
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from ..config import GroveSettings, get_settings
from .environment import build_child_environment
from .events import (
    MessageFinalizedEvent,
    MessageUpdatedEvent,
    SessionErrorEvent,
    SessionEventBus,
    ToolCallUpdatedEvent,
    UsageUpdatedEvent,
)
from .models import Message, SessionState, SessionStatus, ToolCall, UsageStats
from .protocol import (
    Effect,
    MessageFinalized,
    MessageUpdated,
    ToolCallUpdated,
    TurnDecoder,
    UsageAccumulated,
)
from .runner import (
    AUTH_REMEDIATION,
    AgentProcess,
    AgentSpawnError,
    build_agent_command,
    is_auth_failure,
)
from .validation import (
    PathValidationError,
    default_agent_candidates,
    resolve_agent_binary,
    validate_working_directory,
)

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_STDERR_TAIL_LINES = 20


class AgentSessionError(RuntimeError):
    """Base class for session orchestration errors."""


class SessionValidationError(AgentSessionError, ValueError):
    """Raised when a worktree id, directory, or prompt is rejected."""


class SessionNotFoundError(AgentSessionError, LookupError):
    """Raised when no session exists for a worktree id."""


class SessionBusyError(AgentSessionError):
    """Raised when a prompt is sent while the previous one is still running."""


class SessionCapacityError(AgentSessionError):
    """Raised when the global session ceiling is reached."""


class SessionAuthorizationError(AgentSessionError):
    """Raised when a directory is not a registered worktree."""


class WorktreeRegistry(Protocol):
    def is_known_worktree_path(self, path: Path) -> bool:
        ...


def sanitize_prompt(text: str, max_length: int) -> str:
    """Drop control characters other than newline and tab, then cap the length."""

    return _CONTROL_CHARS.sub("", text)[:max_length]


@dataclass(eq=False)
class _Turn:
    decoder: TurnDecoder
    process: AgentProcess | None = None
    detached: bool = False
    aborted: bool = False
    failed: bool = False
    shutdown: asyncio.Future | None = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES))


@dataclass(eq=False)
class AgentSession:
    worktree_id: str
    working_directory: Path
    process: AgentProcess | None = None
    is_processing: bool = False
    messages: list[Message] = field(default_factory=list)
    current_assistant_message_id: str | None = None
    usage: UsageStats = field(default_factory=UsageStats)
    last_error: str | None = None
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    state: SessionState = SessionState.IDLE
    closing: bool = False
    turn: _Turn | None = field(default=None, repr=False)

    def status(self) -> SessionStatus:
        return SessionStatus(
            active=True,
            processing=self.is_processing,
            last_error=self.last_error,
            state=self.state,
        )


class SessionManager:
    """Owns every agent session and the child process behind it.

    One session exists per worktree id and runs at most one prompt at a time.
    Sessions for different worktrees run their agent processes in parallel.
    """

    def __init__(
        self,
        registry: WorktreeRegistry,
        *,
        settings: GroveSettings | None = None,
        events: SessionEventBus | None = None,
        agent_path: Path | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or get_settings()
        self._events = events or SessionEventBus()
        explicit = agent_path or self._settings.claude_path
        self._candidates: tuple[Path, ...] = (
            (Path(explicit).expanduser(),) if explicit else default_agent_candidates()
        )
        self._sessions: dict[str, AgentSession] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def events(self) -> SessionEventBus:
        return self._events

    @property
    def settings(self) -> GroveSettings:
        return self._settings

    def _lock_for(self, worktree_id: str) -> asyncio.Lock:
        lock = self._locks.get(worktree_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[worktree_id] = lock
        return lock

    @staticmethod
    def _validate_worktree_id(worktree_id: object) -> str:
        if not isinstance(worktree_id, str) or not worktree_id.strip():
            raise SessionValidationError("Worktree id must be a non-empty string")
        return worktree_id

    def _validate_prompt(self, text: object) -> str:
        if not isinstance(text, str):
            raise SessionValidationError("Message must be a string")
        limit = self._settings.max_prompt_length
        if len(text) > limit:
            raise SessionValidationError(f"Message exceeds the maximum length of {limit} characters")
        prompt = sanitize_prompt(text, limit)
        if not prompt.strip():
            raise SessionValidationError("Message must not be empty")
        return prompt

    async def create_session(self, worktree_id: str, working_directory: str) -> SessionStatus:
        """Create (or replace) the session for ``worktree_id``."""

        worktree_id = self._validate_worktree_id(worktree_id)
        try:
            path = validate_working_directory(working_directory)
        except PathValidationError as exc:
            raise SessionValidationError(str(exc)) from exc
        if not self._registry.is_known_worktree_path(path):
            raise SessionAuthorizationError(f"{path} is not a registered worktree")

        async with self._lock_for(worktree_id):
            existing = self._sessions.get(worktree_id)
            if existing is None and len(self._sessions) >= self._settings.max_sessions:
                raise SessionCapacityError(
                    f"Session limit of {self._settings.max_sessions} reached"
                )
            if existing is not None:
                existing.closing = True
                await self._abort(existing)
                existing.state = SessionState.DISCONNECTED

            session = AgentSession(worktree_id=worktree_id, working_directory=path)
            self._sessions[worktree_id] = session

        logger.info(
            "Created agent session",
            extra={"worktree_id": worktree_id, "cwd": str(path), "replaced": existing is not None},
        )
        return session.status()

    async def send_message(self, worktree_id: str, text: str) -> Message:
        """Run one turn and return the finalized assistant message.

        Argument, capacity, and binary problems raise before anything changes.
        Process failures are reported through ``last_error`` and a
        ``SessionErrorEvent`` instead.
        """

        session = self._sessions.get(worktree_id)
        if session is None or session.closing:
            raise SessionNotFoundError(f"No session found for worktree: {worktree_id}")
        prompt = self._validate_prompt(text)
        if session.is_processing:
            raise SessionBusyError("Agent is already processing a message")
        executable = resolve_agent_binary(self._candidates)

        session.is_processing = True
        session.state = SessionState.PROCESSING
        session.last_error = None

        user_message = Message(role="user", content=prompt)
        session.messages.append(user_message)
        self._events.publish(MessageUpdatedEvent(worktree_id, replace(user_message)))

        assistant_message = Message(role="assistant", is_streaming=True)
        session.messages.append(assistant_message)
        session.current_assistant_message_id = assistant_message.id

        turn = _Turn(decoder=TurnDecoder(assistant_message, session.tool_calls))
        session.turn = turn
        logger.info(
            "Sending message to agent",
            extra={"worktree_id": worktree_id, "prompt_length": len(prompt)},
        )

        try:
            await self._run_turn(session, turn, executable, prompt)
        finally:
            self._dispatch(session, turn, turn.decoder.finalize(), force=True)
            if turn.process is not None and session.process is turn.process:
                session.process = None
            session.turn = None
            session.is_processing = False
            session.current_assistant_message_id = None
            if session.state is SessionState.PROCESSING:
                session.state = SessionState.DISCONNECTED if turn.failed else SessionState.IDLE
            turn.finished.set()

        return replace(assistant_message)

    async def _run_turn(
        self,
        session: AgentSession,
        turn: _Turn,
        executable: Path,
        prompt: str,
    ) -> None:
        args = build_agent_command(executable, prompt, allowed_tools=self._settings.allowed_tools)
        try:
            process = await AgentProcess.spawn(
                args,
                cwd=session.working_directory,
                env=build_child_environment(),
            )
        except AgentSpawnError as exc:
            self._fail(session, turn, str(exc))
            return

        turn.process = process
        session.process = process
        if turn.aborted:
            await process.terminate(self._settings.kill_grace_seconds)

        stdout_task = asyncio.ensure_future(self._pump_stdout(session, turn, process))
        stderr_task = asyncio.ensure_future(self._watch_stderr(session, turn, process))
        try:
            await asyncio.gather(stdout_task, stderr_task)
            returncode = await process.wait()
            if turn.shutdown is not None:
                await turn.shutdown
        finally:
            if process.returncode is None:
                stdout_task.cancel()
                stderr_task.cancel()
                await process.terminate(self._settings.kill_grace_seconds)

        if not turn.detached:
            self._dispatch(session, turn, turn.decoder.flush())

        if turn.failed or turn.aborted:
            logger.info(
                "Agent turn ended early",
                extra={
                    "worktree_id": session.worktree_id,
                    "returncode": returncode,
                    "aborted": turn.aborted,
                },
            )
            return

        if turn.stderr_tail:
            logger.debug(
                "Agent stderr",
                extra={"worktree_id": session.worktree_id, "stderr": "\n".join(turn.stderr_tail)},
            )

        if returncode != 0:
            logger.warning(
                "Agent process failed",
                extra={
                    "worktree_id": session.worktree_id,
                    "returncode": returncode,
                    "stderr": "\n".join(turn.stderr_tail),
                },
            )
            self._fail(session, turn, f"Agent process exited with code {returncode}")
            return

        logger.info(
            "Agent turn completed",
            extra={"worktree_id": session.worktree_id, "usage": session.usage.to_dict()},
        )

    async def _pump_stdout(self, session: AgentSession, turn: _Turn, process: AgentProcess) -> None:
        async for chunk in process.iter_stdout():
            # Keep draining after detach so the child never blocks on a full pipe.
            if turn.detached:
                continue
            try:
                effects = turn.decoder.feed(chunk)
            except Exception as exc:
                logger.exception(
                    "Failed to decode agent output", extra={"worktree_id": session.worktree_id}
                )
                self._fail(session, turn, f"Failed to decode agent output: {exc}")
                turn.detached = True
                continue
            self._dispatch(session, turn, effects)

    async def _watch_stderr(self, session: AgentSession, turn: _Turn, process: AgentProcess) -> None:
        async for line in process.iter_stderr_lines():
            turn.stderr_tail.append(line.rstrip())
            if turn.failed or turn.aborted or not is_auth_failure(line):
                continue
            logger.warning(
                "Agent authentication failure detected",
                extra={"worktree_id": session.worktree_id},
            )
            self._fail(session, turn, AUTH_REMEDIATION)
            turn.detached = True
            turn.shutdown = asyncio.ensure_future(
                process.terminate(self._settings.kill_grace_seconds)
            )

    def _fail(self, session: AgentSession, turn: _Turn, error: str) -> None:
        turn.failed = True
        session.last_error = error
        self._dispatch(session, turn, turn.decoder.append_error(error), force=True)
        self._events.publish(SessionErrorEvent(session.worktree_id, error))

    def _dispatch(
        self,
        session: AgentSession,
        turn: _Turn,
        effects: list[Effect],
        *,
        force: bool = False,
    ) -> None:
        if turn.detached and not force:
            return
        worktree_id = session.worktree_id
        for effect in effects:
            if isinstance(effect, MessageUpdated):
                self._events.publish(MessageUpdatedEvent(worktree_id, effect.message))
            elif isinstance(effect, ToolCallUpdated):
                self._events.publish(ToolCallUpdatedEvent(worktree_id, effect.tool_call))
            elif isinstance(effect, UsageAccumulated):
                session.usage.accumulate(effect.delta)
                self._events.publish(UsageUpdatedEvent(worktree_id, replace(session.usage)))
            elif isinstance(effect, MessageFinalized):
                self._events.publish(MessageFinalizedEvent(worktree_id, effect.message))

    async def abort_session(self, worktree_id: str) -> None:
        """Stop the running turn, if any; safe to call repeatedly."""

        session = self._sessions.get(worktree_id)
        if session is None:
            return
        await self._abort(session)

    async def _abort(self, session: AgentSession) -> None:
        turn = session.turn
        if turn is None:
            return
        turn.detached = True
        turn.aborted = True
        grace = self._settings.kill_grace_seconds
        if turn.process is not None:
            await turn.process.terminate(grace)
        try:
            await asyncio.wait_for(turn.finished.wait(), timeout=grace * 2 + 1)
        except asyncio.TimeoutError:
            logger.warning(
                "Aborted turn did not wind down in time",
                extra={"worktree_id": session.worktree_id},
            )
        logger.info("Aborted agent session", extra={"worktree_id": session.worktree_id})

    def get_session_status(self, worktree_id: str) -> SessionStatus:
        session = self._sessions.get(worktree_id)
        if session is None:
            return SessionStatus(active=False, processing=False)
        return session.status()

    async def remove_session(self, worktree_id: str) -> bool:
        """Abort and forget a session; returns False when none existed."""

        async with self._lock_for(worktree_id):
            session = self._sessions.get(worktree_id)
            if session is None:
                return False
            session.closing = True
            await self._abort(session)
            if self._sessions.get(worktree_id) is session:
                del self._sessions[worktree_id]
            session.state = SessionState.DISCONNECTED

        logger.info("Removed agent session", extra={"worktree_id": worktree_id})
        return True

    def get_messages(self, worktree_id: str) -> list[Message]:
        session = self._sessions.get(worktree_id)
        if session is None:
            return []
        return [replace(message) for message in session.messages]

    def get_tool_calls(self, worktree_id: str) -> list[ToolCall]:
        session = self._sessions.get(worktree_id)
        if session is None:
            return []
        return [replace(tool_call) for tool_call in session.tool_calls.values()]

    def get_usage(self, worktree_id: str) -> UsageStats | None:
        session = self._sessions.get(worktree_id)
        if session is None:
            return None
        return replace(session.usage)

    def list_sessions(self) -> dict[str, SessionStatus]:
        return {worktree_id: session.status() for worktree_id, session in self._sessions.items()}

    async def shutdown(self) -> None:
        """Abort every live turn."""

        await asyncio.gather(*(self._abort(session) for session in list(self._sessions.values())))


__all__ = [
    "AgentSession",
    "AgentSessionError",
    "SessionAuthorizationError",
    "SessionBusyError",
    "SessionCapacityError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionValidationError",
    "WorktreeRegistry",
    "sanitize_prompt",
]
