"""Agent CLI session orchestration."""

from .events import SessionEventBus
from .manager import (
    AgentSessionError,
    SessionAuthorizationError,
    SessionBusyError,
    SessionCapacityError,
    SessionManager,
    SessionNotFoundError,
    SessionValidationError,
)
from .models import Message, SessionState, SessionStatus, ToolCall, UsageStats
from .runner import AgentProcess, AgentSpawnError, probe_agent
from .validation import AgentNotFoundError, PathValidationError

__all__ = [
    "AgentNotFoundError",
    "AgentProcess",
    "AgentSessionError",
    "AgentSpawnError",
    "Message",
    "PathValidationError",
    "SessionAuthorizationError",
    "SessionBusyError",
    "SessionCapacityError",
    "SessionEventBus",
    "SessionManager",
    "SessionNotFoundError",
    "SessionState",
    "SessionStatus",
    "SessionValidationError",
    "ToolCall",
    "UsageStats",
    "probe_agent",
]
