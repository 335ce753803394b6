"""Domain models for agent sessions."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

MessageRole = Literal["user", "assistant"]
ToolCallStatus = Literal["pending", "running", "completed", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    IDLE = "idle"
    PROCESSING = "processing"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class Message:
    """A chat message; assistant content grows while ``is_streaming``."""

    role: MessageRole
    content: str = ""
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass(slots=True)
class ToolCall:
    """A tool invocation requested by the agent, correlated to its result by ``id``."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    status: ToolCallStatus = "pending"
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in ("pending", "running")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass(slots=True)
class UsageStats:
    total_cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    total_turns: int = 0
    last_duration_ms: int = 0

    def accumulate(self, delta: UsageStats) -> None:
        """Fold one finalized turn into the running totals.

        ``last_duration_ms`` is overwritten rather than summed.
        """

        self.total_cost_usd += delta.total_cost_usd
        self.input_tokens += delta.input_tokens
        self.output_tokens += delta.output_tokens
        self.cache_creation_input_tokens += delta.cache_creation_input_tokens
        self.cache_read_input_tokens += delta.cache_read_input_tokens
        self.total_turns += delta.total_turns
        self.last_duration_ms = delta.last_duration_ms

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SessionStatus:
    active: bool
    processing: bool
    last_error: str | None = None
    state: SessionState = SessionState.UNINITIALIZED

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "processing": self.processing,
            "last_error": self.last_error,
            "state": self.state.value,
        }


__all__ = [
    "Message",
    "MessageRole",
    "SessionState",
    "SessionStatus",
    "ToolCall",
    "ToolCallStatus",
    "UsageStats",
]
