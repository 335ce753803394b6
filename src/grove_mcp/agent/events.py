"""Session-scoped domain events and a synchronous listener bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Union

from .models import Message, ToolCall, UsageStats

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MessageUpdatedEvent:
    event_type: ClassVar[str] = "message_updated"

    worktree_id: str
    message: Message

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "worktree_id": self.worktree_id,
            "message": self.message.to_dict(),
        }


@dataclass(slots=True)
class MessageFinalizedEvent:
    event_type: ClassVar[str] = "message_finalized"

    worktree_id: str
    message: Message

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "worktree_id": self.worktree_id,
            "message": self.message.to_dict(),
        }


@dataclass(slots=True)
class ToolCallUpdatedEvent:
    event_type: ClassVar[str] = "tool_call_updated"

    worktree_id: str
    tool_call: ToolCall

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "worktree_id": self.worktree_id,
            "tool_call": self.tool_call.to_dict(),
        }


@dataclass(slots=True)
class SessionErrorEvent:
    event_type: ClassVar[str] = "session_error"

    worktree_id: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"event_type": self.event_type, "worktree_id": self.worktree_id, "error": self.error}


@dataclass(slots=True)
class UsageUpdatedEvent:
    event_type: ClassVar[str] = "usage_updated"

    worktree_id: str
    usage: UsageStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "worktree_id": self.worktree_id,
            "usage": self.usage.to_dict(),
        }


SessionEvent = Union[
    MessageUpdatedEvent,
    MessageFinalizedEvent,
    ToolCallUpdatedEvent,
    SessionErrorEvent,
    UsageUpdatedEvent,
]

Listener = Callable[[SessionEvent], None]


class SessionEventBus:
    """Fans session events out to subscribed listeners in publish order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Session event listener failed",
                    extra={"event_type": event.event_type, "worktree_id": event.worktree_id},
                )


__all__ = [
    "Listener",
    "MessageFinalizedEvent",
    "MessageUpdatedEvent",
    "SessionErrorEvent",
    "SessionEvent",
    "SessionEventBus",
    "ToolCallUpdatedEvent",
    "UsageUpdatedEvent",
]
