"""Decoder for the agent CLI's ``stream-json`` output.

The CLI writes one JSON object per line on stdout. Decoding happens in three
steps:

* :class:`LineBuffer` reassembles complete lines from arbitrarily chunked
  pipe reads.
* :func:`parse_event` turns one line into a :data:`StreamEvent` variant, or
  ``None`` for lines that are not JSON objects.
* :class:`TurnDecoder` applies events to the in-flight assistant message and
  the session's tool calls, returning effects in the order they occurred.
"""

from __future__ import annotations

import codecs
import json
import math
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, MutableMapping, Union

from .models import Message, ToolCall, UsageStats


class LineBuffer:
    """Accumulates stream chunks and yields complete, non-blank lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        return [line.strip() for line in parts if line.strip()]

    def flush(self) -> list[str]:
        """Return the residual text as a final line; the writer may omit the newline."""

        self._pending += self._decoder.decode(b"", final=True)
        residual = self._pending.strip()
        self._pending = ""
        if not residual:
            return []
        return [line.strip() for line in residual.split("\n") if line.strip()]


@dataclass(slots=True)
class TextBlock:
    text: str


@dataclass(slots=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResultBlock:
    tool_use_id: str
    output: str = ""
    is_error: bool = False


@dataclass(slots=True)
class SystemEvent:
    subtype: str | None = None


@dataclass(slots=True)
class AssistantEvent:
    blocks: list[TextBlock | ToolUseBlock] = field(default_factory=list)


@dataclass(slots=True)
class UserEvent:
    results: list[ToolResultBlock] = field(default_factory=list)


@dataclass(slots=True)
class ResultEvent:
    subtype: str | None = None
    is_error: bool = False
    result: str = ""
    usage: UsageStats = field(default_factory=UsageStats)


@dataclass(slots=True)
class IgnoredEvent:
    type: str | None = None


StreamEvent = Union[SystemEvent, AssistantEvent, UserEvent, ResultEvent, IgnoredEvent]


def _content_blocks(record: Mapping[str, Any]) -> list[Any]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return content


def _join_tool_output(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "\n".join(texts)
    return ""


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return value if value > 0 else 0


def _usage_from_result(record: Mapping[str, Any]) -> UsageStats:
    usage = record.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    cost = record.get("total_cost_usd", record.get("cost_usd"))
    return UsageStats(
        total_cost_usd=float(_number(cost)),
        input_tokens=int(_number(usage.get("input_tokens"))),
        output_tokens=int(_number(usage.get("output_tokens"))),
        cache_creation_input_tokens=int(_number(usage.get("cache_creation_input_tokens"))),
        cache_read_input_tokens=int(_number(usage.get("cache_read_input_tokens"))),
        total_turns=int(_number(record.get("num_turns"))),
        last_duration_ms=int(_number(record.get("duration_ms"))),
    )


def _result_text(record: Mapping[str, Any]) -> str:
    result = record.get("result")
    if isinstance(result, str):
        return result
    errors = record.get("errors")
    if isinstance(errors, list):
        return "\n".join(str(item) for item in errors if item)
    return ""


def decode_record(record: Mapping[str, Any]) -> StreamEvent:
    """Map a parsed JSON object onto its event variant."""

    event_type = record.get("type")

    if event_type == "system":
        subtype = record.get("subtype")
        return SystemEvent(subtype=subtype if isinstance(subtype, str) else None)

    if event_type == "assistant":
        blocks: list[TextBlock | ToolUseBlock] = []
        for block in _content_blocks(record):
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text" and isinstance(block.get("text"), str):
                blocks.append(TextBlock(text=block["text"]))
            elif kind == "tool_use":
                tool_id = block.get("id")
                name = block.get("name")
                if not isinstance(tool_id, str) or not tool_id:
                    continue
                if not isinstance(name, str) or not name:
                    continue
                raw_input = block.get("input")
                blocks.append(
                    ToolUseBlock(
                        id=tool_id,
                        name=name,
                        input=dict(raw_input) if isinstance(raw_input, dict) else {},
                    )
                )
        return AssistantEvent(blocks=blocks)

    if event_type == "user":
        results: list[ToolResultBlock] = []
        for block in _content_blocks(record):
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_use_id = block.get("tool_use_id")
            if not isinstance(tool_use_id, str) or not tool_use_id:
                continue
            results.append(
                ToolResultBlock(
                    tool_use_id=tool_use_id,
                    output=_join_tool_output(block.get("content")),
                    is_error=block.get("is_error") is True,
                )
            )
        return UserEvent(results=results)

    if event_type == "result":
        subtype = record.get("subtype")
        subtype = subtype if isinstance(subtype, str) else None
        return ResultEvent(
            subtype=subtype,
            is_error=record.get("is_error") is True or (subtype is not None and subtype != "success"),
            result=_result_text(record),
            usage=_usage_from_result(record),
        )

    return IgnoredEvent(type=event_type if isinstance(event_type, str) else None)


def parse_event(line: str) -> StreamEvent | None:
    """Decode one line; noise that is not a JSON object yields ``None``."""

    try:
        record = json.loads(line)
    except (TypeError, ValueError):
        return None
    if not isinstance(record, dict):
        return None
    return decode_record(record)


@dataclass(slots=True)
class MessageUpdated:
    message: Message


@dataclass(slots=True)
class ToolCallUpdated:
    tool_call: ToolCall


@dataclass(slots=True)
class UsageAccumulated:
    delta: UsageStats


@dataclass(slots=True)
class MessageFinalized:
    message: Message
    is_error: bool = False


Effect = Union[MessageUpdated, ToolCallUpdated, UsageAccumulated, MessageFinalized]


class TurnDecoder:
    """Applies one turn's stream to an assistant message.

    ``tool_calls`` is shared with the owning session so results can close
    invocations seen earlier. Effects carry snapshots, never live objects.
    """

    def __init__(
        self,
        message: Message,
        tool_calls: MutableMapping[str, ToolCall] | None = None,
    ) -> None:
        self.message = message
        self.tool_calls: MutableMapping[str, ToolCall] = tool_calls if tool_calls is not None else {}
        self._buffer = LineBuffer()
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def feed(self, chunk: bytes | str) -> list[Effect]:
        effects: list[Effect] = []
        for line in self._buffer.feed(chunk):
            effects.extend(self.apply_line(line))
        return effects

    def flush(self) -> list[Effect]:
        effects: list[Effect] = []
        for line in self._buffer.flush():
            effects.extend(self.apply_line(line))
        return effects

    def apply_line(self, line: str) -> list[Effect]:
        event = parse_event(line)
        if event is None:
            return []
        return self.apply(event)

    def apply(self, event: StreamEvent) -> list[Effect]:
        if self._finalized:
            return []
        if isinstance(event, AssistantEvent):
            return self._apply_assistant(event)
        if isinstance(event, UserEvent):
            return self._apply_user(event)
        if isinstance(event, ResultEvent):
            return self._apply_result(event)
        # SystemEvent and IgnoredEvent leave the turn untouched.
        return []

    def _apply_assistant(self, event: AssistantEvent) -> list[Effect]:
        effects: list[Effect] = []
        for block in event.blocks:
            if isinstance(block, TextBlock):
                self.message.content += block.text
                effects.append(MessageUpdated(message=replace(self.message)))
            elif block.id in self.tool_calls:
                # Repeated tool_use ids never reopen a call.
                continue
            else:
                tool_call = ToolCall(
                    id=block.id,
                    name=block.name,
                    input=dict(block.input),
                    status="running",
                )
                self.tool_calls[tool_call.id] = tool_call
                effects.append(ToolCallUpdated(tool_call=replace(tool_call)))
        return effects

    def _apply_user(self, event: UserEvent) -> list[Effect]:
        effects: list[Effect] = []
        for block in event.results:
            tool_call = self.tool_calls.get(block.tool_use_id)
            if tool_call is None or not tool_call.is_open:
                continue
            tool_call.output = block.output
            tool_call.status = "error" if block.is_error else "completed"
            effects.append(ToolCallUpdated(tool_call=replace(tool_call)))
        return effects

    def _apply_result(self, event: ResultEvent) -> list[Effect]:
        if event.is_error:
            text = event.result or f"Agent reported an error ({event.subtype or 'unknown'})"
            self._append(text)
        effects: list[Effect] = [UsageAccumulated(delta=event.usage)]
        effects.extend(self._finish(is_error=event.is_error))
        return effects

    def append_error(self, text: str) -> list[Effect]:
        """Embed a process-level error in the message so it is visible inline."""

        if self._finalized or not text:
            return []
        self._append(text)
        return [MessageUpdated(message=replace(self.message))]

    def finalize(self) -> list[Effect]:
        """Force the terminal state when the stream ended without a result."""

        if self._finalized:
            return []
        return self._finish(is_error=False)

    def _append(self, text: str) -> None:
        if self.message.content:
            self.message.content += "\n\n" + text
        else:
            self.message.content = text

    def _finish(self, *, is_error: bool) -> list[Effect]:
        self._finalized = True
        self.message.is_streaming = False
        return [MessageFinalized(message=replace(self.message), is_error=is_error)]


__all__ = [
    "AssistantEvent",
    "Effect",
    "IgnoredEvent",
    "LineBuffer",
    "MessageFinalized",
    "MessageUpdated",
    "ResultEvent",
    "StreamEvent",
    "SystemEvent",
    "TextBlock",
    "ToolCallUpdated",
    "ToolResultBlock",
    "ToolUseBlock",
    "TurnDecoder",
    "UsageAccumulated",
    "UserEvent",
    "decode_record",
    "parse_event",
]
