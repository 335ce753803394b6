from __future__ import annotations

import json

import pytest

from grove_mcp.agent.models import Message, ToolCall, UsageStats
from grove_mcp.agent.protocol import (
    AssistantEvent,
    IgnoredEvent,
    LineBuffer,
    MessageFinalized,
    MessageUpdated,
    ResultEvent,
    SystemEvent,
    TextBlock,
    ToolCallUpdated,
    ToolUseBlock,
    TurnDecoder,
    UsageAccumulated,
    UserEvent,
    parse_event,
)


def make_decoder() -> TurnDecoder:
    return TurnDecoder(Message(role="assistant", is_streaming=True))


def line(record: dict) -> str:
    return json.dumps(record) + "\n"


def test_line_buffer_reassembles_split_lines() -> None:
    payload = line({"type": "assistant", "message": {"content": [{"type": "text", "text": "héllo"}]}})
    encoded = payload.encode("utf-8")
    expected = parse_event(payload.strip())

    for offset in range(1, len(encoded)):
        buffer = LineBuffer()
        lines = buffer.feed(encoded[:offset]) + buffer.feed(encoded[offset:])
        assert len(lines) == 1
        assert parse_event(lines[0]) == expected
        assert buffer.pending == ""


def test_line_buffer_keeps_partial_line_until_flush() -> None:
    buffer = LineBuffer()
    assert buffer.feed('{"type": "sys') == []
    assert buffer.pending == '{"type": "sys'
    assert buffer.feed("tem\"}\n\n   \n") == ['{"type": "system"}']
    assert buffer.feed("tail") == []
    assert buffer.flush() == ["tail"]
    assert buffer.flush() == []


def test_parse_event_variants() -> None:
    assert parse_event('{"type": "system", "subtype": "init"}') == SystemEvent(subtype="init")
    assert parse_event('{"type": "mystery"}') == IgnoredEvent(type="mystery")
    assert parse_event('{"no_type": true}') == IgnoredEvent(type=None)

    assistant = parse_event(
        json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Hi"},
                        {"type": "tool_use", "id": "t1", "name": "Bash"},
                        {"type": "tool_use", "name": "missing-id"},
                        {"type": "image"},
                    ]
                },
            }
        )
    )
    assert assistant == AssistantEvent(blocks=[TextBlock("Hi"), ToolUseBlock(id="t1", name="Bash", input={})])


@pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2]", "42", '"text"', "{broken"])
def test_parse_event_ignores_noise(raw: str) -> None:
    assert parse_event(raw) is None


def test_noise_produces_no_effects() -> None:
    decoder = make_decoder()
    assert decoder.feed(b"garbage\n\n  \n[1]\n") == []
    assert decoder.flush() == []
    assert decoder.message.content == ""
    assert decoder.finalized is False


def test_text_blocks_append_to_message() -> None:
    decoder = make_decoder()
    effects = decoder.feed(
        line({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}})
        + line({"type": "assistant", "message": {"content": [{"type": "text", "text": ", world"}]}})
    )

    assert [type(effect) for effect in effects] == [MessageUpdated, MessageUpdated]
    assert effects[0].message.content == "Hello"
    assert effects[1].message.content == "Hello, world"
    assert decoder.message.is_streaming is True


def test_effects_carry_snapshots() -> None:
    decoder = make_decoder()
    (effect,) = decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "text", "text": "a"}]}}))
    decoder.message.content = "mutated"
    assert effect.message.content == "a"


def test_tool_result_closes_matching_call() -> None:
    tool_calls: dict[str, ToolCall] = {}
    decoder = TurnDecoder(Message(role="assistant", is_streaming=True), tool_calls)

    started = decoder.feed(
        line(
            {
                "type": "assistant",
                "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Grep", "input": {"q": "x"}}]},
            }
        )
    )
    assert isinstance(started[0], ToolCallUpdated)
    assert started[0].tool_call.status == "running"

    finished = decoder.feed(
        line(
            {
                "type": "user",
                "message": {
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "t1",
                            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
                        },
                        {"type": "tool_result", "tool_use_id": "unknown", "content": "ignored"},
                    ]
                },
            }
        )
    )

    assert len(finished) == 1
    assert finished[0].tool_call.output == "a\nb"
    assert tool_calls["t1"].status == "completed"
    assert "unknown" not in tool_calls

    # A closed call is not reopened by a duplicate result.
    assert decoder.apply(UserEvent(results=[])) == []
    duplicate = decoder.feed(
        line({"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "again"}]}})
    )
    assert duplicate == []
    assert tool_calls["t1"].output == "a\nb"


def test_repeated_tool_use_does_not_reopen_call() -> None:
    tool_calls: dict[str, ToolCall] = {}
    decoder = TurnDecoder(Message(role="assistant", is_streaming=True), tool_calls)
    use = line({"type": "assistant", "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Read"}]}})
    result = line(
        {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}]}}
    )

    effects = decoder.feed(use) + decoder.feed(result) + decoder.feed(use) + decoder.feed(result)

    statuses = [effect.tool_call.status for effect in effects if isinstance(effect, ToolCallUpdated)]
    assert statuses == ["running", "completed"]
    assert tool_calls["t1"].status == "completed"
    assert tool_calls["t1"].output == "ok"


def test_tool_result_error_flag_marks_error_status() -> None:
    decoder = make_decoder()
    decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "tool_use", "id": "t9", "name": "Bash"}]}}))
    (effect,) = decoder.feed(
        line(
            {
                "type": "user",
                "message": {"content": [{"type": "tool_result", "tool_use_id": "t9", "content": "nope", "is_error": True}]},
            }
        )
    )
    assert effect.tool_call.status == "error"
    assert effect.tool_call.output == "nope"


def test_success_result_keeps_text_and_finalizes() -> None:
    decoder = make_decoder()
    decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "text", "text": "streamed"}]}}))
    effects = decoder.feed(
        line(
            {
                "type": "result",
                "subtype": "success",
                "result": "streamed",
                "usage": {"input_tokens": 4, "output_tokens": 2, "cache_read_input_tokens": 1},
                "total_cost_usd": 0.01,
                "num_turns": 1,
                "duration_ms": 120,
            }
        )
    )

    assert [type(effect) for effect in effects] == [UsageAccumulated, MessageFinalized]
    assert effects[0].delta == UsageStats(
        total_cost_usd=0.01,
        input_tokens=4,
        output_tokens=2,
        cache_read_input_tokens=1,
        total_turns=1,
        last_duration_ms=120,
    )
    assert effects[1].message.content == "streamed"
    assert effects[1].message.is_streaming is False
    assert effects[1].is_error is False
    assert decoder.finalized is True


def test_error_result_appends_text() -> None:
    decoder = make_decoder()
    decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}}))
    effects = decoder.feed(line({"type": "result", "subtype": "error_during_execution", "errors": ["bad", "worse"]}))

    assert effects[-1].is_error is True
    assert decoder.message.content == "partial\n\nbad\nworse"


def test_error_result_without_text_uses_subtype() -> None:
    decoder = make_decoder()
    decoder.apply(ResultEvent(subtype="error_max_turns", is_error=True))
    assert decoder.message.content == "Agent reported an error (error_max_turns)"


def test_nothing_applies_after_finalization() -> None:
    decoder = make_decoder()
    decoder.feed(line({"type": "result", "subtype": "success"}))

    assert decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "text", "text": "late"}]}})) == []
    assert decoder.feed(line({"type": "result", "subtype": "success", "usage": {"input_tokens": 5}})) == []
    assert decoder.finalize() == []
    assert decoder.append_error("late error") == []
    assert decoder.message.content == ""


def test_finalize_is_the_safety_net() -> None:
    decoder = make_decoder()
    decoder.feed(line({"type": "assistant", "message": {"content": [{"type": "text", "text": "cut off"}]}}))
    (effect,) = decoder.finalize()

    assert isinstance(effect, MessageFinalized)
    assert effect.message.content == "cut off"
    assert effect.message.is_streaming is False
    assert decoder.finalize() == []


def test_usage_numbers_are_sanitized() -> None:
    event = parse_event(
        json.dumps(
            {
                "type": "result",
                "subtype": "success",
                "usage": {"input_tokens": -3, "output_tokens": "12", "cache_creation_input_tokens": True},
                "cost_usd": 0.5,
                "num_turns": 2.0,
            }
        )
    )
    assert event.usage.input_tokens == 0
    assert event.usage.output_tokens == 0
    assert event.usage.cache_creation_input_tokens == 0
    assert event.usage.total_cost_usd == pytest.approx(0.5)
    assert event.usage.total_turns == 2


def test_usage_accumulation_sums_and_overwrites_duration() -> None:
    totals = UsageStats()
    totals.accumulate(UsageStats(input_tokens=10, output_tokens=5, total_turns=1, last_duration_ms=100))
    totals.accumulate(UsageStats(input_tokens=3, output_tokens=7, total_turns=2, last_duration_ms=40))

    assert totals.input_tokens == 13
    assert totals.output_tokens == 12
    assert totals.total_turns == 3
    assert totals.last_duration_ms == 40
