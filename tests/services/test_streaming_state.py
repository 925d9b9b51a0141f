"""Tests for NDJSON event decoding and the live stream accumulator."""

import json

import pytest

from schemas.streaming import ResponseKind
from services.streaming.parser import BatchProtocolParser
from services.streaming.state import (
    EventDecodeError,
    StreamState,
    decode_event_line,
    replay_ndjson,
)


PRODUCTS = [{"name": "Tee", "url": "https://shop/tee"}]


def apply_all(state: StreamState, *events: dict) -> None:
    for event in events:
        state.apply(event)


class TestDecodeEventLine:
    @pytest.mark.parametrize("line", ["", "   ", "data:", "data:   "])
    def test_blank_lines(self, line: str) -> None:
        assert decode_event_line(line) is None

    def test_plain_json(self) -> None:
        assert decode_event_line('{"type": "text", "content": "Hi"}\r') == {
            "type": "text",
            "content": "Hi",
        }

    def test_sse_data_prefix(self) -> None:
        assert decode_event_line('data: {"type": "done"}') == {"type": "done"}

    @pytest.mark.parametrize("line", ["[DONE]", "data: [DONE]"])
    def test_done_sentinel(self, line: str) -> None:
        assert decode_event_line(line) == {"type": "done"}

    @pytest.mark.parametrize(
        "line", ["not json", '{"content": "no type"}', '["a list"]', '{"type": 3}']
    )
    def test_invalid_lines(self, line: str) -> None:
        with pytest.raises(EventDecodeError):
            decode_event_line(line)


class TestStreamState:
    def test_events_are_serialized_as_markers(self) -> None:
        state = StreamState(stream_key="msg-1")
        apply_all(
            state,
            {"type": "status", "status": "analyzing_brand"},
            {"type": "thinking_start"},
            {"type": "thinking", "content": "Plan the "},
            {"type": "thinking", "content": "hero"},
            {"type": "thinking_end"},
            {"type": "tool_use", "tool": "web_search", "status": "start"},
            {"type": "tool_use", "tool": "web_search", "status": "end"},
            {"type": "text", "content": "Hello"},
            {"type": "products", "products": PRODUCTS},
            {"type": "text", "content": " world"},
        )

        assert state.sequence == 10
        assert state.display_text == "Hello world"
        assert state.reasoning_text == "Plan the hero"
        assert state.status_sequence == ["analyzing_brand"]
        assert state.tool_calls == ["web_search"]
        assert [item.name for item in state.structured_items] == ["Tee"]
        assert state.raw_buffer == (
            "[STATUS:analyzing_brand][THINKING:START][THINKING:CHUNK]Plan the hero"
            "[THINKING:END][TOOL:web_search:START][TOOL:web_search:END]Hello"
            f"[PRODUCTS:{json.dumps(PRODUCTS)}] world"
        )

    def test_raw_buffer_parses_like_live_state(self) -> None:
        state = StreamState(stream_key="msg-1")
        apply_all(
            state,
            {"type": "status", "status": "writing"},
            {"type": "thinking", "content": "Draft first"},
            {"type": "text", "content": "<email_copy>Subject: Hi\nBody</email_copy>"},
            {"type": "products", "products": PRODUCTS},
        )
        response = BatchProtocolParser().parse(state.raw_buffer)

        assert response.kind is ResponseKind.EMAIL_COPY
        assert response.display_text == "Subject: Hi\nBody"
        assert response.reasoning == state.reasoning_text
        assert list(response.status_sequence) == state.status_sequence
        assert list(response.structured_items) == state.structured_items

    def test_text_closes_open_thinking_chunk(self) -> None:
        state = StreamState(stream_key="msg-1")
        apply_all(
            state,
            {"type": "thinking", "content": "a"},
            {"type": "text", "content": "b"},
        )
        assert state.raw_buffer == "[THINKING:CHUNK]a[THINKING:END]b"

    def test_thinking_text_cannot_open_markers(self) -> None:
        state = StreamState(stream_key="msg-1")
        apply_all(
            state,
            {"type": "thinking", "content": "check [STATUS:x] and <email_copy>"},
            {"type": "text", "content": "Answer"},
        )
        response = BatchProtocolParser().parse(state.raw_buffer)

        assert response.display_text == "Answer"
        assert response.status_sequence == ()
        assert response.reasoning == "check [STATUS:x] and <email_copy>"

    def test_thinking_escape_round_trips(self) -> None:
        text = "see [1], <Email_Copy> draft and a stray \ue000b"
        state = StreamState(stream_key="msg-1")
        apply_all(
            state,
            {"type": "thinking", "content": text},
            {"type": "text", "content": "<email_copy>Hi</email_copy>"},
        )
        response = BatchProtocolParser().parse(state.raw_buffer)

        chunk = state.raw_buffer.removeprefix("[THINKING:CHUNK]").split("[THINKING:END]")[0]
        assert "[" not in chunk
        assert "<" not in chunk
        assert response.reasoning == state.reasoning_text == text
        assert response.display_text == "Hi"

    def test_unknown_event_is_counted(self) -> None:
        state = StreamState(stream_key="msg-1")

        assert state.apply({"type": "mystery"}) is False
        assert state.unknown_events == 1
        assert state.sequence == 0
        assert state.raw_buffer == ""

    def test_status_code_is_sanitized(self) -> None:
        state = StreamState(stream_key="msg-1")
        state.apply({"type": "status", "status": "analyzing brand!"})
        assert state.raw_buffer == "[STATUS:analyzing_brand]"

    def test_invalid_tool_phase_writes_nothing(self) -> None:
        state = StreamState(stream_key="msg-1")

        assert state.apply({"type": "tool_use", "tool": "web_search", "status": "maybe"})
        assert state.raw_buffer == ""
        assert state.tool_calls == []

    def test_error_and_done(self) -> None:
        state = StreamState(stream_key="msg-1")
        apply_all(state, {"type": "error", "error": "rate limited"}, {"type": "done"})

        assert state.error == "rate limited"
        assert state.done is True

    def test_non_list_products_ignored(self) -> None:
        state = StreamState(stream_key="msg-1")
        state.apply({"type": "products", "products": {"name": "Tee"}})
        assert state.raw_buffer == ""

    def test_to_checkpoint(self) -> None:
        state = StreamState(stream_key="msg-1")
        apply_all(state, {"type": "text", "content": "Hi"})
        checkpoint = state.to_checkpoint()

        assert checkpoint.stream_key == "msg-1"
        assert checkpoint.raw_buffer == "Hi"
        assert checkpoint.display_text == "Hi"
        assert checkpoint.sequence == 1


def test_replay_skips_undecodable_lines() -> None:
    text = "\n".join(
        [
            json.dumps({"type": "text", "content": "Hello "}),
            "garbage",
            json.dumps({"type": "text", "content": "world"}),
        ]
    )
    state = replay_ndjson("msg-1", text)

    assert state.display_text == "Hello world"
    assert state.sequence == 2
