"""Tests for the marker tokenizer, stripper and reasoning extraction."""

import pytest

from services.streaming.markers import (
    StatusMarker,
    StructuredDataMarker,
    TextSegment,
    ThinkingChunkMarker,
    is_partial_marker,
)
from services.streaming.parser import parse
from services.streaming.stripper import (
    collect_statuses,
    extract_thinking,
    normalize_whitespace,
    strip_markers,
    tokenize,
)


MIXED = "[STATUS:thinking]Hello [THINKING:CHUNK]reasoning text[STATUS:analyzing_brand] world"

SAMPLES = [
    MIXED,
    "",
    "plain text with no markers",
    "Use [brackets] freely",
    "A[THINKING:CHUNK]one[THINKING:CHUNK]two[STATUS:x]B",
    "[STA[STATUS:x]TUS:y]tail",
    '[THINKING:START][TOOL:web_search:START][TOOL:web_search:END]Hi'
    '[REMEMBER:likes red][PRODUCTS:[{"name":"A","url":"u"}]][THINKING:END]',
    "Answer [PRODUCTS:[{\"name\":",
    "Trailing partial [STAT",
    "[THINKING:CHUNK]plan<email_copy>Body</email_copy>",
]


class TestTokenize:
    def test_tokens_in_arrival_order(self) -> None:
        assert tokenize(MIXED) == [
            StatusMarker("thinking"),
            TextSegment("Hello "),
            ThinkingChunkMarker("reasoning text"),
            StatusMarker("analyzing_brand"),
            TextSegment(" world"),
        ]

    def test_unterminated_products_marker_is_incomplete(self) -> None:
        tokens = tokenize('Text [PRODUCTS:[{"name":')
        assert tokens == [
            TextSegment("Text "),
            StructuredDataMarker('[{"name":', complete=False),
        ]

    def test_unknown_bracket_is_text(self) -> None:
        assert tokenize("see [note] here") == [TextSegment("see [note] here")]


class TestStripMarkers:
    def test_mixed_buffer(self) -> None:
        assert strip_markers(MIXED) == "Hello  world"

    def test_thinking_chunk_ends_at_next_marker(self) -> None:
        assert strip_markers("A[THINKING:CHUNK]one[THINKING:CHUNK]two[STATUS:x]B") == "AB"

    def test_trailing_thinking_chunk_runs_to_end(self) -> None:
        assert strip_markers("Answer[THINKING:CHUNK]still thinking") == "Answer"

    def test_thinking_chunk_ends_at_envelope_tag(self) -> None:
        assert (
            strip_markers("[THINKING:CHUNK]plan<email_copy>Body</email_copy>")
            == "<email_copy>Body</email_copy>"
        )

    def test_every_marker_kind_is_removed(self) -> None:
        buffer = (
            "[THINKING:START][TOOL:web_search:START][TOOL:web_search:END]Hi"
            '[REMEMBER:likes red][PRODUCTS:[{"name":"A","url":"u"}]][THINKING:END]'
        )
        assert strip_markers(buffer) == "Hi"

    def test_products_with_nested_brackets_leaves_no_residue(self) -> None:
        buffer = 'x[PRODUCTS:[{"name":"A","url":"u","tags":["a",["b"]]}]]y'
        assert strip_markers(buffer) == "xy"

    def test_unterminated_products_is_consumed(self) -> None:
        assert strip_markers('Text [PRODUCTS:[{"name":') == "Text "

    @pytest.mark.parametrize(
        ("buffer", "expected"),
        [
            ("Hello [STAT", "Hello "),
            ("Hello [STATUS:writ", "Hello "),
            ("Hello [REMEMBER:half a fact", "Hello "),
            ("Hello [THINK", "Hello "),
            ("Hello [", "Hello ["),
            ("Hello [x", "Hello [x"),
        ],
    )
    def test_trailing_partial_marker(self, buffer: str, expected: str) -> None:
        assert strip_markers(buffer) == expected

    def test_literal_brackets_survive(self) -> None:
        assert strip_markers("Use [brackets] freely") == "Use [brackets] freely"

    def test_marker_spliced_by_removal_is_stripped(self) -> None:
        assert strip_markers("[STA[STATUS:x]TUS:y]tail") == "tail"

    @pytest.mark.parametrize("buffer", SAMPLES)
    def test_idempotent(self, buffer: str) -> None:
        once = strip_markers(buffer)
        assert strip_markers(once) == once


class TestExtractThinking:
    def test_single_chunk(self) -> None:
        assert extract_thinking(MIXED) == "reasoning text"

    def test_chunks_joined_with_blank_line(self) -> None:
        buffer = "[THINKING:CHUNK] one [STATUS:x][THINKING:CHUNK]two\n"
        assert extract_thinking(buffer) == "one\n\ntwo"

    def test_empty_chunks_are_skipped(self) -> None:
        assert extract_thinking("[THINKING:CHUNK]   [THINKING:CHUNK]real") == "real"

    def test_no_chunks(self) -> None:
        assert extract_thinking("no reasoning here") == ""

    @pytest.mark.parametrize("buffer", SAMPLES)
    def test_reasoning_survives_reembedding(self, buffer: str) -> None:
        reasoning = parse(buffer).reasoning
        assert extract_thinking("[THINKING:CHUNK]" + reasoning) == reasoning


class TestHelpers:
    def test_statuses_keep_duplicates_in_order(self) -> None:
        assert collect_statuses("[STATUS:a]x[STATUS:b][STATUS:a]") == ["a", "b", "a"]

    def test_normalize_whitespace(self) -> None:
        assert normalize_whitespace("a\r\nb\u2028c\u2029d\te") == "a\nb\nc\nd  e"

    @pytest.mark.parametrize(
        ("tail", "expected"),
        [
            ("[STAT", True),
            ("[PRODUCTS:[{", True),
            ("[TOOL:web_se", True),
            ("[", False),
            ("[STATUS:done]", False),
            ("[note", False),
        ],
    )
    def test_is_partial_marker(self, tail: str, expected: bool) -> None:
        assert is_partial_marker(tail) is expected
