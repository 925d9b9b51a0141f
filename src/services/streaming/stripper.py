"""Tokenizer for the inline marker protocol and the folds built on it.

``tokenize`` walks a buffer once and yields display-text segments and
control markers in order. Stripping, reasoning extraction and status
collection are all folds over that token list, so they agree on where every
marker starts and ends.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from services.streaming.extractor import find_payload_end
from services.streaming.markers import (
    ENVELOPE_OPEN_RE,
    PRODUCTS_PREFIX,
    REMEMBER_RE,
    STATUS_RE,
    THINKING_BOUNDARY_RE,
    THINKING_CHUNK_PREFIX,
    TOOL_RE,
    ControlMarker,
    RememberMarker,
    StatusMarker,
    StructuredDataMarker,
    TextSegment,
    ThinkingChunkMarker,
    ThinkingEndMarker,
    ThinkingStartMarker,
    Token,
    ToolUseMarker,
    is_partial_marker,
    unescape_thinking_text,
)


REASONING_SEPARATOR = "\n\n"


def normalize_whitespace(value: str) -> str:
    """Drop carriage returns, map Unicode line separators to ``\\n`` and tabs to two spaces."""
    return (
        value.replace("\r", "")
        .replace("\u2028", "\n")
        .replace("\u2029", "\n")
        .replace("\t", "  ")
    )


def _thinking_chunk_end(buffer: str, start: int) -> int:
    # The payload runs to the next "[" or envelope opening tag, or to the end
    # of the buffer for a trailing chunk.
    candidates = [len(buffer)]
    bracket = buffer.find("[", start)
    if bracket != -1:
        candidates.append(bracket)
    envelope = ENVELOPE_OPEN_RE.search(buffer, start)
    if envelope is not None:
        candidates.append(envelope.start())
    return min(candidates)


def _match_marker(buffer: str, index: int) -> tuple[ControlMarker | None, int]:
    """Match a marker starting at ``buffer[index] == "["``; return it and the index after it."""
    if buffer.startswith(THINKING_CHUNK_PREFIX, index):
        start = index + len(THINKING_CHUNK_PREFIX)
        end = _thinking_chunk_end(buffer, start)
        return ThinkingChunkMarker(buffer[start:end]), end

    if buffer.startswith(PRODUCTS_PREFIX, index):
        start = index + len(PRODUCTS_PREFIX)
        close = find_payload_end(buffer, start)
        if close is None:
            return StructuredDataMarker(buffer[start:], complete=False), len(buffer)
        return StructuredDataMarker(buffer[start:close]), close + 1

    if match := THINKING_BOUNDARY_RE.match(buffer, index):
        marker: ControlMarker = (
            ThinkingStartMarker() if match.group(1) == "START" else ThinkingEndMarker()
        )
        return marker, match.end()
    if match := STATUS_RE.match(buffer, index):
        return StatusMarker(match.group(1)), match.end()
    if match := TOOL_RE.match(buffer, index):
        phase = "START" if match.group(2) == "START" else "END"
        return ToolUseMarker(match.group(1), phase), match.end()
    if match := REMEMBER_RE.match(buffer, index):
        return RememberMarker(match.group(1)), match.end()
    return None, index


def tokenize(buffer: str) -> list[Token]:
    """Split ``buffer`` into text segments and control markers.

    A ``[`` that starts no known marker is ordinary text, except at the very
    end of a buffer where an unterminated marker prefix (``[STAT``) is
    dropped: the rest of it has simply not arrived yet.
    """
    tokens: list[Token] = []
    text_start = 0
    index = 0
    while (index := buffer.find("[", index)) != -1:
        marker, end = _match_marker(buffer, index)
        if marker is None:
            if is_partial_marker(buffer[index:]):
                if index > text_start:
                    tokens.append(TextSegment(buffer[text_start:index]))
                return tokens
            index += 1
            continue
        if index > text_start:
            tokens.append(TextSegment(buffer[text_start:index]))
        tokens.append(marker)
        index = text_start = end
    if text_start < len(buffer):
        tokens.append(TextSegment(buffer[text_start:]))
    return tokens


@dataclass
class FoldedBuffer:
    """Accumulators produced by a single pass over a token list."""

    text: str = ""
    reasoning_chunks: list[str] = field(default_factory=list)
    statuses: list[str] = field(default_factory=list)
    structured_payloads: list[str] = field(default_factory=list)
    tool_calls: list[str] = field(default_factory=list)
    remembered: list[str] = field(default_factory=list)

    @property
    def reasoning(self) -> str:
        return REASONING_SEPARATOR.join(self.reasoning_chunks)


def fold_tokens(tokens: list[Token]) -> FoldedBuffer:
    folded = FoldedBuffer()
    text_parts: list[str] = []
    for token in tokens:
        match token:
            case TextSegment(text=text):
                text_parts.append(text)
            case ThinkingChunkMarker(text=text):
                if chunk := unescape_thinking_text(text).strip():
                    folded.reasoning_chunks.append(chunk)
            case StatusMarker(code=code):
                folded.statuses.append(code)
            case StructuredDataMarker(raw_json=raw_json, complete=True):
                folded.structured_payloads.append(raw_json)
            case ToolUseMarker(name=name, phase="START"):
                folded.tool_calls.append(name)
            case RememberMarker(text=text):
                folded.remembered.append(text)
            case _:
                pass
    folded.text = "".join(text_parts)
    return folded


def _strip_once(buffer: str) -> str:
    return "".join(
        token.text for token in tokenize(buffer) if isinstance(token, TextSegment)
    )


def strip_markers(buffer: str) -> str:
    """Remove every recognised marker and return the display text.

    Removing a marker can splice two text fragments into something that looks
    like a new marker, so passes repeat until the text stops changing. Each
    changing pass shortens the text, and the result is a fixed point, which
    makes the function idempotent.
    """
    result = _strip_once(buffer)
    while (again := _strip_once(result)) != result:
        result = again
    return result


def extract_thinking(buffer: str) -> str:
    """Concatenate trimmed ``[THINKING:CHUNK]`` payloads separated by a blank line."""
    return fold_tokens(tokenize(normalize_whitespace(buffer))).reasoning


def collect_statuses(buffer: str) -> list[str]:
    """Status codes in arrival order, duplicates kept."""
    return fold_tokens(tokenize(buffer)).statuses
