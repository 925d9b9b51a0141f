"""Inline control-marker grammar.

A single text channel carries display text interleaved with bracketed
control markers:

    [STATUS:analyzing_brand]
    [THINKING:START] [THINKING:CHUNK]... [THINKING:END]
    [TOOL:web_search:START] [TOOL:web_search:END]
    [PRODUCTS:[{"name": ..., "url": ...}]]
    [REMEMBER:fact to keep]

plus at most one content-envelope tag around the final answer. The tokenizer
in ``services.streaming.stripper`` turns a buffer into the token types
defined here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from schemas.streaming import ResponseKind


THINKING_CHUNK_PREFIX = "[THINKING:CHUNK]"
THINKING_START = "[THINKING:START]"
THINKING_END = "[THINKING:END]"
PRODUCTS_PREFIX = "[PRODUCTS:"

# Prefixes used to recognise a marker cut off at the end of a live buffer.
MARKER_PREFIXES: tuple[str, ...] = (
    "[STATUS:",
    "[TOOL:",
    "[THINKING:",
    PRODUCTS_PREFIX,
    "[REMEMBER:",
)

THINKING_BOUNDARY_RE = re.compile(r"\[THINKING:(START|END)\]")
STATUS_RE = re.compile(r"\[STATUS:(\w+)\]")
TOOL_RE = re.compile(r"\[TOOL:(\w+):(START|END)\]")
REMEMBER_RE = re.compile(r"\[REMEMBER:([^\]]+)\]")

# Envelope tags, in the priority order used when several are present.
ENVELOPE_TAGS: tuple[tuple[str, ResponseKind], ...] = (
    ("email_copy", ResponseKind.EMAIL_COPY),
    ("clarification_request", ResponseKind.CLARIFICATION),
    ("non_copy_response", ResponseKind.OTHER),
)

ENVELOPE_OPEN_RE = re.compile(
    r"<(?:" + "|".join(tag for tag, _ in ENVELOPE_TAGS) + r")>", re.IGNORECASE
)


@dataclass(frozen=True, slots=True)
class TextSegment:
    text: str


@dataclass(frozen=True, slots=True)
class StatusMarker:
    code: str


@dataclass(frozen=True, slots=True)
class ToolUseMarker:
    name: str
    phase: Literal["START", "END"]


@dataclass(frozen=True, slots=True)
class ThinkingStartMarker:
    pass


@dataclass(frozen=True, slots=True)
class ThinkingEndMarker:
    pass


@dataclass(frozen=True, slots=True)
class ThinkingChunkMarker:
    text: str


@dataclass(frozen=True, slots=True)
class RememberMarker:
    text: str


@dataclass(frozen=True, slots=True)
class StructuredDataMarker:
    """``[PRODUCTS:...]`` payload; ``complete`` is False when truncated."""

    raw_json: str
    complete: bool = True


ControlMarker = (
    StatusMarker
    | ToolUseMarker
    | ThinkingStartMarker
    | ThinkingEndMarker
    | ThinkingChunkMarker
    | RememberMarker
    | StructuredDataMarker
)

Token = ControlMarker | TextSegment


def is_partial_marker(tail: str) -> bool:
    """Return True if ``tail`` looks like a marker whose closing ``]`` has not arrived yet."""
    if len(tail) < 2 or not tail.startswith("[") or "]" in tail:
        return False
    return any(
        prefix.startswith(tail) or tail.startswith(prefix) for prefix in MARKER_PREFIXES
    )


def serialize_status(code: str) -> str:
    return f"[STATUS:{code}]"


def serialize_tool(name: str, phase: Literal["START", "END"]) -> str:
    return f"[TOOL:{name}:{phase}]"


def serialize_products(raw_json: str) -> str:
    return f"{PRODUCTS_PREFIX}{raw_json}]"


# Private-use escape for text embedded in a thinking-chunk payload. A chunk
# ends at the next "[" or envelope opening tag, so those characters (and the
# escape character itself) are written as THINKING_ESCAPE + code.
THINKING_ESCAPE = "\ue000"
_ESCAPE_CODES = {THINKING_ESCAPE: "e", "[": "b", "<": "t"}
_UNESCAPE_CODES = {code: char for char, code in _ESCAPE_CODES.items()}
_THINKING_UNESCAPE_RE = re.compile(THINKING_ESCAPE + "([ebt])")


def escape_thinking_text(text: str) -> str:
    """Make reasoning text safe to embed after ``[THINKING:CHUNK]``.

    Reversed by ``unescape_thinking_text``.
    """
    escaped = text.replace(THINKING_ESCAPE, THINKING_ESCAPE + "e").replace(
        "[", THINKING_ESCAPE + "b"
    )
    return ENVELOPE_OPEN_RE.sub(lambda m: THINKING_ESCAPE + "t" + m.group(0)[1:], escaped)


def unescape_thinking_text(text: str) -> str:
    return _THINKING_UNESCAPE_RE.sub(lambda m: _UNESCAPE_CODES[m.group(1)], text)
