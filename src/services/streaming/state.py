"""Live stream accumulator and the NDJSON event decoder that feeds it.

Line-delimited JSON events and inline-marker text are two serializations of
the same event stream. ``StreamState.apply`` consumes the former and, as it
updates the live accumulators, writes the equivalent marker text into
``raw_buffer``. The batch parser therefore sees exactly what the live path
saw, whether it runs at completion or on a checkpoint recovered later.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from schemas.streaming import Checkpoint, StructuredItem
from services.streaming.extractor import parse_structured_payload
from services.streaming.markers import (
    THINKING_CHUNK_PREFIX,
    THINKING_END,
    THINKING_START,
    escape_thinking_text,
    serialize_products,
    serialize_status,
    serialize_tool,
)


SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"

_NON_WORD_RE = re.compile(r"\W+")


class ReaderStatus(str, Enum):
    IDLE = "idle"
    READING = "reading"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EventDecodeError(ValueError):
    """A complete line that is not a JSON object with a string ``type``."""


def decode_event_line(line: str) -> dict[str, Any] | None:
    """Decode one NDJSON line; blank lines yield None.

    A leading SSE ``data:`` field name is tolerated so the reader can sit
    behind proxies that re-frame the stream.
    """
    text = line.strip()
    if not text:
        return None
    if text.startswith(SSE_DATA_PREFIX):
        text = text[len(SSE_DATA_PREFIX):].strip()
        if not text:
            return None
    if text == SSE_DONE_SENTINEL:
        return {"type": "done"}
    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        raise EventDecodeError(f"line is not valid JSON ({len(text)} chars)") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise EventDecodeError("event has no string 'type' field")
    return event


def _word(value: Any) -> str:
    return _NON_WORD_RE.sub("_", str(value or "")).strip("_")


@dataclass
class StreamUpdate:
    """Snapshot handed to UI update callbacks."""

    stream_key: str
    kind: str
    display_text: str
    reasoning_text: str
    sequence: int


@dataclass
class StreamState:
    """Mutable accumulator for one in-flight generation. Never shared."""

    stream_key: str
    status: ReaderStatus = ReaderStatus.IDLE
    line_buffer: str = ""
    display_text: str = ""
    reasoning_text: str = ""
    raw_buffer: str = ""
    structured_items: list[StructuredItem] = field(default_factory=list)
    status_sequence: list[str] = field(default_factory=list)
    tool_calls: list[str] = field(default_factory=list)
    error: str | None = None
    done: bool = False
    sequence: int = 0
    last_checkpoint_at: int = 0
    unknown_events: int = 0
    _thinking_open: bool = field(default=False, repr=False)

    def apply(self, event: dict[str, Any]) -> bool:
        """Apply a decoded event; return False for an unrecognised ``type``."""
        handler = _EVENT_HANDLERS.get(event.get("type", ""))
        if handler is None:
            self.unknown_events += 1
            return False
        handler(self, event)
        self.sequence += 1
        return True

    def snapshot(self, kind: str) -> StreamUpdate:
        return StreamUpdate(
            stream_key=self.stream_key,
            kind=kind,
            display_text=self.display_text,
            reasoning_text=self.reasoning_text,
            sequence=self.sequence,
        )

    def to_checkpoint(self) -> Checkpoint:
        return Checkpoint(
            stream_key=self.stream_key,
            display_text=self.display_text,
            reasoning_text=self.reasoning_text,
            raw_buffer=self.raw_buffer,
            sequence=self.sequence,
        )

    def _append_marker(self, marker: str) -> None:
        # Any marker closes an open thinking-chunk run.
        self.raw_buffer += marker
        self._thinking_open = False

    def _on_status(self, event: dict[str, Any]) -> None:
        code = _word(event.get("status"))
        if not code:
            return
        self.status_sequence.append(code)
        self._append_marker(serialize_status(code))

    def _on_thinking_start(self, event: dict[str, Any]) -> None:
        self._append_marker(THINKING_START)

    def _on_thinking(self, event: dict[str, Any]) -> None:
        content = str(event.get("content") or "")
        if not content:
            return
        if not self._thinking_open:
            self.raw_buffer += THINKING_CHUNK_PREFIX
            self._thinking_open = True
        self.raw_buffer += escape_thinking_text(content)
        self.reasoning_text += content

    def _on_thinking_end(self, event: dict[str, Any]) -> None:
        self._append_marker(THINKING_END)

    def _on_tool_use(self, event: dict[str, Any]) -> None:
        name = _word(event.get("tool"))
        phase = str(event.get("status") or "").upper()
        if not name or phase not in {"START", "END"}:
            return
        if phase == "START":
            self.tool_calls.append(name)
        self._append_marker(serialize_tool(name, "START" if phase == "START" else "END"))

    def _on_text(self, event: dict[str, Any]) -> None:
        content = str(event.get("content") or "")
        if not content:
            return
        if self._thinking_open:
            self._append_marker(THINKING_END)
        self.raw_buffer += content
        self.display_text += content

    def _on_products(self, event: dict[str, Any]) -> None:
        products = event.get("products")
        if not isinstance(products, list):
            return
        raw_json = json.dumps(products, ensure_ascii=False)
        self.structured_items.extend(parse_structured_payload(raw_json))
        self._append_marker(serialize_products(raw_json))

    def _on_error(self, event: dict[str, Any]) -> None:
        self.error = str(event.get("error") or event.get("message") or "unknown error")

    def _on_done(self, event: dict[str, Any]) -> None:
        self.done = True


_EVENT_HANDLERS: dict[str, Callable[[StreamState, dict[str, Any]], None]] = {
    "status": StreamState._on_status,
    "thinking_start": StreamState._on_thinking_start,
    "thinking": StreamState._on_thinking,
    "thinking_end": StreamState._on_thinking_end,
    "tool_use": StreamState._on_tool_use,
    "text": StreamState._on_text,
    "products": StreamState._on_products,
    "error": StreamState._on_error,
    "done": StreamState._on_done,
}

KNOWN_EVENT_TYPES = frozenset(_EVENT_HANDLERS)


def replay_ndjson(stream_key: str, text: str) -> StreamState:
    """Rebuild a state from stored NDJSON text, skipping lines that do not decode."""
    state = StreamState(stream_key=stream_key)
    for line in text.split("\n"):
        try:
            event = decode_event_line(line)
        except EventDecodeError:
            continue
        if event is not None:
            state.apply(event)
    return state
