"""Bracket-balanced extraction of ``[PRODUCTS:...]`` payloads."""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from schemas.streaming import StructuredItem
from services.streaming.markers import PRODUCTS_PREFIX


logger = logging.getLogger(__name__)


def find_payload_end(buffer: str, start: int) -> int | None:
    """Return the index of the ``]`` closing a marker whose payload begins at ``start``.

    Brackets are depth-counted so the payload's own JSON arrays do not end
    the marker early, and brackets inside JSON string literals are ignored.
    Returns None when the buffer ends before the marker is balanced, which is
    the normal state of a structured-data marker that is still streaming.
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(buffer)):
        char = buffer[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            if depth == 0:
                return index
            depth -= 1
    return None


def _coerce_item(raw: Any) -> StructuredItem | None:
    try:
        return StructuredItem.model_validate(raw)
    except ValidationError:
        return None


def parse_structured_payload(raw_json: str) -> list[StructuredItem]:
    """Validate one marker payload; invalid objects are dropped, bad JSON yields []."""
    payload = raw_json.strip()
    if not payload.startswith("[") or not payload.endswith("]"):
        return []
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Structured data payload is not valid JSON (%d chars)", len(payload))
        return []
    if not isinstance(parsed, list):
        return []

    items: list[StructuredItem] = []
    for raw in parsed:
        item = _coerce_item(raw)
        if item is not None:
            items.append(item)
    dropped = len(parsed) - len(items)
    if dropped:
        logger.debug("Dropped %d structured item(s) missing name or url", dropped)
    return items


def extract_structured_data(buffer: str) -> list[StructuredItem]:
    """Collect the items of every complete ``[PRODUCTS:...]`` marker, in order.

    Never raises: a marker that is not yet balanced contributes nothing.
    """
    items: list[StructuredItem] = []
    position = buffer.find(PRODUCTS_PREFIX)
    while position != -1:
        start = position + len(PRODUCTS_PREFIX)
        end = find_payload_end(buffer, start)
        if end is None:
            break
        items.extend(parse_structured_payload(buffer[start:end]))
        position = buffer.find(PRODUCTS_PREFIX, end + 1)
    return items
