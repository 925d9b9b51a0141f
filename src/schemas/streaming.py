"""Schemas for the streaming generation pipeline.

These are the shapes that leave the parser: structured side-channel items,
the classified response envelope, the immutable ``ParsedResponse`` and the
persisted ``Checkpoint``. Intermediate marker tokens live in
``services.streaming.markers`` and are never serialized.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ResponseKind(str, Enum):
    EMAIL_COPY = "email_copy"
    CLARIFICATION = "clarification"
    OTHER = "other"


class StructuredItem(BaseModel):
    """A product reference carried by a ``[PRODUCTS:...]`` marker."""

    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    description: str | None = None

    model_config = ConfigDict(frozen=True)

    @field_validator("name", "url")
    @classmethod
    def reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def drop_unusable_description(cls, value: Any) -> str | None:
        return value if isinstance(value, str) and value else None


class ResponseEnvelope(BaseModel):
    """The classified final answer.

    ``raw_text`` is what the classifier saw: the inner text of an envelope
    tag, or the whole cleaned buffer when heuristics decided. ``text`` is the
    UI-facing rendition, identical to ``raw_text`` except for clarification
    requests, which are normalized into a fixed bullet list.
    """

    kind: ResponseKind
    text: str = ""
    raw_text: str = ""

    model_config = ConfigDict(frozen=True)


class ParsedResponse(BaseModel):
    """Terminal output of a batch parse; immutable once built."""

    envelope: ResponseEnvelope
    reasoning: str = ""
    structured_items: tuple[StructuredItem, ...] = ()
    status_sequence: tuple[str, ...] = ()
    kind: ResponseKind | None = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _mirror_envelope_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("kind") is None:
            envelope = data.get("envelope")
            if isinstance(envelope, ResponseEnvelope):
                data = {**data, "kind": envelope.kind}
            elif isinstance(envelope, dict) and "kind" in envelope:
                data = {**data, "kind": envelope["kind"]}
        return data

    @model_validator(mode="after")
    def _check_kind(self) -> ParsedResponse:
        if self.kind != self.envelope.kind:
            raise ValueError("kind must mirror envelope.kind")
        return self

    @property
    def display_text(self) -> str:
        return self.envelope.text


class Checkpoint(BaseModel):
    """Snapshot of an in-flight stream, persisted as camelCase JSON.

    ``raw_buffer`` holds marker-laden text so a recovery can re-run the batch
    parser and reclassify from scratch.
    """

    stream_key: str = Field(..., min_length=1)
    display_text: str = ""
    reasoning_text: str = ""
    raw_buffer: str = ""
    sequence: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_storage(self) -> str:
        return self.model_dump_json(by_alias=True)

    def age_seconds(self, now: datetime | None = None) -> float:
        current = now or datetime.now(UTC)
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return (current - created).total_seconds()


# -----------------------------------------------------------------------------
# API payloads
# -----------------------------------------------------------------------------


class ParseRequest(BaseModel):
    """Request body for re-parsing a raw marker buffer."""

    raw: str = Field(..., max_length=2_000_000)

    model_config = ConfigDict(extra="forbid")


class StreamOutcomeSummary(BaseModel):
    """Result of ingesting one NDJSON stream."""

    stream_key: str
    status: Literal["completed", "cancelled", "recovered"]
    events_processed: int
    unknown_events: int = 0
    error: str | None = None
    response: ParsedResponse | None = None
