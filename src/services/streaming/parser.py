"""Batch protocol parser: one raw marker buffer in, one ``ParsedResponse`` out.

This is the single interpretation of raw stream text. The live reader calls
it when a stream completes and the checkpoint manager calls it on recovery,
so both paths classify identically.
"""

from __future__ import annotations

from core.observability import get_tracer
from schemas.streaming import ParsedResponse, StructuredItem
from services.streaming.classifier import ContentClassifier
from services.streaming.extractor import parse_structured_payload
from services.streaming.hooks import LoggingStreamObserver, StreamObserver
from services.streaming.stripper import (
    fold_tokens,
    normalize_whitespace,
    strip_markers,
    tokenize,
)


tracer = get_tracer(__name__)


class BatchProtocolParser:
    def __init__(
        self,
        classifier: ContentClassifier | None = None,
        observer: StreamObserver | None = None,
    ) -> None:
        self.classifier = classifier or ContentClassifier()
        self.observer: StreamObserver = observer or LoggingStreamObserver(__name__)

    def parse(self, raw_buffer: str) -> ParsedResponse:
        """Parse a complete or truncated buffer; never raises on malformed input."""
        with tracer.start_as_current_span("stream.parse") as span:
            span.set_attribute("buffer.length", len(raw_buffer))

            normalized = normalize_whitespace(raw_buffer)
            folded = fold_tokens(tokenize(normalized))
            clean_text = strip_markers(folded.text)

            items: list[StructuredItem] = []
            for payload in folded.structured_payloads:
                items.extend(parse_structured_payload(payload))

            envelope = self.classifier.classify(clean_text)
            response = ParsedResponse(
                envelope=envelope,
                reasoning=folded.reasoning,
                structured_items=tuple(items),
                status_sequence=tuple(folded.statuses),
            )

            span.set_attribute("response.kind", envelope.kind.value)
            span.set_attribute("items.count", len(items))
            self.observer.parse_completed(buffer_chars=len(raw_buffer), response=response)
            return response


_default_parser: BatchProtocolParser | None = None


def parse(raw_buffer: str) -> ParsedResponse:
    """Parse with the default classifier and logging observer."""
    global _default_parser
    if _default_parser is None:
        _default_parser = BatchProtocolParser()
    return _default_parser.parse(raw_buffer)
