"""Tests for the batch protocol parser."""

import pytest
from pydantic import ValidationError

from schemas.streaming import ResponseKind
from services.streaming.classifier import ContentClassifier
from services.streaming.parser import BatchProtocolParser


FULL_BUFFER = (
    "[STATUS:analyzing_brand][THINKING:START][THINKING:CHUNK]Plan the hero"
    "[THINKING:END][TOOL:web_search:START][TOOL:web_search:END][STATUS:writing]"
    "<email_copy>Subject: Sale!\nBody</email_copy>"
    '[PRODUCTS:[{"name":"Tee","url":"https://shop/tee","description":"Soft"}]]'
)


@pytest.fixture
def parser(observer) -> BatchProtocolParser:
    return BatchProtocolParser(observer=observer)


class TestBatchProtocolParser:
    def test_mixed_buffer(self, parser: BatchProtocolParser) -> None:
        response = parser.parse(
            "[STATUS:thinking]Hello [THINKING:CHUNK]reasoning text"
            "[STATUS:analyzing_brand] world"
        )

        assert response.kind is ResponseKind.OTHER
        assert response.display_text == "Hello  world"
        assert response.reasoning == "reasoning text"
        assert response.status_sequence == ("thinking", "analyzing_brand")
        assert response.structured_items == ()

    def test_full_buffer(self, parser: BatchProtocolParser) -> None:
        response = parser.parse(FULL_BUFFER)

        assert response.kind is ResponseKind.EMAIL_COPY
        assert response.envelope.kind is response.kind
        assert response.display_text == "Subject: Sale!\nBody"
        assert response.reasoning == "Plan the hero"
        assert response.status_sequence == ("analyzing_brand", "writing")
        assert [item.name for item in response.structured_items] == ["Tee"]

    def test_carriage_returns_are_normalized(self, parser: BatchProtocolParser) -> None:
        response = parser.parse("<email_copy>Line1\r\nLine2</email_copy>")
        assert response.display_text == "Line1\nLine2"

    def test_every_prefix_parses(self, parser: BatchProtocolParser) -> None:
        # A checkpoint can be written at any byte of the stream.
        for end in range(len(FULL_BUFFER) + 1):
            response = parser.parse(FULL_BUFFER[:end])
            assert response.kind is response.envelope.kind
            assert "[PRODUCTS:" not in response.display_text

    def test_response_is_immutable(self, parser: BatchProtocolParser) -> None:
        response = parser.parse(FULL_BUFFER)
        with pytest.raises(ValidationError):
            response.reasoning = "changed"

    def test_observer_is_notified(self, parser: BatchProtocolParser, observer) -> None:
        parser.parse(FULL_BUFFER)

        assert observer.names() == ["parse_completed"]
        _, payload = observer.events[0]
        assert payload == {
            "buffer_chars": len(FULL_BUFFER),
            "kind": ResponseKind.EMAIL_COPY,
        }

    def test_custom_classifier(self, observer) -> None:
        parser = BatchProtocolParser(
            classifier=ContentClassifier(flow_outline_threshold=1), observer=observer
        )
        response = parser.parse("**Flow Goal:** x\nHeadline: y")
        assert response.kind is ResponseKind.OTHER

    def test_empty_buffer(self, parser: BatchProtocolParser) -> None:
        response = parser.parse("")
        assert response.kind is ResponseKind.OTHER
        assert response.display_text == ""
        assert response.reasoning == ""
