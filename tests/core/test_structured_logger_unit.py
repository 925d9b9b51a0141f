import logging

from core.error_handler import StructuredLogger, get_correlation_id, set_correlation_id


def test_structured_logger_redacts_generated_content():
    logger = StructuredLogger("tests")

    data = {
        "stream_key": "msg-1",
        "display_text": "Subject: Sale!",
        "raw_buffer": "[STATUS:writing]Hi",
        "api_token": "placeholder_token",  # pragma: allowlist secret
        "buffer_chars": 18,
    }
    sanitized = logger._sanitize_data(data)

    assert sanitized["display_text"] == "[REDACTED]"
    assert sanitized["raw_buffer"] == "[REDACTED]"
    assert sanitized["api_token"] == "[REDACTED]"
    assert sanitized["stream_key"] == "msg-1"
    assert sanitized["buffer_chars"] == 18


def test_structured_logger_sanitizes_nested_values():
    logger = StructuredLogger("tests")

    sanitized = logger._sanitize_data(
        {"events": [{"type": "text", "content": "secret copy"}], "meta": {"thinking": "x"}}
    )

    assert sanitized["events"] == [{"type": "text", "content": "[REDACTED]"}]
    assert sanitized["meta"] == {"thinking": "[REDACTED]"}


def test_structured_logger_includes_correlation_id(caplog):
    set_correlation_id("cid-42")
    logger = StructuredLogger("tests.structured")

    with caplog.at_level(logging.INFO, logger="tests.structured"):
        logger.info("Checkpoint saved", stream_key="msg-1", sequence=3)

    record = caplog.records[-1]
    assert "cid-42" in record.getMessage()
    assert record.structured_data["stream_key"] == "msg-1"
    assert record.structured_data["correlation_id"] == "cid-42"
    set_correlation_id(None)


def test_get_correlation_id_generates_when_unset():
    set_correlation_id(None)
    generated = get_correlation_id()

    assert generated
    assert get_correlation_id() == generated
    set_correlation_id(None)
