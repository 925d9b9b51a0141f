"""Observability hook injected into the parser, reader and checkpoint manager.

Components report what happened through a ``StreamObserver`` instead of
logging ad hoc, so tests can record events and deployments can forward them
elsewhere. The default implementation writes structured log entries with
correlation IDs; only sizes and counts are reported, never generated text.
"""

from __future__ import annotations

from typing import Protocol

from core.error_handler import StructuredLogger
from schemas.streaming import ParsedResponse


class StreamObserver(Protocol):
    def parse_completed(self, *, buffer_chars: int, response: ParsedResponse) -> None: ...

    def stream_state_changed(self, stream_key: str, state: str) -> None: ...

    def event_skipped(
        self, stream_key: str, *, reason: str, event_type: str | None = None
    ) -> None: ...

    def upstream_error_event(self, stream_key: str, *, error_chars: int) -> None: ...

    def checkpoint_saved(self, stream_key: str, sequence: int) -> None: ...

    def checkpoint_failed(self, stream_key: str, operation: str, error: BaseException) -> None: ...

    def recovery_attempted(self, stream_key: str, *, recovered: bool) -> None: ...


class LoggingStreamObserver:
    """Default observer backed by ``StructuredLogger``."""

    def __init__(self, logger_name: str = "services.streaming") -> None:
        self.log = StructuredLogger(logger_name)

    def parse_completed(self, *, buffer_chars: int, response: ParsedResponse) -> None:
        self.log.debug(
            "Parsed stream buffer",
            buffer_chars=buffer_chars,
            response_kind=response.kind.value if response.kind else None,
            reasoning_chars=len(response.reasoning),
            structured_item_count=len(response.structured_items),
            status_count=len(response.status_sequence),
        )

    def stream_state_changed(self, stream_key: str, state: str) -> None:
        self.log.debug("Stream state changed", stream_key=stream_key, state=state)

    def event_skipped(
        self, stream_key: str, *, reason: str, event_type: str | None = None
    ) -> None:
        self.log.warning(
            "Skipped stream event",
            stream_key=stream_key,
            reason=reason,
            event_type=event_type,
        )

    def upstream_error_event(self, stream_key: str, *, error_chars: int) -> None:
        self.log.warning(
            "Upstream reported an error event",
            stream_key=stream_key,
            error_chars=error_chars,
        )

    def checkpoint_saved(self, stream_key: str, sequence: int) -> None:
        self.log.debug("Checkpoint saved", stream_key=stream_key, sequence=sequence)

    def checkpoint_failed(self, stream_key: str, operation: str, error: BaseException) -> None:
        self.log.error(
            "Checkpoint operation failed",
            stream_key=stream_key,
            operation=operation,
            exception_type=error.__class__.__name__,
        )

    def recovery_attempted(self, stream_key: str, *, recovered: bool) -> None:
        self.log.info("Stream recovery attempted", stream_key=stream_key, recovered=recovered)
