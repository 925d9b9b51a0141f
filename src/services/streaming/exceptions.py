"""Domain exceptions for the streaming generation pipeline.

Transient parse problems (truncated JSON, a marker cut off at the end of a
buffer) are never raised; they resolve to empty results. The classes below
cover the outcomes a caller has to act on. Each carries a stable
``error_code`` for logs and API error bodies.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class StreamPipelineError(Exception):
    """Base class for streaming pipeline errors."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class CheckpointNotFoundError(StreamPipelineError):
    """No usable checkpoint exists for a stream key."""

    def __init__(self, stream_key: str) -> None:
        super().__init__(
            message=f"No checkpoint available for stream '{stream_key}'",
            error_code="recovery_unavailable",
        )
        self.stream_key = stream_key


class UpstreamStreamError(StreamPipelineError):
    """The byte source failed and nothing could be recovered."""

    def __init__(self, message: str = "Upstream stream failed") -> None:
        super().__init__(message=message, error_code="upstream_failed")


class StreamReaderBusyError(StreamPipelineError):
    def __init__(self, stream_key: str) -> None:
        super().__init__(
            message=f"Stream reader for '{stream_key}' has already been started",
            error_code="reader_busy",
        )
