"""Streaming generation pipeline.

Marker tokenizer and stripper, structured-data extractor, content
classifier, batch parser, incremental NDJSON reader, checkpoint manager and
request coalescer.
"""

from services.streaming.checkpoints import (
    CheckpointManager,
    CheckpointStore,
    InMemoryCheckpointStore,
    UpstashCheckpointStore,
)
from services.streaming.classifier import ContentClassifier, classify
from services.streaming.coalescer import RequestCoalescer
from services.streaming.exceptions import (
    CheckpointNotFoundError,
    StreamPipelineError,
    StreamReaderBusyError,
    UpstreamStreamError,
)
from services.streaming.extractor import extract_structured_data
from services.streaming.hooks import LoggingStreamObserver, StreamObserver
from services.streaming.parser import BatchProtocolParser, parse
from services.streaming.reader import StreamOutcome, StreamReader, UpdateThrottle
from services.streaming.state import ReaderStatus, StreamState, StreamUpdate
from services.streaming.stripper import extract_thinking, strip_markers, tokenize


__all__ = [
    "BatchProtocolParser",
    "CheckpointManager",
    "CheckpointNotFoundError",
    "CheckpointStore",
    "ContentClassifier",
    "InMemoryCheckpointStore",
    "LoggingStreamObserver",
    "ReaderStatus",
    "RequestCoalescer",
    "StreamObserver",
    "StreamOutcome",
    "StreamPipelineError",
    "StreamReader",
    "StreamReaderBusyError",
    "StreamState",
    "StreamUpdate",
    "UpdateThrottle",
    "UpstashCheckpointStore",
    "UpstreamStreamError",
    "classify",
    "extract_structured_data",
    "extract_thinking",
    "parse",
    "strip_markers",
    "tokenize",
]
