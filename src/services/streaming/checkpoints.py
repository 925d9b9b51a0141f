"""Checkpoint persistence and recovery for in-flight streams.

A checkpoint stores the reader's raw marker buffer next to the derived
display and reasoning text. Recovery always re-parses the raw buffer, so a
checkpoint written mid-stream is reclassified from scratch.

Storage goes through a small async key-value protocol. Production uses
Upstash Redis; development and tests fall back to process memory.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError

from core.config import Settings
from core.exceptions import InvalidStreamKeyError
from schemas.streaming import Checkpoint, ParsedResponse
from services.streaming.exceptions import CheckpointNotFoundError
from services.streaming.hooks import LoggingStreamObserver, StreamObserver
from services.streaming.markers import THINKING_CHUNK_PREFIX, THINKING_END, escape_thinking_text
from services.streaming.parser import BatchProtocolParser
from services.streaming.state import StreamState, replay_ndjson
from services.streaming.stripper import extract_thinking, strip_markers


if TYPE_CHECKING:
    from upstash_redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_INTERVAL = 100
DEFAULT_MAX_AGE_SECONDS = 60 * 60
DEFAULT_KEY_PREFIX = "stream_checkpoint_"
MAX_STREAM_KEY_LENGTH = 256

# Marks stored text that is NDJSON from the wire rather than marker text.
_NDJSON_HINT = '{"type"'


class CheckpointStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCheckpointStore:
    """Process-local store used when Upstash is not configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class UpstashCheckpointStore:
    """Checkpoint store backed by the Upstash Redis REST API."""

    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstashCheckpointStore:
        from upstash_redis.asyncio import Redis

        if not settings.UPSTASH_REDIS_REST_URL or not settings.UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("Upstash Redis URL and token must both be set")
        return cls(
            Redis(
                url=settings.UPSTASH_REDIS_REST_URL,
                token=settings.UPSTASH_REDIS_REST_TOKEN,
            )
        )

    async def get(self, key: str) -> str | None:
        value = await self.redis.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await self.redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _timestamp_to_datetime(value: Any) -> datetime | None:
    # Legacy records carry epoch milliseconds.
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, UTC)
    except (OverflowError, OSError, ValueError):
        return None


class CheckpointManager:
    """Save, load, clear and recover stream checkpoints.

    Writes are best effort: a failing store is reported through the observer
    and ``save`` returns False, but nothing is raised into the stream. A
    missing checkpoint on ``recover`` is the one explicit failure and raises
    ``CheckpointNotFoundError``.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        interval: int = DEFAULT_CHECKPOINT_INTERVAL,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        parser: BatchProtocolParser | None = None,
        observer: StreamObserver | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if interval < 1:
            raise ValueError("interval must be >= 1")
        self.store = store
        self.interval = interval
        self.max_age_seconds = max_age_seconds
        self.key_prefix = key_prefix
        self.observer: StreamObserver = observer or LoggingStreamObserver(__name__)
        self.parser = parser or BatchProtocolParser(observer=self.observer)
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, store: CheckpointStore, **kwargs: Any
    ) -> CheckpointManager:
        return cls(
            store,
            interval=settings.CHECKPOINT_INTERVAL,
            max_age_seconds=settings.CHECKPOINT_MAX_AGE_SECONDS,
            key_prefix=settings.CHECKPOINT_KEY_PREFIX,
            **kwargs,
        )

    def storage_key(self, stream_key: str) -> str:
        if not stream_key or len(stream_key) > MAX_STREAM_KEY_LENGTH:
            raise InvalidStreamKeyError("stream key must be 1-256 characters")
        if any(char.isspace() for char in stream_key):
            raise InvalidStreamKeyError("stream key must not contain whitespace")
        return f"{self.key_prefix}{stream_key}"

    def should_save(self, state: StreamState) -> bool:
        return state.sequence - state.last_checkpoint_at >= self.interval

    async def save(
        self,
        stream_key: str,
        state: StreamState | Checkpoint,
        sequence: int | None = None,
    ) -> bool:
        """Persist a snapshot, overwriting any earlier checkpoint for the key.

        An unusable stream key is reported like a store failure.
        """
        checkpoint = state if isinstance(state, Checkpoint) else state.to_checkpoint()
        updates: dict[str, Any] = {"stream_key": stream_key, "created_at": self._clock()}
        if sequence is not None:
            updates["sequence"] = sequence
        checkpoint = checkpoint.model_copy(update=updates)
        try:
            storage_key = self.storage_key(stream_key)
            await self.store.set(
                storage_key, checkpoint.to_storage(), ttl_seconds=self.max_age_seconds
            )
        except Exception as exc:  # noqa: BLE001
            self.observer.checkpoint_failed(stream_key, "save", exc)
            return False
        self.observer.checkpoint_saved(stream_key, checkpoint.sequence)
        return True

    async def load(self, stream_key: str) -> Checkpoint | None:
        """Return the latest usable checkpoint, or None.

        Expired checkpoints are cleared and reported as missing. Legacy
        shapes written by older clients are converted on the way out.
        """
        storage_key = self.storage_key(stream_key)
        try:
            raw = await self.store.get(storage_key)
        except Exception as exc:  # noqa: BLE001
            self.observer.checkpoint_failed(stream_key, "load", exc)
            return None
        if not raw:
            return None

        checkpoint = self._decode(stream_key, raw)
        if checkpoint is None:
            logger.warning("Discarding unreadable checkpoint for %s", stream_key)
            await self.clear(stream_key)
            return None
        if checkpoint.age_seconds(self._clock()) > self.max_age_seconds:
            logger.info("Discarding expired checkpoint for %s", stream_key)
            await self.clear(stream_key)
            return None
        return checkpoint

    async def clear(self, stream_key: str) -> None:
        try:
            await self.store.delete(self.storage_key(stream_key))
        except Exception as exc:  # noqa: BLE001
            self.observer.checkpoint_failed(stream_key, "clear", exc)

    async def recover(self, stream_key: str) -> ParsedResponse:
        """Rebuild a ``ParsedResponse`` from the last checkpoint."""
        checkpoint = await self.load(stream_key)
        if checkpoint is None:
            self.observer.recovery_attempted(stream_key, recovered=False)
            raise CheckpointNotFoundError(stream_key)
        response = self.parser.parse(checkpoint.raw_buffer)
        self.observer.recovery_attempted(stream_key, recovered=True)
        return response

    # ------------------------------------------------------------------
    # Decoding of stored values
    # ------------------------------------------------------------------

    def _decode(self, stream_key: str, raw: str) -> Checkpoint | None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None

        if isinstance(data, dict):
            if "rawBuffer" in data or "raw_buffer" in data:
                try:
                    return Checkpoint.model_validate(data)
                except ValidationError:
                    return None
            if "timestamp" in data or "messageId" in data:
                return self._from_legacy_record(stream_key, data)
        return self._from_text(stream_key, raw, created_at=None)

    def _from_legacy_record(self, stream_key: str, data: dict[str, Any]) -> Checkpoint | None:
        """Convert ``{messageId, content, thinking?, rawContent?, timestamp, ...}``."""
        content = data.get("content")
        raw_content = data.get("rawContent")
        source = next(
            (value for value in (content, raw_content) if isinstance(value, str) and value),
            "",
        )
        created_at = _timestamp_to_datetime(data.get("timestamp"))
        checkpoint = self._from_text(stream_key, source, created_at=created_at)

        thinking = data.get("thinking")
        if isinstance(thinking, str) and thinking.strip() and not checkpoint.reasoning_text:
            prefix = THINKING_CHUNK_PREFIX + escape_thinking_text(thinking) + THINKING_END
            checkpoint = checkpoint.model_copy(
                update={
                    "raw_buffer": prefix + checkpoint.raw_buffer,
                    "reasoning_text": thinking,
                }
            )
        return checkpoint

    def _from_text(
        self, stream_key: str, text: str, *, created_at: datetime | None
    ) -> Checkpoint:
        """Convert stored NDJSON or bare marker text into a checkpoint."""
        created = created_at or self._clock()
        if _NDJSON_HINT in text:
            state = replay_ndjson(stream_key, text)
            if state.sequence:
                return Checkpoint(
                    stream_key=stream_key,
                    display_text=state.display_text,
                    reasoning_text=state.reasoning_text,
                    raw_buffer=state.raw_buffer,
                    sequence=state.sequence,
                    created_at=created,
                )
        return Checkpoint(
            stream_key=stream_key,
            display_text=strip_markers(text),
            reasoning_text=extract_thinking(text),
            raw_buffer=text,
            sequence=0,
            created_at=created,
        )
