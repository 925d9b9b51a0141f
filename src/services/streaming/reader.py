"""Incremental reader for a live NDJSON generation stream.

The reader pulls chunks from an async byte source, decodes UTF-8
incrementally, splits complete lines and applies each decoded event to its
``StreamState``. Text and thinking updates are throttled before reaching the
UI callback, checkpoints are written in the background every N events, and
on completion the accumulated raw buffer goes through the batch parser.

States: idle -> reading -> completed | cancelled | failed.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from core.observability import get_tracer
from schemas.streaming import ParsedResponse, StreamOutcomeSummary
from services.streaming.checkpoints import CheckpointManager
from services.streaming.exceptions import (
    CheckpointNotFoundError,
    StreamReaderBusyError,
    UpstreamStreamError,
)
from services.streaming.hooks import LoggingStreamObserver, StreamObserver
from services.streaming.parser import BatchProtocolParser
from services.streaming.state import (
    EventDecodeError,
    ReaderStatus,
    StreamState,
    StreamUpdate,
    decode_event_line,
)


logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

DEFAULT_MIN_UPDATE_INTERVAL = 0.048
THROTTLED_EVENT_TYPES = frozenset({"text", "thinking"})

UpdateCallback = Callable[[StreamUpdate], Awaitable[None] | None]

_EOF = object()
_CANCELLED = object()


class UpdateThrottle:
    """Pass at most one update per ``min_interval`` seconds.

    Updates offered inside the window are held back and only the newest one
    is kept. ``due`` releases it once the window has passed; ``flush``
    releases it unconditionally at the end of the stream.
    """

    def __init__(
        self, min_interval: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._last_emit: float | None = None
        self._pending: StreamUpdate | None = None

    def offer(self, update: StreamUpdate) -> StreamUpdate | None:
        now = self._clock()
        if self._last_emit is None or now - self._last_emit >= self.min_interval:
            self._last_emit = now
            self._pending = None
            return update
        self._pending = update
        return None

    def remaining(self) -> float:
        """Seconds until a held update may be released; 0 when nothing is held."""
        if self._pending is None or self._last_emit is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self._last_emit))

    def due(self) -> StreamUpdate | None:
        if self._pending is None or self.remaining() > 0:
            return None
        return self.flush()

    def flush(self) -> StreamUpdate | None:
        pending, self._pending = self._pending, None
        if pending is not None:
            self._last_emit = self._clock()
        return pending


@dataclass
class StreamOutcome:
    status: Literal["completed", "cancelled", "recovered"]
    state: StreamState
    response: ParsedResponse | None = None

    def summary(self) -> StreamOutcomeSummary:
        return StreamOutcomeSummary(
            stream_key=self.state.stream_key,
            status=self.status,
            events_processed=self.state.sequence,
            unknown_events=self.state.unknown_events,
            error=self.state.error,
            response=self.response,
        )


class StreamReader:
    """Consume one generation stream. Single use: create one reader per stream.

    Raises ``InvalidStreamKeyError`` up front when checkpoints are enabled and
    ``stream_key`` cannot be stored.
    """

    def __init__(
        self,
        stream_key: str,
        *,
        parser: BatchProtocolParser | None = None,
        checkpoints: CheckpointManager | None = None,
        on_update: UpdateCallback | None = None,
        min_update_interval: float = DEFAULT_MIN_UPDATE_INTERVAL,
        observer: StreamObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if checkpoints is not None:
            checkpoints.storage_key(stream_key)
        self.state = StreamState(stream_key=stream_key)
        self.observer: StreamObserver = observer or LoggingStreamObserver(__name__)
        self.parser = parser or BatchProtocolParser(observer=self.observer)
        self.checkpoints = checkpoints
        self.on_update = on_update
        self.throttle = UpdateThrottle(min_update_interval, clock)
        self._pending_saves: set[asyncio.Task[bool]] = set()
        self._trailing_emit: asyncio.Task[None] | None = None
        self._started = False

    @property
    def stream_key(self) -> str:
        return self.state.stream_key

    @property
    def status(self) -> ReaderStatus:
        return self.state.status

    async def consume(
        self,
        source: AsyncIterable[bytes | str],
        cancel_event: asyncio.Event | None = None,
    ) -> StreamOutcome:
        """Read ``source`` to the end, a ``done`` event, or cancellation.

        Raises:
            StreamReaderBusyError: the reader was already started.
            UpstreamStreamError: the source failed and no checkpoint exists.
        """
        if self._started:
            raise StreamReaderBusyError(self.stream_key)
        self._started = True
        self._set_status(ReaderStatus.READING)

        with tracer.start_as_current_span("stream.consume") as span:
            span.set_attribute("stream.key", self.stream_key)
            try:
                cancelled = await self._pump(source, cancel_event)
            except asyncio.CancelledError:
                self._set_status(ReaderStatus.CANCELLED)
                raise
            except Exception as exc:  # noqa: BLE001
                span.record_exception(exc)
                return await self.recover_or_raise(exc)
            finally:
                self._cancel_trailing_emit()
                span.set_attribute("stream.events", self.state.sequence)

            if cancelled:
                await self._drain_saves()
                self._set_status(ReaderStatus.CANCELLED)
                return StreamOutcome(status="cancelled", state=self.state)
            return await self._finalize()

    async def recover_or_raise(self, exc: BaseException) -> StreamOutcome:
        """Mark the stream failed and fall back to its last checkpoint."""
        self._set_status(ReaderStatus.FAILED)
        logger.warning(
            "Stream %s failed after %d events: %s",
            self.stream_key,
            self.state.sequence,
            exc.__class__.__name__,
        )
        await self._drain_saves()
        if self.checkpoints is None:
            raise UpstreamStreamError(
                f"Stream '{self.stream_key}' failed and checkpoints are disabled"
            ) from exc
        try:
            response = await self.checkpoints.recover(self.stream_key)
        except CheckpointNotFoundError:
            raise UpstreamStreamError(
                f"Stream '{self.stream_key}' failed and no checkpoint was available"
            ) from exc
        return StreamOutcome(status="recovered", state=self.state, response=response)

    async def _pump(
        self,
        source: AsyncIterable[bytes | str],
        cancel_event: asyncio.Event | None,
    ) -> bool:
        """Feed the source through the line splitter; return True if cancelled."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        iterator = aiter(source)
        stopped_early = False
        try:
            while True:
                chunk = await self._next_chunk(iterator, cancel_event)
                if chunk is _CANCELLED:
                    stopped_early = True
                    return True
                if chunk is _EOF:
                    break
                text = decoder.decode(chunk) if isinstance(chunk, bytes) else str(chunk)
                if await self._feed(text):
                    stopped_early = True
                    return False
            await self._feed(decoder.decode(b"", final=True), final=True)
            return False
        finally:
            if stopped_early:
                await _close_quietly(iterator)

    async def _next_chunk(
        self,
        iterator: AsyncIterator[bytes | str],
        cancel_event: asyncio.Event | None,
    ) -> object:
        if cancel_event is None:
            return await anext(iterator, _EOF)
        if cancel_event.is_set():
            return _CANCELLED

        next_task = asyncio.create_task(_pull(iterator))
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            next_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if next_task in done:
            return next_task.result()
        next_task.cancel()
        try:
            await next_task
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001
            logger.debug("Source raised while being cancelled", exc_info=True)
        return _CANCELLED

    async def _feed(self, text: str, *, final: bool = False) -> bool:
        """Split complete lines out of the line buffer; return True on a ``done`` event."""
        state = self.state
        state.line_buffer += text
        lines = state.line_buffer.split("\n")
        state.line_buffer = "" if final else lines.pop()
        for line in lines:
            await self._process_line(line)
            if state.done:
                return True
        return False

    async def _process_line(self, line: str) -> None:
        try:
            event = decode_event_line(line)
        except EventDecodeError:
            self.observer.event_skipped(self.stream_key, reason="undecodable")
            return
        if event is None:
            return

        event_type = event["type"]
        if not self.state.apply(event):
            self.observer.event_skipped(
                self.stream_key, reason="unknown_type", event_type=event_type[:64]
            )
            return

        if event_type == "error":
            self.observer.upstream_error_event(
                self.stream_key, error_chars=len(self.state.error or "")
            )
        if event_type in THROTTLED_EVENT_TYPES:
            update = self.throttle.offer(self.state.snapshot(event_type))
            if update is None:
                self._schedule_trailing_emit()
        else:
            update = self.throttle.due()
        if update is not None:
            await self._emit(update)

        if self.checkpoints is not None and self.checkpoints.should_save(self.state):
            self._schedule_checkpoint()

    def _schedule_checkpoint(self) -> None:
        assert self.checkpoints is not None
        self.state.last_checkpoint_at = self.state.sequence
        snapshot = self.state.to_checkpoint()
        task = asyncio.create_task(self.checkpoints.save(self.stream_key, snapshot))
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    def _schedule_trailing_emit(self) -> None:
        if self._trailing_emit is None or self._trailing_emit.done():
            self._trailing_emit = asyncio.create_task(self._emit_when_due())

    async def _emit_when_due(self) -> None:
        # Releases a held update when the stream pauses after a burst.
        while (delay := self.throttle.remaining()) > 0:
            await asyncio.sleep(delay)
        if (update := self.throttle.due()) is not None:
            await self._emit(update)

    def _cancel_trailing_emit(self) -> None:
        if self._trailing_emit is not None and not self._trailing_emit.done():
            self._trailing_emit.cancel()
        self._trailing_emit = None

    async def _drain_saves(self) -> None:
        if self._pending_saves:
            await asyncio.gather(*self._pending_saves, return_exceptions=True)

    async def _emit(self, update: StreamUpdate) -> None:
        if self.on_update is None:
            return
        try:
            result = self.on_update(update)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("Stream update callback failed for %s", self.stream_key)

    async def _finalize(self) -> StreamOutcome:
        pending = self.throttle.flush()
        if pending is not None:
            await self._emit(pending)

        response = self.parser.parse(self.state.raw_buffer)
        # Pending writes must land before the clear or they would resurrect
        # the checkpoint.
        await self._drain_saves()
        if self.checkpoints is not None:
            await self.checkpoints.clear(self.stream_key)
        self._set_status(ReaderStatus.COMPLETED)
        return StreamOutcome(status="completed", state=self.state, response=response)

    def _set_status(self, status: ReaderStatus) -> None:
        self.state.status = status
        self.observer.stream_state_changed(self.stream_key, status.value)


async def _pull(iterator: AsyncIterator[bytes | str]) -> object:
    return await anext(iterator, _EOF)


async def _close_quietly(iterator: AsyncIterator[bytes | str]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # noqa: BLE001
        logger.debug("Closing stream source failed", exc_info=True)
