"""Single-flight execution of async operations keyed by caller-supplied strings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any


logger = logging.getLogger(__name__)


@dataclass
class CoalescedCall:
    key: str
    future: asyncio.Future[Any]
    subscriber_count: int = 0


class RequestCoalescer:
    """Share one in-flight execution among concurrent callers of the same key.

    Every caller awaiting a key receives the same value or the same exception
    instance. The entry is dropped as soon as the execution settles, so the
    next call for the key runs the operation again. A caller that is
    cancelled stops waiting without cancelling the shared execution.
    """

    def __init__(self) -> None:
        self._calls: dict[str, CoalescedCall] = {}

    async def execute[T](self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        call = self._calls.get(key)
        if call is None:
            future = asyncio.ensure_future(operation())
            call = CoalescedCall(key=key, future=future)
            self._calls[key] = call
            future.add_done_callback(partial(self._settle, call))
        else:
            logger.debug("Joining in-flight call for key %s", key)

        call.subscriber_count += 1
        try:
            return await asyncio.shield(call.future)
        finally:
            call.subscriber_count -= 1

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def subscriber_count(self, key: str) -> int:
        call = self._calls.get(key)
        return call.subscriber_count if call else 0

    def _settle(self, call: CoalescedCall, future: asyncio.Future[Any]) -> None:
        if self._calls.get(call.key) is call:
            del self._calls[call.key]
        # Retrieve the exception so an execution whose subscribers all left
        # does not log "exception was never retrieved".
        if not future.cancelled():
            future.exception()
