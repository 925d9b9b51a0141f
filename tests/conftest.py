"""Shared test fixtures for pytest.

ENVIRONMENT is forced to ``test`` before the application is imported so
``get_settings`` skips env files and checkpoints stay in process memory.
"""

import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any


os.environ["ENVIRONMENT"] = "test"
os.environ.pop("UPSTASH_REDIS_REST_URL", None)
os.environ.pop("UPSTASH_REDIS_REST_TOKEN", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from dependencies.streaming import get_checkpoint_manager, get_request_coalescer
from main import app
from schemas.streaming import ParsedResponse
from services.streaming.checkpoints import CheckpointManager, InMemoryCheckpointStore
from services.streaming.coalescer import RequestCoalescer


@dataclass
class RecordingObserver:
    """StreamObserver that keeps every call for assertions."""

    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def parse_completed(self, *, buffer_chars: int, response: ParsedResponse) -> None:
        self.events.append(
            ("parse_completed", {"buffer_chars": buffer_chars, "kind": response.kind})
        )

    def stream_state_changed(self, stream_key: str, state: str) -> None:
        self.events.append(("stream_state_changed", {"stream_key": stream_key, "state": state}))

    def event_skipped(
        self, stream_key: str, *, reason: str, event_type: str | None = None
    ) -> None:
        self.events.append(("event_skipped", {"reason": reason, "event_type": event_type}))

    def upstream_error_event(self, stream_key: str, *, error_chars: int) -> None:
        self.events.append(("upstream_error_event", {"error_chars": error_chars}))

    def checkpoint_saved(self, stream_key: str, sequence: int) -> None:
        self.events.append(("checkpoint_saved", {"sequence": sequence}))

    def checkpoint_failed(self, stream_key: str, operation: str, error: BaseException) -> None:
        self.events.append(("checkpoint_failed", {"operation": operation, "error": error}))

    def recovery_attempted(self, stream_key: str, *, recovered: bool) -> None:
        self.events.append(("recovery_attempted", {"recovered": recovered}))


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def checkpoint_manager(
    checkpoint_store: InMemoryCheckpointStore, observer: RecordingObserver
) -> CheckpointManager:
    return CheckpointManager(checkpoint_store, interval=2, observer=observer)


@pytest_asyncio.fixture
async def async_client(
    checkpoint_manager: CheckpointManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Async client with a fresh checkpoint manager and coalescer per test."""
    coalescer = RequestCoalescer()
    app.dependency_overrides[get_checkpoint_manager] = lambda: checkpoint_manager
    app.dependency_overrides[get_request_coalescer] = lambda: coalescer
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.pop(get_checkpoint_manager, None)
    app.dependency_overrides.pop(get_request_coalescer, None)
