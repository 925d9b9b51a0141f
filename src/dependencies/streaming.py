"""FastAPI dependencies for the streaming pipeline.

Singletons are cached with ``lru_cache`` the same way ``get_settings`` is,
and tests swap them out through ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from core.config import get_settings
from services.streaming.checkpoints import (
    CheckpointManager,
    CheckpointStore,
    InMemoryCheckpointStore,
    UpstashCheckpointStore,
)
from services.streaming.coalescer import RequestCoalescer
from services.streaming.parser import BatchProtocolParser


logger = logging.getLogger(__name__)


@lru_cache
def get_checkpoint_store() -> CheckpointStore:
    """Upstash Redis when configured, process memory otherwise."""
    settings = get_settings()
    if not settings.upstash_configured:
        logger.warning(
            "Upstash Redis not configured. Checkpoints are kept in process memory. "
            "Set UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN to persist them."
        )
        return InMemoryCheckpointStore()
    return UpstashCheckpointStore.from_settings(settings)


@lru_cache
def get_stream_parser() -> BatchProtocolParser:
    return BatchProtocolParser()


@lru_cache
def get_checkpoint_manager() -> CheckpointManager:
    return CheckpointManager.from_settings(
        get_settings(), get_checkpoint_store(), parser=get_stream_parser()
    )


@lru_cache
def get_request_coalescer() -> RequestCoalescer:
    return RequestCoalescer()
