"""Transcript store — where finalized messages are persisted per thread.

Provides an abstract interface plus an in-memory implementation.  A store
must hand back exactly what was saved, including the ``parsed_blocks``
metadata, because history reconstruction relies on it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from models.blocks import MessageWithBlocks
from models.messages import PersistedMessage
from services.history import extract_state_from_history, reconstruct_messages_with_blocks
from services.transform_cache import TransformCache
from services.validation import SchemaValidator

logger = logging.getLogger(__name__)


# ── Abstract Interface ───────────────────────────────────────


class TranscriptStore(ABC):
    """Abstract transcript store — implement for different backends."""

    @abstractmethod
    async def get_messages(self, thread_id: str) -> list[PersistedMessage]:
        """Messages of ``thread_id`` in insertion order (empty if unknown)."""
        ...

    @abstractmethod
    async def append(self, thread_id: str, message: PersistedMessage) -> None:
        """Persist ``message`` at the end of the thread."""
        ...

    @abstractmethod
    async def delete(self, thread_id: str) -> None:
        """Remove a thread."""
        ...


# ── In-Memory Implementation ────────────────────────────────


class InMemoryTranscriptStore(TranscriptStore):
    """Process-local store; contents are lost on restart."""

    def __init__(self) -> None:
        self._threads: dict[str, list[PersistedMessage]] = {}
        self._lock = asyncio.Lock()

    async def get_messages(self, thread_id: str) -> list[PersistedMessage]:
        async with self._lock:
            return [m.model_copy(deep=True) for m in self._threads.get(thread_id, [])]

    async def append(self, thread_id: str, message: PersistedMessage) -> None:
        if message.id is None:
            message = message.model_copy(update={"id": f"msg-{uuid.uuid4().hex[:12]}"})
        async with self._lock:
            self._threads.setdefault(thread_id, []).append(message.model_copy(deep=True))
        logger.debug("Stored %s message %s in thread %s", message.type, message.id, thread_id)

    async def delete(self, thread_id: str) -> None:
        async with self._lock:
            self._threads.pop(thread_id, None)

    @property
    def size(self) -> int:
        """Number of threads currently stored."""
        return len(self._threads)


async def load_thread(
    store: TranscriptStore,
    thread_id: str,
    *,
    validate_schema: SchemaValidator | None = None,
    transforms: dict[str, Callable[[Any], Any]] | None = None,
    cache: TransformCache | None = None,
) -> tuple[list[MessageWithBlocks], dict[str, Any]]:
    """Read a thread and rebuild its block view and latest state."""
    messages = await store.get_messages(thread_id)
    rebuilt = reconstruct_messages_with_blocks(messages, validate_schema)
    state = extract_state_from_history(messages, transforms, cache)
    return rebuilt, state
