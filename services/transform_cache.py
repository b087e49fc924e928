"""Run-scoped memoization of per-key transform results.

Some transforms are not idempotent (e.g. they mint ids for list items), so
reprocessing the same message must not call them again.  A ``TransformCache``
is an explicit object handed to every call that may transform; it is keyed
by message id and lives for one run, created and torn down by
:func:`transform_scope`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from services.stable_hash import stable_hash

logger = logging.getLogger(__name__)


class TransformCache:
    """Memoizes ``transform(raw)`` per ``(message_id, key, hash(raw))``."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[tuple[str, str], Any]] = {}

    def get_or_compute(
        self,
        message_id: str,
        key: str,
        raw: Any,
        transform: Callable[[Any], Any],
    ) -> Any:
        entries = self._entries.setdefault(message_id, {})
        cache_key = (key, stable_hash(raw))
        if cache_key in entries:
            return entries[cache_key]
        result = transform(raw)
        entries[cache_key] = result
        return result

    def invalidate(self, message_id: str) -> None:
        self._entries.pop(message_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())


@contextmanager
def transform_scope() -> Iterator[TransformCache]:
    """Provide a fresh cache for one run; it is emptied on exit."""
    cache = TransformCache()
    try:
        yield cache
    finally:
        logger.debug("Releasing transform cache (%d entries)", len(cache))
        cache.clear()


def apply_transform(
    key: str,
    raw: Any,
    transforms: dict[str, Callable[[Any], Any]] | None,
    *,
    cache: TransformCache | None = None,
    message_id: str | None = None,
) -> Any:
    """Apply the transform registered for ``key`` (identity when none).

    Exceptions from the transform propagate; callers treat them as
    "value not ready".
    """
    transform = (transforms or {}).get(key)
    if transform is None:
        return raw
    if cache is not None and message_id is not None:
        return cache.get_or_compute(message_id, key, raw, transform)
    return transform(raw)
