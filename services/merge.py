"""Merge strategies for combining a streamed state value with its base.

Each factory returns a reducer ``(incoming, current) -> merged`` where
``current`` is the value the key held before the stream started (``None``
when it had none).  Keyed strategies read the key from mappings or from
object attributes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

MergeReducer = Callable[[Any, Any], Any]


def _key_of(item: Any, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, key, None)


def replace() -> MergeReducer:
    def reducer(incoming: Any, current: Any) -> Any:
        return incoming

    return reducer


def append() -> MergeReducer:
    def reducer(incoming: list, current: list | None) -> list:
        if current is None:
            return incoming
        return [*current, *incoming]

    return reducer


def append_unique(key: str) -> MergeReducer:
    """Append, letting an incoming item replace a current one with the same key in place."""

    def reducer(incoming: list, current: list | None) -> list:
        if current is None:
            return incoming
        by_key: dict[Any, Any] = {}
        for item in current:
            by_key[_key_of(item, key)] = item
        for item in incoming:
            by_key[_key_of(item, key)] = item
        return list(by_key.values())

    return reducer


def prepend() -> MergeReducer:
    def reducer(incoming: list, current: list | None) -> list:
        if current is None:
            return incoming
        return [*incoming, *current]

    return reducer


def prepend_unique(key: str) -> MergeReducer:
    """Prepend; on a key clash the incoming item wins and the current one is dropped."""

    def reducer(incoming: list, current: list | None) -> list:
        if current is None:
            return incoming
        seen: set[Any] = set()
        result: list = []
        for item in [*incoming, *current]:
            item_key = _key_of(item, key)
            if item_key not in seen:
                seen.add(item_key)
                result.append(item)
        return result

    return reducer


def deep_merge() -> MergeReducer:
    """Recursively merge mappings; lists and scalars from ``incoming`` win."""

    def reducer(incoming: Mapping, current: Mapping | None) -> dict:
        if current is None:
            return dict(incoming)
        result = dict(current)
        for k, value in incoming.items():
            existing = result.get(k)
            if isinstance(value, Mapping) and isinstance(existing, Mapping):
                result[k] = reducer(value, existing)
            else:
                result[k] = value
        return result

    return reducer


def append_with_limit(limit: int) -> MergeReducer:
    """Append and keep only the newest ``limit`` items."""

    def reducer(incoming: list, current: list | None) -> list:
        combined = incoming if current is None else [*current, *incoming]
        return combined[-limit:] if limit > 0 else []

    return reducer


def upsert(key: str) -> MergeReducer:
    """Replace matching items where they stand; add new ones at the end."""

    def reducer(incoming: list, current: list | None) -> list:
        if current is None:
            return incoming
        incoming_by_key = {_key_of(item, key): item for item in incoming}
        result: list = []
        seen: set[Any] = set()
        for item in current:
            item_key = _key_of(item, key)
            if item_key in incoming_by_key:
                result.append(incoming_by_key[item_key])
                seen.add(item_key)
            else:
                result.append(item)
        result.extend(item for item in incoming if _key_of(item, key) not in seen)
        return result

    return reducer


def custom(
    fn: MergeReducer,
    fallback: Callable[[Any], Any] | None = None,
) -> MergeReducer:
    """Wrap a user reducer; if it raises, use ``fallback(incoming)`` or ``incoming``."""

    def reducer(incoming: Any, current: Any) -> Any:
        try:
            return fn(incoming, current)
        except Exception:
            logger.exception("Custom merge reducer failed; falling back")
            return fallback(incoming) if fallback is not None else incoming

    return reducer
