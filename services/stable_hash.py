"""Deterministic short hashes for id derivation.

``stable_hash`` is a djb2 rolling hash over a canonical rendering of the
value, so structurally equal values (key order irrelevant) hash the same.
It is not collision resistant and must not be used for anything
security-related; it exists to give items without an id a reproducible one.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

_DJB2_SEED = 5381
_MASK_32 = 0xFFFFFFFF


def _canonicalize(value: Any) -> str:
    if isinstance(value, BaseModel):
        return _canonicalize(value.model_dump())
    if isinstance(value, Mapping):
        pairs = ",".join(
            f"{json.dumps(str(key))}:{_canonicalize(value[key])}"
            for key in sorted(value, key=str)
        )
        return "{" + pairs + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(item) for item in value) + "]"
    try:
        return json.dumps(value)
    except TypeError:
        return json.dumps(str(value))


def stable_hash(value: Any) -> str:
    """Return an 8-char lowercase hex hash of ``value``'s canonical form."""
    h = _DJB2_SEED
    for char in _canonicalize(value):
        h = ((h << 5) + h + ord(char)) & _MASK_32
    return f"{h:08x}"


def _pick(item: Any, field: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(field)
    return getattr(item, field, None)


def create_stable_id(*fields: str) -> Callable[[Any], str]:
    """Build an id function hashing ``fields`` of an item (all of it when none).

    Useful for list items streamed without ids: the same content always
    maps to the same id, so a growing list keeps earlier ids stable.
    """

    def get_id(item: Any) -> str:
        if not fields:
            return stable_hash(item)
        return stable_hash({field: _pick(item, field) for field in fields})

    return get_id


def create_prefixed_stable_id(prefix: str, *fields: str) -> Callable[[Any], str]:
    """Like :func:`create_stable_id`, returning ``"{prefix}-{hash}"``."""
    get_id = create_stable_id(*fields)

    def get_prefixed_id(item: Any) -> str:
        return f"{prefix}-{get_id(item)}"

    return get_prefixed_id
