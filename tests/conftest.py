"""Shared pytest fixtures for block streaming tests.

Provides:
- ``events``: list collecting every event a streamer emits
- ``writer``: sink appending to ``events``
- ``parser``: fresh BlockParser per test
- ``processor``: fresh EventProcessor per test
- ``deltas``: helper turning strings into an async delta stream
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from config.settings import get_settings
from models.ui_events import UIEventBase
from services.block_parser import BlockParser
from services.event_processor import EventProcessor


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Isolate every test from the developer's environment / .env."""
    for name in (
        "TEXT_BUFFER_LIMIT",
        "JSON_BUFFER_LIMIT",
        "TEXT_TRIM_RATIO",
        "DEFAULT_TARGET",
        "REORDER_BUFFER_LIMIT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def events() -> list[UIEventBase]:
    return []


@pytest.fixture
def writer(events: list[UIEventBase]) -> Callable[[UIEventBase], None]:
    return events.append


@pytest.fixture
def parser() -> BlockParser:
    return BlockParser()


@pytest.fixture
def processor() -> EventProcessor:
    return EventProcessor()


async def _stream(chunks: list[Any]) -> AsyncIterator[Any]:
    for chunk in chunks:
        yield chunk


@pytest.fixture
def deltas() -> Callable[..., AsyncIterator[Any]]:
    """``deltas("a", "b")`` → async iterator yielding each argument."""

    def make(*chunks: Any) -> AsyncIterator[Any]:
        return _stream(list(chunks))

    return make
