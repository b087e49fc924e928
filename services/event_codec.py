"""UI event wire codec — typed events ↔ JSON / SSE lines.

Each event is framed as one Server-Sent Events line::

    data: {"type":"ui:content:text","id":"…","seq":3,…}\\n\\n

Termination marker: ``data: [DONE]\\n\\n``
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from typing import Any

from models.ui_events import UIEventBase, parse_ui_event

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
_DATA_PREFIX = "data:"


class UIEventEncoder:
    """Encode UI events for a transport.

    Every ``sse*`` method returns a ready-to-yield SSE string.
    """

    @staticmethod
    def to_json(event: UIEventBase) -> str:
        return json.dumps(event.to_wire(), ensure_ascii=False, default=str)

    @staticmethod
    def _sse(payload: str) -> str:
        return f"{_DATA_PREFIX} {payload}\n\n"

    def sse(self, event: UIEventBase) -> str:
        return self._sse(self.to_json(event))

    def done(self) -> str:
        return self._sse(DONE_MARKER)


def decode_event(payload: str | bytes) -> UIEventBase | None:
    """Parse one JSON payload into a typed event (``None`` if it is not one)."""
    try:
        obj: Any = json.loads(payload)
    except ValueError:
        logger.debug("Ignoring non-JSON event payload")
        return None
    return parse_ui_event(obj)


def decode_sse_lines(lines: Iterable[str]) -> Iterator[UIEventBase]:
    """Yield typed events from raw SSE lines; stops at ``[DONE]``.

    Lines that are not ``data:`` lines, or whose payload is not a UI event,
    are skipped.
    """
    for line in lines:
        line = line.strip()
        if not line.startswith(_DATA_PREFIX):
            continue
        payload = line[len(_DATA_PREFIX) :].strip()
        if payload == DONE_MARKER:
            return
        event = decode_event(payload)
        if event is not None:
            yield event
