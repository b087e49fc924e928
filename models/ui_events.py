"""UI event payload models — the ordered stream between producer and consumer.

Every event carries ``id``, ``seq`` (strictly increasing from 1 per logical
stream), ``timestamp`` (ms) and an optional ``namespace`` (subgraph path).
The ``type`` literal is the discriminator on the wire:

- ``ui:state:streaming`` / ``ui:state:final``: per-key state updates.
- ``ui:content:text`` / ``ui:content:structured`` / ``ui:content:reasoning``:
  insert-or-replace a message block by ``blockId``.
- ``ui:tool:start`` / ``ui:tool:input`` / ``ui:tool:output`` /
  ``ui:tool:error``: tool call lifecycle.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from models.base import CamelModel

logger = logging.getLogger(__name__)


def create_ui_event_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class UIEventBase(CamelModel):
    type: str
    id: str = Field(default_factory=create_ui_event_id)
    seq: int = Field(ge=1)
    timestamp: int = Field(default_factory=now_ms)
    namespace: list[str] | None = None


# ── State ────────────────────────────────────────────────────


class UIStateStreamingEvent(UIEventBase):
    type: Literal["ui:state:streaming"] = "ui:state:streaming"
    key: str
    value: Any = None


class UIStateFinalEvent(UIEventBase):
    type: Literal["ui:state:final"] = "ui:state:final"
    key: str
    value: Any = None
    checkpoint_id: str | None = None


# ── Content ──────────────────────────────────────────────────


class UIContentTextEvent(UIEventBase):
    type: Literal["ui:content:text"] = "ui:content:text"
    message_id: str
    block_id: str
    index: int
    text: str
    final: bool = False


class UIContentStructuredEvent(UIEventBase):
    type: Literal["ui:content:structured"] = "ui:content:structured"
    message_id: str
    block_id: str
    index: int
    data: Any = None
    source_text: str = ""
    partial: bool = True


class UIContentReasoningEvent(UIEventBase):
    type: Literal["ui:content:reasoning"] = "ui:content:reasoning"
    message_id: str
    block_id: str
    index: int
    text: str


# ── Tools ────────────────────────────────────────────────────


class UIToolStartEvent(UIEventBase):
    type: Literal["ui:tool:start"] = "ui:tool:start"
    tool_call_id: str
    tool_name: str
    # Block position assigned by the producer; consumers append when absent
    index: int | None = Field(default=None, ge=0)


class UIToolInputEvent(UIEventBase):
    type: Literal["ui:tool:input"] = "ui:tool:input"
    tool_call_id: str
    input: Any = None
    complete: bool = False


class UIToolOutputEvent(UIEventBase):
    type: Literal["ui:tool:output"] = "ui:tool:output"
    tool_call_id: str
    output: Any = None


class UIToolErrorEvent(UIEventBase):
    type: Literal["ui:tool:error"] = "ui:tool:error"
    tool_call_id: str
    error: str
    retryable: bool = False


UIEvent = Annotated[
    Union[
        UIStateStreamingEvent,
        UIStateFinalEvent,
        UIContentTextEvent,
        UIContentStructuredEvent,
        UIContentReasoningEvent,
        UIToolStartEvent,
        UIToolInputEvent,
        UIToolOutputEvent,
        UIToolErrorEvent,
    ],
    Field(discriminator="type"),
]

_ui_event_adapter: TypeAdapter[UIEvent] = TypeAdapter(UIEvent)


def parse_ui_event(obj: Any) -> UIEventBase | None:
    """Coerce a wire payload into a typed UI event.

    Accepts an already-typed event or a mapping whose ``type`` starts with
    ``ui:``.  Anything else, including payloads that fail validation,
    returns ``None``.
    """
    if isinstance(obj, UIEventBase):
        return obj
    if not isinstance(obj, Mapping):
        return None
    event_type = obj.get("type")
    if not isinstance(event_type, str) or not event_type.startswith("ui:"):
        return None
    try:
        return _ui_event_adapter.validate_python(dict(obj))
    except ValidationError as e:
        logger.debug("Dropping malformed %s event: %s", event_type, e)
        return None


def is_ui_event(obj: Any) -> bool:
    return parse_ui_event(obj) is not None
