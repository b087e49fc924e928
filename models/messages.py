"""Persisted message models — the transcript shape read back for history.

Messages keep the snake_case keys of the chat transcript format.  An
assistant message assembled by the streamer stores its finalized block list
under ``response_metadata["parsed_blocks"]``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from models.blocks import ParsedBlock

logger = logging.getLogger(__name__)

PARSED_BLOCKS_KEY = "parsed_blocks"

_PARSED_BLOCK_TYPES = frozenset({"text", "structured", "reasoning"})


class ContentPart(BaseModel):
    """One part of a multi-part message content list."""

    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None


class PersistedMessage(BaseModel):
    """A chat message as stored by the persistence layer."""

    id: str | None = None
    type: Literal["human", "ai", "system", "tool"]
    content: str | list[ContentPart] = ""
    response_metadata: dict[str, Any] = Field(default_factory=dict)
    additional_kwargs: dict[str, Any] = Field(default_factory=dict)

    def text_content(self) -> str:
        """Concatenate the text parts of the content."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.text for part in self.content if part.type == "text" and part.text
        )

    def parsed_blocks(self) -> list[ParsedBlock] | None:
        """Return the finalized block list attached by the streamer, if any.

        Blocks of an unknown kind are read back as text; a missing ``index``
        falls back to the block's position in the list.
        """
        raw = self.response_metadata.get(PARSED_BLOCKS_KEY)
        if raw is None:
            return None
        blocks: list[ParsedBlock] = []
        for position, item in enumerate(raw):
            block = _coerce_parsed_block(item, position)
            if block is not None:
                blocks.append(block)
        return blocks


def _coerce_parsed_block(item: Any, position: int) -> ParsedBlock | None:
    if isinstance(item, ParsedBlock):
        return item
    if not isinstance(item, Mapping):
        logger.warning("Skipping non-mapping parsed block at position %d", position)
        return None
    data = dict(item)
    if data.get("type") not in _PARSED_BLOCK_TYPES:
        data["type"] = "text"
    if data.get("index") is None:
        data["index"] = position
    try:
        return ParsedBlock.model_validate(data)
    except ValidationError as e:
        logger.warning("Skipping invalid parsed block at position %d: %s", position, e)
        return None
