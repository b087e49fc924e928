"""Block models — the addressable units a streamed message is made of.

``ParsedBlock`` is what the parser produces and what gets persisted as
message metadata.  The ``*Block`` models are the materialized form the
event processor and the history reconstructor hand to consumers; both paths
must yield the same shape for the same response.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field

from models.base import CamelModel

ToolCallState = Literal["pending", "running", "complete", "error"]


class ParsedBlock(CamelModel):
    """A block as classified by the text parser."""

    type: Literal["text", "structured", "reasoning"]
    id: str
    index: int
    text: str | None = None
    data: Any = None
    source_text: str | None = None


class TextBlock(CamelModel):
    type: Literal["text"] = "text"
    id: str
    index: int
    text: str = ""


class StructuredBlock(CamelModel):
    """A fenced JSON region: best-effort ``data`` plus the raw ``source_text``."""

    type: Literal["structured"] = "structured"
    id: str
    index: int
    data: Any = None
    source_text: str = ""
    partial: bool = False


class ReasoningBlock(CamelModel):
    type: Literal["reasoning"] = "reasoning"
    id: str
    index: int
    text: str = ""


class ToolCallBlock(CamelModel):
    """Inline representation of a tool invocation inside a message."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    index: int
    tool_call_id: str
    tool_name: str
    input: Any = None
    output: Any = None
    error: str | None = None
    state: ToolCallState = "pending"


MessageBlock = Annotated[
    Union[TextBlock, StructuredBlock, ReasoningBlock, ToolCallBlock],
    Field(discriminator="type"),
]


class MessageWithBlocks(CamelModel):
    """A chat message rendered as an ordered list of blocks."""

    id: str
    role: Literal["user", "assistant"]
    blocks: list[MessageBlock] = Field(default_factory=list)
    raw: Any = None


class ToolState(CamelModel):
    """Lifecycle record of one tool call (pending → running → complete/error)."""

    id: str
    name: str
    state: ToolCallState = "pending"
    input: Any = None
    input_complete: bool | None = None
    output: Any = None
    error: str | None = None
