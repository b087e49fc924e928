"""Structured output streamer — model deltas → ordered UI events.

Feeds each text delta through a :class:`BlockParser` and emits, per delta:

1. ``ui:content:text`` for text blocks whose content changed (the live
   preview of the current segment, plus any segment a JSON fence just
   closed off).
2. ``target="state"``: one ``ui:state:streaming`` per top-level key of the
   partial JSON object, each passed through its transform.
3. ``target="messages"``: one ``ui:content:structured`` carrying the whole
   partial object.

Every emission is deduplicated by comparing the serialized value with what
was last sent under the same key.  When the deltas run out, final events are
emitted and the assembled message is returned with the finalized blocks
attached as metadata.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
import uuid
from collections.abc import AsyncIterable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic_ai import Agent

from config.settings import get_settings
from models.blocks import ParsedBlock
from models.messages import PARSED_BLOCKS_KEY, PersistedMessage
from models.ui_events import (
    UIContentStructuredEvent,
    UIContentTextEvent,
    UIEventBase,
    UIStateFinalEvent,
    UIStateStreamingEvent,
)
from services.block_parser import BlockParser
from services.transform_cache import TransformCache, apply_transform
from services.validation import SchemaValidator, validate_with_schema

logger = logging.getLogger(__name__)

StreamTarget = Literal["messages", "state"]
EventWriter = Callable[[UIEventBase], Any]

_NAMESPACE_SEPARATOR = re.compile(r"[|/]")


@dataclass
class ParseResult:
    """What a finished stream hands back to the caller."""

    message: PersistedMessage
    parsed: Any = None
    blocks: list[ParsedBlock] = field(default_factory=list)


def split_namespace(namespace: str | Sequence[str] | None) -> list[str] | None:
    """Normalize ``"parent|child"`` / ``"parent/child"`` into path segments."""
    if namespace is None:
        return None
    if isinstance(namespace, str):
        parts = [p for p in _NAMESPACE_SEPARATOR.split(namespace) if p]
    else:
        parts = [p for p in namespace if p]
    return parts or None


def delta_text(delta: Any) -> str:
    """Extract the text of one model delta.

    Accepts a plain string, a mapping with ``content``, or an object with a
    ``content`` attribute.  List content keeps only ``type == "text"`` parts.
    """
    if isinstance(delta, str):
        return delta
    if isinstance(delta, Mapping):
        content = delta.get("content")
    else:
        content = getattr(delta, "content", None)

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: list[str] = []
        for part in content:
            if isinstance(part, Mapping):
                part_type, text = part.get("type"), part.get("text")
            else:
                part_type, text = getattr(part, "type", None), getattr(part, "text", None)
            if part_type == "text" and isinstance(text, str):
                texts.append(text)
        return "".join(texts)
    return ""


def _serialize(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class StructuredOutputStreamer:
    """Turns one model response stream into UI events.

    One instance per response.  ``writer`` receives each event as it is
    produced; it may be a plain function or a coroutine function.
    """

    def __init__(
        self,
        target: StreamTarget | None = None,
        *,
        transforms: dict[str, Callable[[Any], Any]] | None = None,
        schema: SchemaValidator | None = None,
        writer: EventWriter | None = None,
        message_id: str | None = None,
        namespace: str | Sequence[str] | None = None,
        checkpoint_id: str | None = None,
        cache: TransformCache | None = None,
        parser: BlockParser | None = None,
    ) -> None:
        self.target: StreamTarget = target or get_settings().default_target
        self.transforms = transforms or {}
        self.schema = schema
        self.writer = writer
        self.message_id = message_id or str(uuid.uuid4())
        self.namespace = split_namespace(namespace)
        self.checkpoint_id = checkpoint_id
        self.cache = cache
        self.parser = parser or BlockParser()

        self._seq = 0
        self._last_emitted: dict[str, str] = {}
        self._full_content: list[str] = []

    # ── Public API ───────────────────────────────────────────

    async def process_stream(self, deltas: AsyncIterable[Any]) -> ParseResult:
        """Consume ``deltas`` to the end and return the assembled result.

        Raises:
            StructuredBufferOverflowError: a JSON fence outgrew its limit.
        """
        async for delta in deltas:
            text = delta_text(delta)
            if not text:
                continue
            self._full_content.append(text)
            self.parser.append(text)
            await self._emit_streaming_updates()

        await self._emit_final_updates()

        blocks = self.parser.get_blocks()
        message = PersistedMessage(
            id=self.message_id,
            type="ai",
            content="".join(self._full_content),
            response_metadata={PARSED_BLOCKS_KEY: [b.to_wire() for b in blocks]},
        )
        return ParseResult(message=message, parsed=self._extract_parsed(blocks), blocks=blocks)

    @property
    def seq(self) -> int:
        """Sequence number of the last emitted event (0 before any)."""
        return self._seq

    # ── Streaming phase ──────────────────────────────────────

    async def _emit_streaming_updates(self) -> None:
        await self._emit_text_streaming_updates()
        if self.target == "state":
            await self._emit_state_streaming_updates()
        else:
            await self._emit_structured_streaming_updates()

    async def _emit_text_streaming_updates(self) -> None:
        current_id = self.parser.current_text_id
        for block in self.parser.get_blocks():
            if block.type != "text" or block.id == current_id:
                continue
            await self._emit_text(block.id, block.index, block.text or "", final=False)

        preview = self.parser.get_streaming_text()
        if preview.strip():
            await self._emit_text(
                current_id, self.parser.current_text_index, preview, final=False
            )

    async def _emit_text(self, block_id: str, index: int, text: str, *, final: bool) -> None:
        if not final and not self._should_emit(f"text:{block_id}", text):
            return
        await self._emit(
            UIContentTextEvent(
                seq=self._next_seq(),
                namespace=self.namespace,
                message_id=self.message_id,
                block_id=block_id,
                index=index,
                text=text,
                final=final,
            )
        )

    async def _emit_state_streaming_updates(self) -> None:
        partial = self.parser.try_parse_partial_json()
        if not isinstance(partial, Mapping):
            return
        for key, value in partial.items():
            ok, transformed = self._transform(key, value)
            if not ok or not self._should_emit(f"state:{key}", transformed):
                continue
            await self._emit(
                UIStateStreamingEvent(
                    seq=self._next_seq(),
                    namespace=self.namespace,
                    key=key,
                    value=transformed,
                )
            )

    async def _emit_structured_streaming_updates(self) -> None:
        if not self.parser.is_in_json_block():
            return
        partial = self.parser.try_parse_partial_json()
        block_id = self.parser.current_structured_id
        if partial is None or not self._should_emit(f"structured:{block_id}", partial):
            return
        await self._emit(
            UIContentStructuredEvent(
                seq=self._next_seq(),
                namespace=self.namespace,
                message_id=self.message_id,
                block_id=block_id,
                index=self.parser.current_structured_index,
                data=partial,
                source_text=self.parser.get_json_content(),
                partial=True,
            )
        )

    # ── Final phase ──────────────────────────────────────────

    async def _emit_final_updates(self) -> None:
        blocks = self.parser.get_blocks()
        for block in blocks:
            if block.type == "text" and block.text:
                await self._emit_text(block.id, block.index, block.text, final=True)

        if self.target == "state":
            await self._emit_state_final_updates(blocks)
        else:
            await self._emit_structured_final_updates(blocks)

    async def _emit_state_final_updates(self, blocks: list[ParsedBlock]) -> None:
        structured = next((b for b in blocks if b.type == "structured"), None)
        if structured is None or not isinstance(structured.data, Mapping):
            return
        for key, value in structured.data.items():
            ok, transformed = self._transform(key, value)
            if not ok:
                continue
            await self._emit(
                UIStateFinalEvent(
                    seq=self._next_seq(),
                    namespace=self.namespace,
                    key=key,
                    value=transformed,
                    checkpoint_id=self.checkpoint_id,
                )
            )

    async def _emit_structured_final_updates(self, blocks: list[ParsedBlock]) -> None:
        for block in blocks:
            if block.type != "structured":
                continue
            await self._emit(
                UIContentStructuredEvent(
                    seq=self._next_seq(),
                    namespace=self.namespace,
                    message_id=self.message_id,
                    block_id=block.id,
                    index=block.index,
                    data=block.data,
                    source_text=block.source_text or "",
                    partial=False,
                )
            )

    def _extract_parsed(self, blocks: list[ParsedBlock]) -> Any:
        structured = next((b for b in blocks if b.type == "structured"), None)
        if structured is None or structured.data is None:
            return None
        ok, value = validate_with_schema(self.schema, structured.data)
        if not ok:
            logger.warning("Structured output of message %s failed validation", self.message_id)
            return None
        return value

    # ── Helpers ──────────────────────────────────────────────

    def _transform(self, key: str, value: Any) -> tuple[bool, Any]:
        """Return ``(False, None)`` when the transform is not ready for ``value``."""
        try:
            return True, apply_transform(
                key, value, self.transforms, cache=self.cache, message_id=self.message_id
            )
        except Exception as e:
            logger.debug("Transform for %r skipped this round: %s", key, e)
            return False, None

    def _should_emit(self, key: str, value: Any) -> bool:
        serialized = _serialize(value)
        if self._last_emitted.get(key) == serialized:
            return False
        self._last_emitted[key] = serialized
        return True

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    async def _emit(self, event: UIEventBase) -> None:
        if self.writer is None:
            return
        result = self.writer(event)
        if inspect.isawaitable(result):
            await result


async def stream_structured_output(
    agent: Agent[Any, str],
    prompt: str,
    *,
    deps: Any = None,
    message_history: Sequence[Any] | None = None,
    **options: Any,
) -> ParseResult:
    """Run ``agent`` with streaming and feed its text deltas to a streamer.

    ``options`` are passed to :class:`StructuredOutputStreamer`.
    """
    streamer = StructuredOutputStreamer(**options)
    async with agent.run_stream(
        prompt,
        deps=deps,
        message_history=list(message_history) if message_history else None,
    ) as result:
        parse_result = await streamer.process_stream(result.stream_text(delta=True))
    logger.info(
        "Structured stream finished: message=%s events=%d blocks=%d",
        streamer.message_id,
        streamer.seq,
        len(parse_result.blocks),
    )
    return parse_result
