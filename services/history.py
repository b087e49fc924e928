"""History reconstruction — persisted transcript → messages with blocks.

The live path (streamer → events → processor) and this path must produce
the same block shape for the same response.  Assistant messages written by
the streamer carry their finalized blocks in ``response_metadata``, which
are replayed as-is; older messages without them fall back to scanning the
raw content for ```` ```json ```` fences.

Ids that the transcript does not provide are derived with ``stable_hash``,
so reconstructing the same transcript twice yields the same ids.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Union

from pydantic import ValidationError

from models.blocks import (
    MessageBlock,
    MessageWithBlocks,
    ParsedBlock,
    ReasoningBlock,
    StructuredBlock,
    TextBlock,
)
from models.messages import PersistedMessage
from services.stable_hash import stable_hash
from services.transform_cache import TransformCache, apply_transform
from services.validation import SchemaValidator, validate_with_schema

logger = logging.getLogger(__name__)

JSON_FENCE_RE = re.compile(r"```json\s*\n([\s\S]*?)```", re.IGNORECASE)

MessageLike = Union[PersistedMessage, Mapping[str, Any]]


def _as_message(message: MessageLike) -> PersistedMessage | None:
    if isinstance(message, PersistedMessage):
        return message
    try:
        return PersistedMessage.model_validate(dict(message))
    except ValidationError as e:
        logger.warning("Skipping unreadable transcript message: %s", e)
        return None


def _block_id(message_id: str, index: int, kind: str) -> str:
    return f"{kind}-{stable_hash({'message': message_id, 'index': index})}"


# ── Reconstruction ───────────────────────────────────────────


def reconstruct_messages_with_blocks(
    messages: Iterable[MessageLike],
    validate_schema: SchemaValidator | None = None,
) -> list[MessageWithBlocks]:
    """Rebuild the block view of a transcript.

    Only human and ai messages are kept.  Human messages become one text
    block; ai messages replay their parsed blocks or fall back to
    :func:`reconstruct_from_content`.

    ``validate_schema`` only gates a warning: structured ``data`` is always
    the stored value, matching what the live event path carries.
    """
    result: list[MessageWithBlocks] = []
    for position, raw in enumerate(messages):
        message = _as_message(raw)
        if message is None or message.type not in ("human", "ai"):
            continue

        text = message.text_content()
        message_id = message.id or f"msg-{stable_hash([position, message.type, text])}"

        if message.type == "human":
            result.append(
                MessageWithBlocks(
                    id=message_id,
                    role="user",
                    blocks=[TextBlock(id=_block_id(message_id, 0, "text"), index=0, text=text)],
                    raw=message,
                )
            )
            continue

        parsed_blocks = message.parsed_blocks()
        if parsed_blocks:
            rebuilt = _from_parsed_blocks(message_id, parsed_blocks, validate_schema)
        else:
            rebuilt = reconstruct_from_content(text, message_id)
        rebuilt.raw = message
        result.append(rebuilt)
    return result


def _from_parsed_blocks(
    message_id: str,
    parsed_blocks: list[ParsedBlock],
    validate_schema: SchemaValidator | None,
) -> MessageWithBlocks:
    blocks: list[MessageBlock] = []
    for pb in parsed_blocks:
        if pb.type == "structured":
            ok, _ = validate_with_schema(validate_schema, pb.data)
            if not ok:
                logger.warning(
                    "Structured block %s of message %s failed validation; keeping raw data",
                    pb.id, message_id,
                )
            blocks.append(
                StructuredBlock(
                    id=pb.id,
                    index=pb.index,
                    data=pb.data,
                    source_text=pb.source_text or "",
                    partial=False,
                )
            )
        elif pb.type == "reasoning":
            blocks.append(ReasoningBlock(id=pb.id, index=pb.index, text=pb.text or ""))
        else:
            blocks.append(TextBlock(id=pb.id, index=pb.index, text=pb.text or ""))

    blocks.sort(key=lambda b: b.index)
    return MessageWithBlocks(id=message_id, role="assistant", blocks=blocks)


def reconstruct_from_content(content: str, message_id: str) -> MessageWithBlocks:
    """Split raw assistant text into text and structured blocks.

    Prose around each ```` ```json ```` fence becomes a text block in
    document order.  A fence whose body is not valid JSON is kept verbatim
    as text.  Content with nothing else to show becomes one text block.
    """
    blocks: list[MessageBlock] = []
    last_end = 0

    def add_text(text: str) -> None:
        index = len(blocks)
        blocks.append(TextBlock(id=_block_id(message_id, index, "text"), index=index, text=text))

    for match in JSON_FENCE_RE.finditer(content):
        before = content[last_end : match.start()].strip()
        if before:
            add_text(before)

        source = match.group(1).strip()
        try:
            data = json.loads(source)
        except ValueError:
            logger.debug("Legacy JSON fence in message %s is not valid JSON", message_id)
            add_text(match.group(0))
        else:
            index = len(blocks)
            blocks.append(
                StructuredBlock(
                    id=_block_id(message_id, index, "structured"),
                    index=index,
                    data=data,
                    source_text=source,
                    partial=False,
                )
            )
        last_end = match.end()

    after = content[last_end:].strip()
    if after:
        add_text(after)

    if not blocks:
        blocks.append(TextBlock(id=_block_id(message_id, 0, "text"), index=0, text=content))

    return MessageWithBlocks(id=message_id, role="assistant", blocks=blocks)


# ── State ────────────────────────────────────────────────────


def extract_parsed_blocks(message: MessageLike) -> list[ParsedBlock] | None:
    """Finalized blocks stored on ``message``, or ``None`` when absent."""
    parsed = _as_message(message)
    return parsed.parsed_blocks() if parsed is not None else None


def extract_state_from_history(
    messages: Iterable[MessageLike],
    transforms: dict[str, Callable[[Any], Any]] | None = None,
    cache: TransformCache | None = None,
) -> dict[str, Any]:
    """State carried by the latest ai message that has parsed blocks.

    The top-level keys of its structured blocks are merged in block order.
    A transform that raises keeps the raw value for that key.
    """
    loaded = [m for m in (_as_message(raw) for raw in messages) if m is not None]
    for message in reversed(loaded):
        if message.type != "ai":
            continue
        parsed_blocks = message.parsed_blocks()
        if parsed_blocks is None:
            continue

        state: dict[str, Any] = {}
        for block in parsed_blocks:
            if block.type == "structured" and isinstance(block.data, Mapping):
                state.update(block.data)

        for key, value in list(state.items()):
            try:
                state[key] = apply_transform(
                    key, value, transforms, cache=cache, message_id=message.id
                )
            except Exception as e:
                logger.warning("Transform for %r failed on history; keeping raw value: %s", key, e)
        return state
    return {}
