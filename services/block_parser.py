"""Block parser — classifies an append-only model text stream into blocks.

Free text and ```` ```json ```` fenced regions are separated by a
character-level state machine.  Characters are processed one at a time
because a fence marker can be split across chunk boundaries (``"``"`` in
one delta, ``"`json\\n"`` in the next).

States::

    Text ──`──▶ MaybeFence ──```──▶ FenceType ──json\\n──▶ InJsonBlock ◀─┐
     ▲              │ other char          │ other tag\\n       │ `      │ <3 ` + char
     │              ▼                     ▼                    ▼        │
     └──────── (flush to text)     InOtherCodeBlock      MaybeEndFence ─┘
     ▲                                    │ ```                │ ```
     └────────────────────────────────────┴────────────────────┘

Non-JSON fences are swallowed and produce no block.  When a JSON fence
opens, the free text accumulated so far becomes a text block, so blocks come
out in document order: text, structured, text, ...
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Any

from config.settings import get_settings
from errors.exceptions import StructuredBufferOverflowError
from models.blocks import ParsedBlock
from services.partial_json import parse_partial_json

logger = logging.getLogger(__name__)

FENCE_CHAR = "`"
FENCE_LENGTH = 3


class ParserState(str, Enum):
    """Current phase of the character state machine."""

    TEXT = "Text"
    MAYBE_FENCE = "MaybeFence"
    FENCE_TYPE = "FenceType"
    IN_JSON_BLOCK = "InJsonBlock"
    MAYBE_END_FENCE = "MaybeEndFence"
    IN_OTHER_CODE_BLOCK = "InOtherCodeBlock"


class BlockParser:
    """Incremental text → block parser for one generation.

    Create one instance per response and feed it with :meth:`append`.
    ``text_id`` and ``structured_id`` identify the first text segment and the
    first structured block for the life of the instance (they survive
    :meth:`reset`); later segments and blocks get their own ids from
    :meth:`block_id`, so several fences in one response never collide.

    Example::

        parser = BlockParser()
        parser.append('Hello\\n```json\\n{"x": 1}\\n```\\nbye')
        [b.type for b in parser.get_blocks()]  # ['text', 'structured', 'text']
    """

    def __init__(
        self,
        *,
        text_buffer_limit: int | None = None,
        json_buffer_limit: int | None = None,
        text_trim_ratio: float | None = None,
    ) -> None:
        settings = get_settings()
        self.text_buffer_limit = text_buffer_limit or settings.text_buffer_limit
        self.json_buffer_limit = json_buffer_limit or settings.json_buffer_limit
        self.text_trim_ratio = text_trim_ratio or settings.text_trim_ratio

        self.text_id = str(uuid.uuid4())
        self.structured_id = str(uuid.uuid4())
        self._block_ids: dict[str, str] = {}

        self.reset()

    # ── Lifecycle ────────────────────────────────────────────

    def reset(self) -> None:
        """Clear buffers and blocks; keep the instance's block identities."""
        self._state = ParserState.TEXT
        self._text: list[str] = []
        self._json: list[str] = []
        self._fence_buffer = ""
        self._fence_type = ""
        self._backtick_count = 0
        self._end_backtick_count = 0
        self._blocks: list[ParsedBlock] = []
        self._block_index = 0
        self._text_segments = 0
        self._structured_count = 0
        self._json_complete = False

    def append(self, text: str) -> None:
        """Consume a chunk of model output.

        Raises:
            StructuredBufferOverflowError: the open JSON fence grew past
                ``json_buffer_limit``.
        """
        for char in text:
            self._process_char(char)
        self._enforce_buffer_limits()

    # ── Character dispatch ───────────────────────────────────

    def _process_char(self, char: str) -> None:
        state = self._state
        if state is ParserState.TEXT:
            self._handle_text(char)
        elif state is ParserState.MAYBE_FENCE:
            self._handle_maybe_fence(char)
        elif state is ParserState.FENCE_TYPE:
            self._handle_fence_type(char)
        elif state is ParserState.IN_JSON_BLOCK:
            self._handle_in_json_block(char)
        elif state is ParserState.MAYBE_END_FENCE:
            self._handle_maybe_end_fence(char)
        else:
            self._handle_in_other_code_block(char)

    def _handle_text(self, char: str) -> None:
        if char == FENCE_CHAR:
            self._state = ParserState.MAYBE_FENCE
            self._backtick_count = 1
            self._fence_buffer = char
        else:
            self._text.append(char)

    def _handle_maybe_fence(self, char: str) -> None:
        if char == FENCE_CHAR:
            self._backtick_count += 1
            self._fence_buffer += char
            if self._backtick_count == FENCE_LENGTH:
                self._state = ParserState.FENCE_TYPE
                self._fence_type = ""
            return
        # Stray ` or ``: backticks go back to the free text
        self._text.extend(self._fence_buffer)
        self._text.append(char)
        self._fence_buffer = ""
        self._backtick_count = 0
        self._state = ParserState.TEXT

    def _handle_fence_type(self, char: str) -> None:
        if char != "\n":
            self._fence_type += char
            return
        fence_type = self._fence_type.strip().lower()
        if fence_type == "json":
            self._flush_text_segment()
            self._state = ParserState.IN_JSON_BLOCK
            self._json = []
        else:
            logger.debug("Skipping non-JSON fence %r", fence_type)
            self._state = ParserState.IN_OTHER_CODE_BLOCK
            self._end_backtick_count = 0
        self._fence_buffer = ""
        self._fence_type = ""
        self._backtick_count = 0

    def _handle_in_json_block(self, char: str) -> None:
        if char == FENCE_CHAR:
            self._state = ParserState.MAYBE_END_FENCE
            self._end_backtick_count = 1
        else:
            self._json.append(char)

    def _handle_maybe_end_fence(self, char: str) -> None:
        if char == FENCE_CHAR:
            self._end_backtick_count += 1
            if self._end_backtick_count == FENCE_LENGTH:
                self._finalize_json_block()
                self._state = ParserState.TEXT
                self._end_backtick_count = 0
            return
        # Backticks inside a JSON string value
        self._json.extend(FENCE_CHAR * self._end_backtick_count)
        self._json.append(char)
        self._end_backtick_count = 0
        self._state = ParserState.IN_JSON_BLOCK

    def _handle_in_other_code_block(self, char: str) -> None:
        if char == FENCE_CHAR:
            self._end_backtick_count += 1
            if self._end_backtick_count == FENCE_LENGTH:
                self._state = ParserState.TEXT
                self._end_backtick_count = 0
        else:
            self._end_backtick_count = 0

    # ── Block emission ───────────────────────────────────────

    def _flush_text_segment(self) -> None:
        text = "".join(self._text).strip()
        if text:
            self._blocks.append(
                ParsedBlock(
                    type="text",
                    id=self.current_text_id,
                    index=self._block_index,
                    text=text,
                    source_text=text,
                )
            )
            self._block_index += 1
            self._text_segments += 1
        self._text = []

    def _finalize_json_block(self) -> None:
        trimmed = "".join(self._json).strip()
        if trimmed:
            result = parse_partial_json(trimmed)
            if result.state == "error":
                logger.warning(
                    "JSON block could not be repaired; keeping source only (%d chars)",
                    len(trimmed),
                )
            self._blocks.append(
                ParsedBlock(
                    type="structured",
                    id=self.current_structured_id,
                    index=self._block_index,
                    data=result.value,
                    source_text=trimmed,
                )
            )
            self._block_index += 1
            self._structured_count += 1
            self._json_complete = True
        self._json = []

    # ── Buffer limits ────────────────────────────────────────

    def _enforce_buffer_limits(self) -> None:
        if len(self._text) > self.text_buffer_limit:
            buffer = "".join(self._text)
            trim_point = self._find_safe_trim_point(buffer)
            self._text = list(buffer[trim_point:])
            logger.debug("Trimmed %d chars from the front of the text buffer", trim_point)
        if len(self._json) > self.json_buffer_limit:
            raise StructuredBufferOverflowError(len(self._json), self.json_buffer_limit)

    def _find_safe_trim_point(self, buffer: str) -> int:
        target_length = int(self.text_buffer_limit * self.text_trim_ratio)
        search_start = len(buffer) - target_length
        for i in range(search_start, len(buffer)):
            if buffer[i] in ("\n", " "):
                return i + 1
        return search_start

    # ── Accessors ────────────────────────────────────────────

    @property
    def current_text_id(self) -> str:
        """Id of the free-text segment currently accumulating."""
        if self._text_segments == 0:
            return self.text_id
        return self.block_id(f"text:{self._text_segments}")

    @property
    def current_text_index(self) -> int:
        return self._block_index

    @property
    def current_structured_id(self) -> str:
        """Id the open (or next) JSON fence will be finalized under."""
        if self._structured_count == 0:
            return self.structured_id
        return self.block_id(f"structured:{self._structured_count}")

    @property
    def current_structured_index(self) -> int:
        return self._block_index

    def get_state(self) -> ParserState:
        return self._state

    def get_streaming_text(self) -> str:
        """Free text of the current segment; a pending partial fence is excluded."""
        return "".join(self._text)

    def _pending_fence_text(self) -> str:
        if self._state is ParserState.MAYBE_FENCE:
            return self._fence_buffer
        if self._state is ParserState.FENCE_TYPE:
            return self._fence_buffer + self._fence_type
        return ""

    def get_json_content(self) -> str:
        return "".join(self._json)

    def try_parse_partial_json(self) -> Any:
        """Best-effort value of the open fence, ``None`` outside a fence."""
        if not self.is_in_json_block():
            return None
        return parse_partial_json(self.get_json_content()).value

    def is_in_json_block(self) -> bool:
        return self._state in (ParserState.IN_JSON_BLOCK, ParserState.MAYBE_END_FENCE)

    def is_json_complete(self) -> bool:
        return self._json_complete

    def get_blocks(self) -> list[ParsedBlock]:
        """Finalized blocks plus any trailing free text, sorted by index.

        Backticks still waiting to become a fence (and an unterminated fence
        tag line) count as free text here, since no fence can follow them.
        """
        blocks = list(self._blocks)
        text = (self.get_streaming_text() + self._pending_fence_text()).strip()
        if text:
            blocks.append(
                ParsedBlock(
                    type="text",
                    id=self.current_text_id,
                    index=self._block_index,
                    text=text,
                    source_text=text,
                )
            )
        return sorted(blocks, key=lambda b: b.index)

    def block_id(self, key: str) -> str:
        """Return an id that is stable for ``key`` for this instance's lifetime."""
        if key not in self._block_ids:
            self._block_ids[key] = str(uuid.uuid4())
        return self._block_ids[key]
