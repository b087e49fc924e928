"""Event processor — consumer-side reassembly of the UI event stream.

Events may arrive out of order.  The processor applies them strictly in
``seq`` order: an event with the expected ``seq`` is applied immediately and
then any buffered successors are drained; anything ahead of the expected
``seq`` waits in a reorder buffer.

Applying an event materializes it into one of three views:

- state updates (per key; ``ui:state:final`` freezes a key until reset),
- message blocks (insert-or-replace by block id),
- tool records (pending → running → complete / error).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from config.settings import get_settings
from errors.exceptions import EventProcessingError
from models.blocks import (
    MessageBlock,
    ReasoningBlock,
    StructuredBlock,
    TextBlock,
    ToolCallBlock,
    ToolState,
)
from models.ui_events import (
    UIContentReasoningEvent,
    UIContentStructuredEvent,
    UIContentTextEvent,
    UIEventBase,
    UIStateFinalEvent,
    UIStateStreamingEvent,
    UIToolErrorEvent,
    UIToolInputEvent,
    UIToolOutputEvent,
    UIToolStartEvent,
    parse_ui_event,
)

logger = logging.getLogger(__name__)

OutOfOrderCallback = Callable[[UIEventBase, int], None]
ErrorCallback = Callable[[EventProcessingError], None]
GapCallback = Callable[[int, int], None]

_ROOT_NAMESPACE = ""


def namespace_key(namespace: list[str] | None) -> str:
    """Key under which a namespaced (subgraph) update is reported."""
    return "|".join(namespace) if namespace else _ROOT_NAMESPACE


@dataclass
class ProcessedResult:
    """Everything that changed while handling one ``process`` call."""

    state_updates: dict[str, Any] = field(default_factory=dict)
    subgraph_updates: dict[str, dict[str, Any]] = field(default_factory=dict)
    message_blocks: list[MessageBlock] = field(default_factory=list)
    tool_updates: list[ToolState] = field(default_factory=list)
    is_state_final: bool = False

    def merge(self, other: ProcessedResult) -> ProcessedResult:
        subgraph = {ns: dict(values) for ns, values in self.subgraph_updates.items()}
        for ns, values in other.subgraph_updates.items():
            subgraph.setdefault(ns, {}).update(values)
        return ProcessedResult(
            state_updates={**self.state_updates, **other.state_updates},
            subgraph_updates=subgraph,
            message_blocks=[*self.message_blocks, *other.message_blocks],
            tool_updates=[*self.tool_updates, *other.tool_updates],
            is_state_final=self.is_state_final or other.is_state_final,
        )

    def is_empty(self) -> bool:
        return not (
            self.state_updates
            or self.subgraph_updates
            or self.message_blocks
            or self.tool_updates
        )


class EventProcessor:
    """Applies UI events in ``seq`` order and tracks the materialized view.

    One instance per logical stream; call :meth:`reset_for_new_stream`
    when the consumer switches streams.

    Args:
        on_out_of_order: Called with ``(event, expected_seq)`` when an event
            is buffered.
        on_error: Called with an :class:`EventProcessingError` when applying
            one event fails; processing continues with later events.
        on_gap: Called with ``(first_missing, last_missing)`` when the
            reorder buffer overflows and the processor skips ahead.
        max_buffered_events: Reorder buffer cap; defaults to
            ``Settings.reorder_buffer_limit`` (``None`` = unbounded).
    """

    def __init__(
        self,
        *,
        on_out_of_order: OutOfOrderCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_gap: GapCallback | None = None,
        max_buffered_events: int | None = None,
    ) -> None:
        self.on_out_of_order = on_out_of_order
        self.on_error = on_error
        self.on_gap = on_gap
        self.max_buffered_events = (
            max_buffered_events
            if max_buffered_events is not None
            else get_settings().reorder_buffer_limit
        )

        self._current_stream_id: str | None = None
        self.reset()

    # ── Lifecycle ────────────────────────────────────────────

    def reset(self) -> None:
        self._expected_seq = 1
        self._buffer: dict[int, UIEventBase] = {}
        self._finalized: set[tuple[str, str]] = set()
        self._blocks: dict[str, MessageBlock] = {}
        self._tools: dict[str, ToolState] = {}

    def reset_for_new_stream(self, stream_id: str) -> None:
        """Full reset unless ``stream_id`` is the stream already tracked."""
        if stream_id == self._current_stream_id:
            return
        logger.debug("Switching processor to stream %s", stream_id)
        self.reset()
        self._current_stream_id = stream_id

    # ── Entry point ──────────────────────────────────────────

    def process(self, event: Any) -> ProcessedResult:
        """Apply ``event`` (and any buffered successors) in ``seq`` order.

        Input that is not a valid UI event yields an empty result.
        """
        typed = parse_ui_event(event)
        if typed is None:
            return ProcessedResult()

        if typed.seq < self._expected_seq:
            logger.debug(
                "Dropping stale %s event seq=%d (expected %d)",
                typed.type, typed.seq, self._expected_seq,
            )
            return ProcessedResult()

        if typed.seq != self._expected_seq:
            self._buffer[typed.seq] = typed
            if self.on_out_of_order is not None:
                self.on_out_of_order(typed, self._expected_seq)
            self._skip_gap_if_full()
            return self._drain_buffer()

        self._expected_seq += 1
        result = self._apply(typed)
        return result.merge(self._drain_buffer())

    def _drain_buffer(self) -> ProcessedResult:
        result = ProcessedResult()
        while self._expected_seq in self._buffer:
            event = self._buffer.pop(self._expected_seq)
            self._expected_seq += 1
            result = result.merge(self._apply(event))
        return result

    def _skip_gap_if_full(self) -> None:
        if self.max_buffered_events is None or len(self._buffer) <= self.max_buffered_events:
            return
        next_seq = min(self._buffer)
        first_missing, last_missing = self._expected_seq, next_seq - 1
        logger.warning(
            "Reorder buffer full (%d events); skipping missing seq %d..%d",
            len(self._buffer), first_missing, last_missing,
        )
        self._expected_seq = next_seq
        if self.on_gap is not None:
            self.on_gap(first_missing, last_missing)

    # ── Application ──────────────────────────────────────────

    def _apply(self, event: UIEventBase) -> ProcessedResult:
        try:
            if isinstance(event, UIStateStreamingEvent):
                return self._apply_state_streaming(event)
            if isinstance(event, UIStateFinalEvent):
                return self._apply_state_final(event)
            if isinstance(event, UIContentTextEvent):
                return self._put_block(
                    TextBlock(id=event.block_id, index=event.index, text=event.text)
                )
            if isinstance(event, UIContentStructuredEvent):
                return self._put_block(
                    StructuredBlock(
                        id=event.block_id,
                        index=event.index,
                        data=event.data,
                        source_text=event.source_text,
                        partial=event.partial,
                    )
                )
            if isinstance(event, UIContentReasoningEvent):
                return self._put_block(
                    ReasoningBlock(id=event.block_id, index=event.index, text=event.text)
                )
            if isinstance(event, UIToolStartEvent):
                return self._apply_tool_start(event)
            if isinstance(event, UIToolInputEvent):
                return self._update_tool(
                    event.tool_call_id,
                    {"input": event.input, "input_complete": event.complete, "state": "running"},
                    {"input": event.input, "state": "running"},
                )
            if isinstance(event, UIToolOutputEvent):
                return self._update_tool(
                    event.tool_call_id,
                    {"output": event.output, "state": "complete"},
                    {"output": event.output, "state": "complete"},
                )
            if isinstance(event, UIToolErrorEvent):
                return self._update_tool(
                    event.tool_call_id,
                    {"error": event.error, "state": "error"},
                    {"error": event.error, "state": "error"},
                )
        except Exception as e:
            logger.exception("Failed to apply %s event seq=%d", event.type, event.seq)
            if self.on_error is not None:
                self.on_error(EventProcessingError(event, e))
        return ProcessedResult()

    def _state_result(
        self, event: UIStateStreamingEvent | UIStateFinalEvent, *, final: bool
    ) -> ProcessedResult:
        ns = namespace_key(event.namespace)
        if ns == _ROOT_NAMESPACE:
            return ProcessedResult(state_updates={event.key: event.value}, is_state_final=final)
        return ProcessedResult(
            subgraph_updates={ns: {event.key: event.value}}, is_state_final=final
        )

    def _apply_state_streaming(self, event: UIStateStreamingEvent) -> ProcessedResult:
        if (namespace_key(event.namespace), event.key) in self._finalized:
            logger.debug("Ignoring streaming update for finalized key %r", event.key)
            return ProcessedResult()
        return self._state_result(event, final=False)

    def _apply_state_final(self, event: UIStateFinalEvent) -> ProcessedResult:
        self._finalized.add((namespace_key(event.namespace), event.key))
        return self._state_result(event, final=True)

    def _put_block(self, block: MessageBlock) -> ProcessedResult:
        self._blocks[block.id] = block
        return ProcessedResult(message_blocks=[block])

    def _apply_tool_start(self, event: UIToolStartEvent) -> ProcessedResult:
        """Record a pending tool and its inline block.

        The block takes the event's ``index`` when the producer assigned one,
        otherwise the slot after the highest index seen so far.
        """
        tool = ToolState(id=event.tool_call_id, name=event.tool_name, state="pending")
        self._tools[tool.id] = tool
        if event.index is not None:
            index = event.index
        else:
            index = max((b.index for b in self._blocks.values()), default=-1) + 1
        block = ToolCallBlock(
            id=event.id,
            index=index,
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            state="pending",
        )
        self._blocks[block.id] = block
        return ProcessedResult(tool_updates=[tool], message_blocks=[block])

    def _update_tool(
        self,
        tool_call_id: str,
        tool_changes: dict[str, Any],
        block_changes: dict[str, Any],
    ) -> ProcessedResult:
        existing = self._tools.get(tool_call_id)
        if existing is None:
            logger.debug("Ignoring update for unknown tool call %s", tool_call_id)
            return ProcessedResult()

        tool = existing.model_copy(update=tool_changes)
        self._tools[tool_call_id] = tool
        result = ProcessedResult(tool_updates=[tool])

        block = self._find_tool_block(tool_call_id)
        if block is not None:
            updated = block.model_copy(update=block_changes)
            self._blocks[updated.id] = updated
            result.message_blocks.append(updated)
        return result

    def _find_tool_block(self, tool_call_id: str) -> ToolCallBlock | None:
        for block in self._blocks.values():
            if isinstance(block, ToolCallBlock) and block.tool_call_id == tool_call_id:
                return block
        return None

    # ── Accessors ────────────────────────────────────────────

    def is_key_finalized(self, key: str, namespace: list[str] | None = None) -> bool:
        return (namespace_key(namespace), key) in self._finalized

    def get_current_blocks(self) -> list[MessageBlock]:
        return sorted(self._blocks.values(), key=lambda b: b.index)

    def get_current_tools(self) -> list[ToolState]:
        return list(self._tools.values())

    @property
    def expected_seq(self) -> int:
        return self._expected_seq

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)
