"""Stream state store — the consumer's merged view of one conversation.

Folds :class:`ProcessedResult` objects from the event processor into:

- ``state``: per-key values, each merged against the value the key held
  before the current stream started (so a stream that re-sends a growing
  list does not append it to itself every update),
- subgraph state keyed by namespace,
- the message list (blocks upserted into the trailing assistant message),
- tool records.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable
from typing import Any

from models.blocks import MessageBlock, MessageWithBlocks, TextBlock, ToolState
from services.event_processor import ProcessedResult
from services.merge import MergeReducer

logger = logging.getLogger(__name__)


class StreamStateStore:
    """In-memory state holder fed by an :class:`EventProcessor`.

    Args:
        merge: Per-key reducers; keys without one are replaced.
        transforms: Per-key functions applied to incoming values before
            merging.  A transform that raises drops that update.
    """

    def __init__(
        self,
        *,
        merge: dict[str, MergeReducer] | None = None,
        transforms: dict[str, Callable[[Any], Any]] | None = None,
    ) -> None:
        self.merge = merge or {}
        self.transforms = transforms or {}

        self._state: dict[str, Any] = {}
        self._pre_stream_state: dict[str, Any] = {}
        self._subgraph_state: dict[str, dict[str, Any]] = {}
        self._messages: list[MessageWithBlocks] = []
        self._tools: dict[str, ToolState] = {}

    # ── State ────────────────────────────────────────────────

    def get_state(self) -> dict[str, Any]:
        return dict(self._state)

    def update_state(self, key: str, value: Any, namespace: list[str] | None = None) -> None:
        if namespace:
            ns_key = "|".join(namespace)
            self._subgraph_state.setdefault(ns_key, {})[key] = value
            return

        transform = self.transforms.get(key)
        if transform is not None:
            try:
                value = transform(value)
            except Exception as e:
                logger.warning("Transform for %r failed; update dropped: %s", key, e)
                return

        reducer = self.merge.get(key)
        if reducer is None:
            self._state[key] = value
        else:
            self._state[key] = reducer(value, self._pre_stream_state.get(key))

    def get_subgraph_state(self, namespace: list[str]) -> dict[str, Any] | None:
        state = self._subgraph_state.get("|".join(namespace))
        return dict(state) if state is not None else None

    # ── Messages ─────────────────────────────────────────────

    def get_messages(self) -> list[MessageWithBlocks]:
        return list(self._messages)

    def add_user_message(self, content: str) -> MessageWithBlocks:
        message = MessageWithBlocks(
            id=str(uuid.uuid4()),
            role="user",
            blocks=[TextBlock(id=str(uuid.uuid4()), index=0, text=content)],
        )
        self._messages.append(message)
        return message

    def update_messages(self, blocks: list[MessageBlock]) -> None:
        """Upsert ``blocks`` by id into the trailing assistant message."""
        if not blocks:
            return

        if not self._messages or self._messages[-1].role != "assistant":
            self._messages.append(MessageWithBlocks(id=str(uuid.uuid4()), role="assistant"))
        current = self._messages[-1]

        by_id = {block.id: block for block in current.blocks}
        for block in blocks:
            by_id[block.id] = block
        self._messages[-1] = current.model_copy(
            update={"blocks": sorted(by_id.values(), key=lambda b: b.index)}
        )

    # ── Tools ────────────────────────────────────────────────

    def get_tools(self) -> list[ToolState]:
        return list(self._tools.values())

    def update_tools(self, tools: list[ToolState]) -> None:
        for tool in tools:
            self._tools[tool.id] = tool

    # ── Lifecycle ────────────────────────────────────────────

    def apply(self, result: ProcessedResult) -> None:
        """Fold one processor result into the store."""
        for key, value in result.state_updates.items():
            self.update_state(key, value)
        for ns_key, updates in result.subgraph_updates.items():
            namespace = ns_key.split("|")
            for key, value in updates.items():
                self.update_state(key, value, namespace)
        self.update_messages(result.message_blocks)
        self.update_tools(result.tool_updates)

    def reset_for_stream(self) -> None:
        """Snapshot the current state as the merge base for the next stream."""
        self._pre_stream_state = copy.deepcopy(self._state)
        self._tools.clear()
        self._subgraph_state.clear()

    def load_from_history(
        self, messages: list[MessageWithBlocks], state: dict[str, Any]
    ) -> None:
        self._messages = list(messages)
        self._state = dict(state)
        self._pre_stream_state = copy.deepcopy(state)
        logger.debug(
            "Loaded %d messages and %d state keys from history", len(messages), len(state)
        )
