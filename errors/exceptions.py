"""Domain-specific exceptions for block streaming.

Only the structured-buffer overflow escapes to callers; every other failure
mode degrades the output (see the parser, streamer and processor modules).
"""

from __future__ import annotations

from typing import Any


class BlockStreamError(Exception):
    """Base class for block streaming errors."""


class StructuredBufferOverflowError(BlockStreamError):
    """The in-fence JSON buffer grew past its hard limit.

    Raised by ``BlockParser.append``.  Truncating mid-JSON would corrupt the
    only structured payload, so the caller decides whether to abort the
    stream or discard it.
    """

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            f"JSON block exceeds maximum size ({size} > {limit} characters)"
        )


class EventProcessingError(BlockStreamError):
    """Applying a single UI event failed.

    Carries the offending event so the ``on_error`` callback can report it.
    The processor keeps consuming later events.
    """

    def __init__(self, event: Any, cause: BaseException) -> None:
        self.event = event
        self.cause = cause
        event_type = getattr(event, "type", "unknown")
        super().__init__(f"Failed to apply {event_type} event: {cause}")
