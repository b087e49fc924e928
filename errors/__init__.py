"""Custom exception hierarchy for block streaming."""

from errors.exceptions import (
    BlockStreamError,
    EventProcessingError,
    StructuredBufferOverflowError,
)

__all__ = ["BlockStreamError", "EventProcessingError", "StructuredBufferOverflowError"]
