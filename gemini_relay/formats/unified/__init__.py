"""
Unified types for Claude <-> Gemini conversion

Key Types:
- UnifiedContentType / UnifiedContent: Claude content block tagged union
- UnifiedMessage: one conversation turn
- UnifiedChatRequest: normalized Claude request
- UnifiedUsage: token usage
- StreamState / BlockType: streaming reconstruction state

Usage:
    from gemini_relay.formats.unified import (
        UnifiedChatRequest,
        UnifiedContentType,
        StreamState,
    )
"""

from .types import (
    UnifiedContentType,
    UnifiedContent,
    UnifiedMessage,
    UnifiedChatRequest,
    UnifiedUsage,
)
from .stream_state import (
    BlockType,
    StreamState,
)
from .exceptions import (
    UnifiedConversionError,
    MissingRequiredFieldError,
    UpstreamShapeError,
)

__all__ = [
    # Types
    "UnifiedContentType",
    "UnifiedContent",
    "UnifiedMessage",
    "UnifiedChatRequest",
    "UnifiedUsage",
    # Stream State
    "BlockType",
    "StreamState",
    # Exceptions
    "UnifiedConversionError",
    "MissingRequiredFieldError",
    "UpstreamShapeError",
]
