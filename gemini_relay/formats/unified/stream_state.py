"""
Stream State Management

Per-response state threaded through repeated StreamReconstructor calls.
"""

from dataclasses import dataclass
from enum import Enum


class BlockType(str, Enum):
    """Type of the currently open content block."""

    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


@dataclass
class StreamState:
    """Streaming conversion state for one logical response.

    Exactly one instance per in-flight stream, never shared across streams.
    At most one block is open at a time (``open_block_type``); ``block_index``
    is the index of the open block, or of the next block to open.
    """

    block_index: int = 0
    open_block_type: BlockType = BlockType.NONE

    # Set once any function call was emitted; forces stop_reason=tool_use
    tool_use_active: bool = False

    has_emitted_text: bool = False
    has_emitted_thinking: bool = False
    # Whether the current thinking block already received a thinking_delta
    has_emitted_thinking_delta: bool = False

    # Text held back while an unsigned thinking block is open
    buffered_trailing_text: str = ""

    signature_already_sent: bool = False

    @property
    def has_open_block(self) -> bool:
        return self.open_block_type != BlockType.NONE

    @property
    def thinking_unsigned(self) -> bool:
        """Thinking content exists but no signature was sent for it."""
        return self.has_emitted_thinking and not self.signature_already_sent

    def open_block(self, block_type: BlockType) -> int:
        """Mark ``block_type`` open at the current index and return that index."""
        self.open_block_type = block_type
        if block_type == BlockType.THINKING:
            self.has_emitted_thinking_delta = False
        return self.block_index

    def close_block(self) -> int:
        """Close the open block and return its index; the next block gets index + 1."""
        closed_index = self.block_index
        self.open_block_type = BlockType.NONE
        self.block_index += 1
        return closed_index
