"""
Claude streaming event types.

TypedDict shapes plus factory functions for the events the relay writes to
the downstream SSE stream. Every payload carries its event name in ``type``.
"""

import json
from typing import Any, Dict, List, Literal, Optional, TypedDict, Union


class ContentBlockStartEvent(TypedDict):
    type: Literal["content_block_start"]
    index: int
    content_block: Dict[str, Any]


class ContentBlockDeltaEvent(TypedDict):
    type: Literal["content_block_delta"]
    index: int
    delta: Dict[str, Any]


class ContentBlockStopEvent(TypedDict):
    type: Literal["content_block_stop"]
    index: int


class MessageStartEvent(TypedDict):
    type: Literal["message_start"]
    message: Dict[str, Any]


class MessageDeltaEvent(TypedDict):
    """Message-level delta with stop reason and usage."""

    type: Literal["message_delta"]
    delta: Dict[str, Any]
    usage: Dict[str, int]


class MessageStopEvent(TypedDict):
    type: Literal["message_stop"]


class PingEvent(TypedDict):
    type: Literal["ping"]


class ErrorEvent(TypedDict):
    type: Literal["error"]
    error: Dict[str, str]


StreamEvent = Union[
    ContentBlockStartEvent,
    ContentBlockDeltaEvent,
    ContentBlockStopEvent,
    MessageStartEvent,
    MessageDeltaEvent,
    MessageStopEvent,
    PingEvent,
    ErrorEvent,
]


def create_message_start(message_id: str, model: str) -> MessageStartEvent:
    return {
        "type": "message_start",
        "message": {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "model": model,
            "content": [],
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": 0, "output_tokens": 0},
        },
    }


def create_text_block_start(index: int) -> ContentBlockStartEvent:
    return {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}}


def create_thinking_block_start(index: int) -> ContentBlockStartEvent:
    return {"type": "content_block_start", "index": index, "content_block": {"type": "thinking", "thinking": ""}}


def create_tool_use_block_start(index: int, tool_use_id: str, name: str) -> ContentBlockStartEvent:
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": tool_use_id, "name": name, "input": {}},
    }


def create_web_search_result_block_start(
    index: int, tool_use_id: str, results: List[Dict[str, str]]
) -> ContentBlockStartEvent:
    """Self-contained block: the whole result list travels in the start event."""
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {
            "type": "web_search_tool_result",
            "tool_use_id": tool_use_id,
            "content": results,
        },
    }


def create_text_delta(index: int, text: str) -> ContentBlockDeltaEvent:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}}


def create_thinking_delta(index: int, thinking: str) -> ContentBlockDeltaEvent:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "thinking_delta", "thinking": thinking}}


def create_signature_delta(index: int, signature: str) -> ContentBlockDeltaEvent:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "signature_delta", "signature": signature}}


def create_input_json_delta(index: int, partial_json: str) -> ContentBlockDeltaEvent:
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": partial_json},
    }


def create_block_stop(index: int) -> ContentBlockStopEvent:
    return {"type": "content_block_stop", "index": index}


def create_message_delta(
    stop_reason: str, stop_sequence: Optional[str] = None, output_tokens: int = 0
) -> MessageDeltaEvent:
    return {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason, "stop_sequence": stop_sequence},
        "usage": {"output_tokens": output_tokens},
    }


def create_message_stop() -> MessageStopEvent:
    return {"type": "message_stop"}


def create_error_event(error_type: str, message: str) -> ErrorEvent:
    return {"type": "error", "error": {"type": error_type, "message": message}}


def format_sse(event: Dict[str, Any]) -> str:
    """Serialize one event as an SSE frame named after its ``type``."""
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"


PING_FRAME = format_sse({"type": "ping"})


__all__ = [
    "ContentBlockStartEvent",
    "ContentBlockDeltaEvent",
    "ContentBlockStopEvent",
    "MessageStartEvent",
    "MessageDeltaEvent",
    "MessageStopEvent",
    "PingEvent",
    "ErrorEvent",
    "StreamEvent",
    "create_message_start",
    "create_text_block_start",
    "create_thinking_block_start",
    "create_tool_use_block_start",
    "create_web_search_result_block_start",
    "create_text_delta",
    "create_thinking_delta",
    "create_signature_delta",
    "create_input_json_delta",
    "create_block_stop",
    "create_message_delta",
    "create_message_stop",
    "create_error_event",
    "format_sse",
    "PING_FRAME",
]
