"""
Unified Chat Types

Typed view of a Claude Messages API request, used as the input of the
Gemini request converter.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Union


class UnifiedContentType(str, Enum):
    """Content block types of a Claude message."""

    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    UNKNOWN = "unknown"  # dropped during conversion


@dataclass
class UnifiedContent:
    """One content block (tagged by ``type``).

    Only the fields of the matching variant are populated:
    - TEXT: text
    - IMAGE / DOCUMENT: media_type, base64_data
    - THINKING: text, signature
    - TOOL_USE: tool_use_id, tool_name, tool_input
    - TOOL_RESULT: tool_use_id, tool_result_content, is_error
    """

    type: UnifiedContentType

    text: Optional[str] = None
    signature: Optional[str] = None

    media_type: Optional[str] = None
    base64_data: Optional[str] = None

    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None

    tool_result_content: Any = None
    is_error: bool = False

    raw_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_anthropic(cls, data: Any) -> "UnifiedContent":
        """Create from a Claude content block; unrecognized shapes become UNKNOWN."""
        if not isinstance(data, dict):
            return cls(type=UnifiedContentType.UNKNOWN)

        block_type = data.get("type")

        if block_type == "text":
            return cls(type=UnifiedContentType.TEXT, text=data.get("text") or "", raw_data=data)
        elif block_type == "thinking":
            return cls(
                type=UnifiedContentType.THINKING,
                text=data.get("thinking") or "",
                signature=data.get("signature") or None,
                raw_data=data,
            )
        elif block_type in ("image", "document"):
            source = data.get("source") or {}
            if source.get("type") != "base64":
                return cls(type=UnifiedContentType.UNKNOWN, raw_data=data)
            return cls(
                type=UnifiedContentType(block_type),
                media_type=source.get("media_type")
                or ("image/jpeg" if block_type == "image" else "application/pdf"),
                base64_data=source.get("data", ""),
                raw_data=data,
            )
        elif block_type == "tool_use":
            tool_input = data.get("input")
            return cls(
                type=UnifiedContentType.TOOL_USE,
                tool_use_id=data.get("id", ""),
                tool_name=data.get("name", ""),
                tool_input=tool_input if isinstance(tool_input, dict) else {},
                signature=data.get("signature") or None,
                raw_data=data,
            )
        elif block_type == "tool_result":
            return cls(
                type=UnifiedContentType.TOOL_RESULT,
                tool_use_id=data.get("tool_use_id", ""),
                tool_result_content=data.get("content", ""),
                is_error=bool(data.get("is_error", False)),
                raw_data=data,
            )
        return cls(type=UnifiedContentType.UNKNOWN, raw_data=data)


@dataclass
class UnifiedMessage:
    """One conversation turn."""

    role: str  # "user" | "assistant"
    content: List[UnifiedContent] = field(default_factory=list)

    @classmethod
    def from_anthropic(cls, data: Dict[str, Any]) -> "UnifiedMessage":
        role = data.get("role") or "user"
        raw_content = data.get("content")
        if isinstance(raw_content, str):
            blocks = [UnifiedContent(type=UnifiedContentType.TEXT, text=raw_content)]
        elif isinstance(raw_content, list):
            blocks = [UnifiedContent.from_anthropic(item) for item in raw_content]
        elif isinstance(raw_content, dict):
            blocks = [UnifiedContent.from_anthropic(raw_content)]
        else:
            blocks = []
        return cls(role=role, content=blocks)


@dataclass
class UnifiedUsage:
    """Token usage information."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0

    def to_anthropic(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }

    @classmethod
    def from_gemini(cls, usage_metadata: Optional[Dict[str, Any]]) -> "UnifiedUsage":
        usage_metadata = usage_metadata or {}
        return cls(
            input_tokens=int(usage_metadata.get("promptTokenCount") or 0),
            output_tokens=int(usage_metadata.get("candidatesTokenCount") or 0),
            cache_read_input_tokens=int(usage_metadata.get("cachedContentTokenCount") or 0),
        )


@dataclass
class UnifiedChatRequest:
    """Claude request, normalized."""

    model: str
    messages: List[UnifiedMessage] = field(default_factory=list)

    # Flattened system prompt (list form joined with "\n")
    system: str = ""

    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Optional[List[str]] = None

    stream: bool = False

    tools: List[Dict[str, Any]] = field(default_factory=list)
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None

    # Thinking / reasoning directives
    thinking_enabled: bool = False
    thinking_budget_tokens: Optional[int] = None
    reasoning_effort: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_thinking_directive(self) -> bool:
        return self.thinking_enabled or bool(self.reasoning_effort)

    @staticmethod
    def flatten_system(raw_system: Any) -> str:
        if isinstance(raw_system, str):
            return raw_system
        if isinstance(raw_system, list):
            texts = []
            for block in raw_system:
                if isinstance(block, dict) and block.get("type", "text") == "text":
                    texts.append(str(block.get("text", "")))
                elif isinstance(block, str):
                    texts.append(block)
            return "\n".join(texts)
        return ""

    @classmethod
    def from_anthropic(cls, data: Dict[str, Any]) -> "UnifiedChatRequest":
        """Create from a Claude Messages API request body."""
        messages = [
            UnifiedMessage.from_anthropic(m)
            for m in data.get("messages") or []
            if isinstance(m, dict)
        ]

        thinking = data.get("thinking")
        thinking_enabled = False
        thinking_budget_tokens = None
        if isinstance(thinking, dict):
            budget = thinking.get("budget_tokens")
            if isinstance(budget, (int, float)) and budget > 0:
                thinking_budget_tokens = int(budget)
            thinking_enabled = thinking.get("type") == "enabled" or thinking_budget_tokens is not None

        reasoning = data.get("reasoning")
        reasoning_effort = None
        if isinstance(reasoning, dict) and isinstance(reasoning.get("effort"), str):
            reasoning_effort = reasoning["effort"].lower() or None

        stop_sequences = data.get("stop_sequences")
        tools = data.get("tools")

        return cls(
            model=data.get("model", ""),
            messages=messages,
            system=cls.flatten_system(data.get("system")),
            max_tokens=data.get("max_tokens"),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
            top_k=data.get("top_k"),
            stop_sequences=list(stop_sequences) if isinstance(stop_sequences, list) else None,
            stream=bool(data.get("stream", False)),
            tools=[t for t in tools if isinstance(t, dict)] if isinstance(tools, list) else [],
            tool_choice=data.get("tool_choice"),
            thinking_enabled=thinking_enabled,
            thinking_budget_tokens=thinking_budget_tokens,
            reasoning_effort=reasoning_effort,
            metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
        )
