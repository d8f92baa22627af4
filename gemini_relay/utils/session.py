"""
会话哈希
从 Claude 请求体推导粘性会话 key（只作为不透明的 affinity key 使用）
"""
import hashlib
import re
from typing import Any, Dict, Optional

_SESSION_PATTERN = re.compile(r"session_([0-9a-fA-F-]{8,})")


def _flatten_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                texts.append(str(block.get("text", "")))
        return "\n".join(texts)
    return ""


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:32]


def generate_session_hash(request_body: Dict[str, Any]) -> Optional[str]:
    """推导会话 key

    优先级：
    1. metadata.user_id 中的 session_<uuid> 片段（Claude Code 客户端会带上）
    2. system 文本 + 第一条消息文本
    都取不到时返回 None，表示不使用粘性会话。
    """
    if not isinstance(request_body, dict):
        return None

    metadata = request_body.get("metadata")
    if isinstance(metadata, dict):
        user_id = metadata.get("user_id")
        if isinstance(user_id, str):
            match = _SESSION_PATTERN.search(user_id)
            if match:
                return _digest(match.group(1))

    seed_parts = []
    system_text = _flatten_text(request_body.get("system"))
    if system_text:
        seed_parts.append(system_text)

    messages = request_body.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        first_text = _flatten_text(messages[0].get("content"))
        if first_text:
            seed_parts.append(first_text)

    if not seed_parts:
        return None
    return _digest("\n".join(seed_parts))
