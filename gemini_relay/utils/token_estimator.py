"""
Token 估算
/v1/messages/count_tokens 只需要近似值：cl100k_base 编码文本，多模态按固定值估算
"""
import json
from typing import Any, Dict, List, Tuple

import tiktoken

# 图片/文档的固定估算值
MULTIMODAL_TOKEN_ESTIMATE = 85

_encoding = None


def _get_encoding():
    global _encoding
    if _encoding is None:
        _encoding = tiktoken.get_encoding("cl100k_base")
    return _encoding


def _extract_text_from_anthropic_request(request_data: Dict[str, Any]) -> Tuple[str, int]:
    """从 Claude 请求中提取所有计数文本，同时统计多模态块数量"""
    text_parts: List[str] = []
    multimodal_blocks = 0

    system = request_data.get("system")
    if isinstance(system, str):
        text_parts.append(system)
    elif isinstance(system, list):
        for block in system:
            if isinstance(block, dict) and block.get("type") == "text":
                text_parts.append(block.get("text", ""))

    for msg in request_data.get("messages") or []:
        if not isinstance(msg, dict):
            continue
        content = msg.get("content")
        if isinstance(content, str):
            text_parts.append(content)
            continue
        if not isinstance(content, list):
            continue
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "thinking":
                text_parts.append(block.get("thinking", ""))
            elif block_type == "tool_use":
                text_parts.append(block.get("name", ""))
                text_parts.append(json.dumps(block.get("input", {}), ensure_ascii=False))
            elif block_type == "tool_result":
                result_content = block.get("content", "")
                if isinstance(result_content, str):
                    text_parts.append(result_content)
                elif isinstance(result_content, list):
                    for item in result_content:
                        if isinstance(item, dict) and item.get("type") == "text":
                            text_parts.append(item.get("text", ""))
            elif block_type in ("image", "document"):
                multimodal_blocks += 1

    for tool in request_data.get("tools") or []:
        if not isinstance(tool, dict):
            continue
        text_parts.append(tool.get("name", ""))
        text_parts.append(tool.get("description", ""))
        text_parts.append(json.dumps(tool.get("input_schema", {}), ensure_ascii=False))

    return "\n".join(text_parts), multimodal_blocks


def estimate_input_tokens(request_data: Dict[str, Any]) -> int:
    """估算 Claude 请求的输入 token 数"""
    text, multimodal_blocks = _extract_text_from_anthropic_request(request_data)
    token_count = len(_get_encoding().encode(text)) if text else 0
    return token_count + multimodal_blocks * MULTIMODAL_TOKEN_ESTIMATE
