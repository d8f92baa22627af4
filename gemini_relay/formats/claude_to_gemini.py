"""
Claude -> Gemini 格式转换器
请求：Claude Messages 请求体 -> Gemini generateContent 请求体
响应：Gemini generateContent 响应（非流式）-> Claude Messages 响应
流式响应由 stream_reconstructor.StreamReconstructor 处理
"""
import json
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .base_converter import BaseConverter, ConversionResult
from .schema_sanitizer import sanitize_schema
from .unified import (
    UnifiedChatRequest,
    UnifiedContent,
    UnifiedContentType,
    UnifiedMessage,
    UnifiedUsage,
    MissingRequiredFieldError,
    UpstreamShapeError,
)
from gemini_relay.core.relay_config import (
    RelayConfig,
    THINKING_STYLE_BUDGET,
    THINKING_STYLE_LEVEL,
)
from gemini_relay.utils.logger import log_structured_error, ERROR_TYPE_CONVERSION

WEB_SEARCH_TOOL_NAME = "web_search"
UNKNOWN_TOOL_NAME = "unknown_tool"

MAX_THINKING_BUDGET = 32768
THINKING_LEVELS = ("LOW", "MEDIUM", "HIGH")
# budget 风格模型上 reasoning.effort 对应的预算
EFFORT_BUDGETS = {"low": 1024, "medium": 8192, "high": 24576}

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]

SAFETY_BLOCKED_TEXT = "[Content blocked by Gemini Safety Filters]"
RECITATION_BLOCKED_TEXT = "[Content blocked by Gemini Recitation Checks]"


# ===================== 共享工具函数（流式/非流式共用） =====================

def new_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:8]}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4()}"


def part_signature(part: Dict[str, Any]) -> Optional[str]:
    """Gemini 两种签名字段写法都接受"""
    return part.get("thoughtSignature") or part.get("thought_signature") or None


def map_finish_reason(finish_reason: Optional[str]) -> Tuple[str, Optional[str]]:
    """Gemini finishReason -> (Claude stop_reason, stop_sequence)"""
    if finish_reason == "MAX_TOKENS":
        return "max_tokens", None
    if finish_reason == "SAFETY":
        return "stop_sequence", "SAFETY"
    if finish_reason == "RECITATION":
        return "stop_sequence", "RECITATION"
    # STOP 以及其他未知原因
    return "end_turn", None


def unwrap_response_envelope(data: Any) -> Dict[str, Any]:
    """兼容 Code Assist 的 {response: {...}} 包装，包装内容也可能是 JSON 字符串

    Raises:
        UpstreamShapeError: 负载根本不是 JSON 对象
    """
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise UpstreamShapeError(f"Upstream payload is not JSON: {e}", payload=data)
    if not isinstance(data, dict):
        raise UpstreamShapeError(
            f"Upstream payload must be a JSON object, got {type(data).__name__}", payload=data
        )

    inner = data.get("response")
    if isinstance(inner, str):
        try:
            inner = json.loads(inner)
        except ValueError:
            inner = None
    if isinstance(inner, dict):
        if "candidates" in inner or "promptFeedback" in inner or "usageMetadata" in inner:
            if "usageMetadata" not in inner and isinstance(data.get("usageMetadata"), dict):
                inner = {**inner, "usageMetadata": data["usageMetadata"]}
            return inner
        nested = inner.get("response")
        if isinstance(nested, dict):
            return nested
    return data


def first_candidate(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    candidates = payload.get("candidates")
    if candidates is None:
        return None
    if not isinstance(candidates, list):
        raise UpstreamShapeError("Upstream 'candidates' must be a list", payload=payload)
    if candidates and isinstance(candidates[0], dict):
        return candidates[0]
    return None


def blocked_prompt_candidate(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """promptFeedback.blockReason 且没有候选时，合成一个带提示文本的 SAFETY 候选"""
    feedback = payload.get("promptFeedback")
    block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
    if not block_reason:
        return None
    return {
        "content": {"parts": [{"text": f"[Request blocked by Gemini: {block_reason}]"}]},
        "finishReason": "SAFETY",
    }


class ClaudeToGeminiConverter(BaseConverter):
    """Claude Messages <-> Gemini generateContent 转换器"""

    def __init__(self, relay_config: Optional[RelayConfig] = None):
        super().__init__()
        self.relay_config = relay_config or RelayConfig()

    # ------------------------------------------------------------------
    # 请求转换
    # ------------------------------------------------------------------

    def convert_request(
        self,
        data: Dict[str, Any],
        system_prompt_config: Any = None,
        target_model: str = "",
    ) -> ConversionResult:
        """转换 Claude 请求到 Gemini 请求体

        Args:
            data: Claude Messages 请求体
            system_prompt_config: 自定义 system prompt，str 或 {prompt, position}
            target_model: 解析后的 Gemini 模型名（决定 thinking 配置形态）
        """
        try:
            request = UnifiedChatRequest.from_anthropic(data)
            body = self.build_request(request, system_prompt_config, target_model)
            return ConversionResult(success=True, data=body)
        except (MissingRequiredFieldError, ValueError, TypeError) as e:
            log_structured_error(
                self.logger,
                error_type=ERROR_TYPE_CONVERSION,
                exc=e,
                request_body=data,
                extra={"direction": "request", "target_model": target_model},
            )
            return ConversionResult(success=False, error=str(e))

    def build_request(
        self,
        request: UnifiedChatRequest,
        system_prompt_config: Any = None,
        target_model: str = "",
    ) -> Dict[str, Any]:
        if not isinstance(request.messages, list):
            raise MissingRequiredFieldError("messages")

        body: Dict[str, Any] = {
            "contents": self._convert_messages(request.messages),
            "generationConfig": self._build_generation_config(request, target_model),
            "safetySettings": [dict(item) for item in SAFETY_SETTINGS],
        }

        function_names, tools = self._convert_tools(request.tools)
        if tools:
            body["tools"] = tools

        tool_config = self._convert_tool_choice(request.tool_choice, function_names)
        if tool_config:
            body["toolConfig"] = tool_config

        system_text = self._build_system_instruction(request.system, system_prompt_config)
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        return body

    def _build_system_instruction(self, system: str, system_prompt_config: Any) -> str:
        """合并原始 system 与自定义 prompt：prepend 放前面，append（默认）放后面"""
        custom_prompt = ""
        position = "append"
        if isinstance(system_prompt_config, str):
            custom_prompt = system_prompt_config
        elif isinstance(system_prompt_config, dict):
            custom_prompt = system_prompt_config.get("prompt") or ""
            position = system_prompt_config.get("position") or "append"
        elif system_prompt_config is not None:
            custom_prompt = getattr(system_prompt_config, "prompt", "") or ""
            position = getattr(system_prompt_config, "position", "append") or "append"

        if not custom_prompt:
            return system or ""
        if not system:
            return custom_prompt
        if position == "prepend":
            return f"{custom_prompt}\n\n{system}"
        return f"{system}\n\n{custom_prompt}"

    def _convert_messages(self, messages: List[UnifiedMessage]) -> List[Dict[str, Any]]:
        """逐条转换消息；相邻同角色合并，保证每个 turn 至少一个 part"""
        contents: List[Dict[str, Any]] = []

        for position, message in enumerate(messages):
            role = "model" if message.role == "assistant" else "user"
            parts = self._convert_message_parts(message, messages[:position])

            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
                continue

            contents.append({"role": role, "parts": parts or [{"text": ""}]})

        return contents

    def _convert_message_parts(
        self, message: UnifiedMessage, prior_messages: List[UnifiedMessage]
    ) -> List[Dict[str, Any]]:
        """单条消息 -> parts

        签名规则：thinking 块本身不输出，只记录签名为 pending；
        同一消息内下一个 text / tool_use part 消费该签名。
        没有 pending 签名的 functionCall 仍需带空字符串签名字段。
        """
        parts: List[Dict[str, Any]] = []
        pending_signature: Optional[str] = None

        for block in message.content:
            if block.type == UnifiedContentType.THINKING:
                if block.signature:
                    pending_signature = block.signature

            elif block.type == UnifiedContentType.TEXT:
                if not block.text:
                    continue
                part: Dict[str, Any] = {"text": block.text}
                if pending_signature:
                    part["thoughtSignature"] = pending_signature
                    pending_signature = None
                parts.append(part)

            elif block.type in (UnifiedContentType.IMAGE, UnifiedContentType.DOCUMENT):
                parts.append({
                    "inlineData": {
                        "mimeType": block.media_type,
                        "data": block.base64_data or "",
                    }
                })

            elif block.type == UnifiedContentType.TOOL_USE:
                signature = pending_signature or block.signature or ""
                pending_signature = None
                parts.append({
                    "functionCall": {
                        "name": block.tool_name or "",
                        "args": block.tool_input or {},
                    },
                    "thoughtSignature": signature,
                })

            elif block.type == UnifiedContentType.TOOL_RESULT:
                parts.append(self._build_function_response(block, prior_messages))

            else:
                self.logger.debug(f"Dropping unsupported content block: {block.raw_data.get('type')}")

        return parts

    def _build_function_response(
        self, block: UnifiedContent, prior_messages: List[UnifiedMessage]
    ) -> Dict[str, Any]:
        name = self._find_tool_name(block.tool_use_id, prior_messages)
        text = self._flatten_tool_result(block.tool_result_content)
        response_key = "error" if block.is_error else "result"
        return {
            "functionResponse": {
                "name": name,
                "response": {response_key: text},
            }
        }

    def _find_tool_name(self, tool_use_id: Optional[str], prior_messages: List[UnifiedMessage]) -> str:
        """从最近的 assistant 消息往前找 tool_use id 对应的函数名"""
        if tool_use_id:
            for message in reversed(prior_messages):
                if message.role != "assistant":
                    continue
                for block in message.content:
                    if block.type == UnifiedContentType.TOOL_USE and block.tool_use_id == tool_use_id:
                        return block.tool_name or UNKNOWN_TOOL_NAME
        self.logger.warning(f"tool_result references unknown tool_use id: {tool_use_id}")
        return UNKNOWN_TOOL_NAME

    @staticmethod
    def _flatten_tool_result(content: Any) -> str:
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts = []
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    texts.append(str(item.get("text", "")))
                elif isinstance(item, str):
                    texts.append(item)
                elif isinstance(item, dict):
                    texts.append(json.dumps(item, ensure_ascii=False))
            return "\n".join(texts)
        if isinstance(content, dict):
            return json.dumps(content, ensure_ascii=False)
        return str(content)

    def _convert_tools(self, tools: List[Dict[str, Any]]) -> Tuple[List[str], List[Dict[str, Any]]]:
        """返回 (普通函数名列表, Gemini tools)"""
        declarations: List[Dict[str, Any]] = []
        has_web_search = False

        for tool in tools or []:
            name = tool.get("name") or ""
            tool_type = str(tool.get("type") or "")
            if name == WEB_SEARCH_TOOL_NAME or tool_type.startswith("web_search"):
                has_web_search = True
                continue

            declaration: Dict[str, Any] = {"name": name}
            if tool.get("description"):
                declaration["description"] = tool["description"]
            parameters = sanitize_schema(tool.get("input_schema"))
            if parameters is not None:
                declaration["parametersJsonSchema"] = parameters
            declarations.append(declaration)

        gemini_tools: List[Dict[str, Any]] = []
        if declarations:
            gemini_tools.append({"functionDeclarations": declarations})
        if has_web_search:
            gemini_tools.append({"googleSearch": {}})
        return [d["name"] for d in declarations], gemini_tools

    @staticmethod
    def _convert_tool_choice(tool_choice: Any, function_names: List[str]) -> Optional[Dict[str, Any]]:
        """没有 tool_choice 时不发送 toolConfig；没有可调用的函数时只保留 none"""
        if not tool_choice:
            return None
        choice_type = tool_choice.get("type") if isinstance(tool_choice, dict) else tool_choice
        if not function_names and choice_type != "none":
            return None

        if choice_type == "auto":
            return {"functionCallingConfig": {"mode": "auto"}}
        if choice_type == "any":
            return {"functionCallingConfig": {"mode": "any", "allowedFunctionNames": list(function_names)}}
        if choice_type == "tool" and isinstance(tool_choice, dict) and tool_choice.get("name"):
            return {"functionCallingConfig": {"mode": "any", "allowedFunctionNames": [tool_choice["name"]]}}
        if choice_type == "none":
            return {"functionCallingConfig": {"mode": "none"}}
        return None

    def _build_generation_config(self, request: UnifiedChatRequest, target_model: str) -> Dict[str, Any]:
        config: Dict[str, Any] = {}
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.top_p is not None:
            config["topP"] = request.top_p
        if request.top_k is not None:
            config["topK"] = request.top_k
        if request.max_tokens is not None:
            config["maxOutputTokens"] = request.max_tokens
        if request.stop_sequences:
            config["stopSequences"] = request.stop_sequences

        thinking_config = self._build_thinking_config(request, target_model)
        if thinking_config:
            config["thinkingConfig"] = thinking_config
        return config

    def _build_thinking_config(self, request: UnifiedChatRequest, target_model: str) -> Optional[Dict[str, Any]]:
        capability = self.relay_config.capability_for(target_model)
        if capability is None or capability.thinking_style is None:
            return None
        if not (request.has_thinking_directive or capability.requires_thinking):
            return None

        thinking_config: Dict[str, Any] = {"includeThoughts": True}
        budget = request.thinking_budget_tokens
        effort = (request.reasoning_effort or "").lower()

        if capability.thinking_style == THINKING_STYLE_LEVEL:
            level = None
            if effort.upper() in THINKING_LEVELS:
                level = effort.upper()
            elif budget is not None:
                if budget <= 1024:
                    level = "LOW"
                elif budget <= 8192:
                    level = "MEDIUM"
                else:
                    level = "HIGH"
            if level:
                thinking_config["thinkingLevel"] = level

        elif capability.thinking_style == THINKING_STYLE_BUDGET:
            if budget is not None:
                thinking_config["thinkingBudget"] = min(budget, MAX_THINKING_BUDGET)
            elif effort in EFFORT_BUDGETS:
                thinking_config["thinkingBudget"] = EFFORT_BUDGETS[effort]
            else:
                # -1: 由模型自行决定预算
                thinking_config["thinkingBudget"] = -1

        return thinking_config

    # ------------------------------------------------------------------
    # 响应转换（非流式）
    # ------------------------------------------------------------------

    def convert_response(self, data: Any, original_model: str) -> ConversionResult:
        """转换 Gemini 响应到 Claude 响应；无法解释的负载记录原文后返回失败"""
        try:
            return ConversionResult(success=True, data=self.build_response(data, original_model))
        except UpstreamShapeError as e:
            log_structured_error(
                self.logger,
                error_type=ERROR_TYPE_CONVERSION,
                exc=e,
                response_body=e.payload,
                extra={"direction": "response", "model": original_model},
            )
            return ConversionResult(success=False, error=str(e))

    def build_response(self, data: Any, original_model: str) -> Dict[str, Any]:
        payload = unwrap_response_envelope(data)
        candidate = first_candidate(payload)

        if candidate is None:
            candidate = blocked_prompt_candidate(payload)
            if candidate is None:
                self.logger.warning(f"Empty candidates in Gemini response: {str(payload)[:500]}")
                candidate = {"content": {"parts": [{"text": ""}]}, "finishReason": "STOP"}

        content_blocks: List[Dict[str, Any]] = []
        content = candidate.get("content") or {}
        parts = (content.get("parts") or []) if isinstance(content, dict) else []

        for part in parts:
            if not isinstance(part, dict):
                continue
            signature = part_signature(part)
            text = part.get("text")
            is_thought = part.get("thought") is True or bool(signature and text)

            if is_thought and text:
                block: Dict[str, Any] = {"type": "thinking", "thinking": text}
                if signature:
                    block["signature"] = signature
                content_blocks.append(block)
            elif text:
                content_blocks.append({"type": "text", "text": text})
            elif isinstance(part.get("functionCall"), dict):
                function_call = part["functionCall"]
                content_blocks.append({
                    "type": "tool_use",
                    "id": new_tool_use_id(),
                    "name": function_call.get("name", ""),
                    "input": function_call.get("args") or {},
                })

        finish_reason = candidate.get("finishReason")
        stop_reason, stop_sequence = map_finish_reason(finish_reason)
        if not content_blocks:
            if finish_reason == "SAFETY":
                content_blocks.append({"type": "text", "text": SAFETY_BLOCKED_TEXT})
            elif finish_reason == "RECITATION":
                content_blocks.append({"type": "text", "text": RECITATION_BLOCKED_TEXT})

        if any(block["type"] == "tool_use" for block in content_blocks):
            stop_reason = "tool_use"

        return {
            "id": new_message_id(),
            "type": "message",
            "role": "assistant",
            "model": original_model,
            "content": content_blocks,
            "stop_reason": stop_reason,
            "stop_sequence": stop_sequence,
            "usage": UnifiedUsage.from_gemini(payload.get("usageMetadata")).to_anthropic(),
        }


def sanitize_for_api_key(body: Dict[str, Any]) -> Dict[str, Any]:
    """公网 API（API Key 账户）不接受 functionResponse.id，返回去掉 id 的副本"""
    if not isinstance(body, dict) or not isinstance(body.get("contents"), list):
        return body
    cleaned = json.loads(json.dumps(body))
    for content in cleaned["contents"]:
        for part in content.get("parts") or []:
            function_response = part.get("functionResponse")
            if isinstance(function_response, dict):
                function_response.pop("id", None)
                if isinstance(function_response.get("response"), dict):
                    function_response["response"].pop("id", None)
    return cleaned
