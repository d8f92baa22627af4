"""
Gemini 流式响应 -> Claude SSE 事件

每个上游事件调用一次 convert_chunk，StreamState 由调用方持有并在多次调用间传递。
message_start 由编排层发送，这里只产出内容块事件以及结尾的 message_delta / message_stop。
"""
import base64
import json
import time
import uuid
from typing import Any, Dict, List, Optional

from .base_converter import BaseConverter
from .claude_to_gemini import (
    RECITATION_BLOCKED_TEXT,
    SAFETY_BLOCKED_TEXT,
    blocked_prompt_candidate,
    first_candidate,
    map_finish_reason,
    new_tool_use_id,
    part_signature,
    unwrap_response_envelope,
)
from .unified import BlockType, StreamState, UpstreamShapeError
from .unified.stream_events import (
    StreamEvent,
    create_block_stop,
    create_input_json_delta,
    create_message_delta,
    create_message_stop,
    create_signature_delta,
    create_text_block_start,
    create_text_delta,
    create_thinking_block_start,
    create_thinking_delta,
    create_tool_use_block_start,
    create_web_search_result_block_start,
)
from gemini_relay.utils.logger import log_structured_error, ERROR_TYPE_CONVERSION

PLACEHOLDER_THINKING = "(no content)"
PLACEHOLDER_TEXT = "(no content)"


def synthesize_signature() -> str:
    """上游没有给签名时的占位签名"""
    raw = f"auto_gemini2_{int(time.time() * 1000)}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


class StreamReconstructor(BaseConverter):
    """按 part 驱动的块状态机：同一时刻最多一个打开的块"""

    def convert_chunk(self, chunk: Any, state: StreamState) -> List[StreamEvent]:
        """转换一个上游流事件

        Raises:
            UpstreamShapeError: 事件结构完全无法解释（记录原文后抛出）
        """
        try:
            payload = unwrap_response_envelope(chunk)
            candidate = first_candidate(payload)
        except UpstreamShapeError as e:
            log_structured_error(
                self.logger,
                error_type=ERROR_TYPE_CONVERSION,
                exc=e,
                response_body=e.payload,
                extra={"direction": "stream"},
            )
            raise

        events: List[StreamEvent] = []
        if candidate is None:
            candidate = blocked_prompt_candidate(payload)
            if candidate is None:
                return events
            self.logger.warning(f"Gemini blocked the prompt: {payload.get('promptFeedback')}")

        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        parts = [p for p in parts if isinstance(p, dict)] if isinstance(parts, list) else []

        last_index = len(parts) - 1
        for index, part in enumerate(parts):
            self._process_thought(part, state, events)
            self._process_signature(part, state, events)
            self._process_text(part, state, events)
            # grounding 只在本 chunk 最后一个 part 上处理一次
            if index == last_index:
                self._process_grounding(candidate, state, events)
            self._process_function_call(part, state, events)

        if not parts:
            self._process_grounding(candidate, state, events)

        # 缓冲文本最多等待一个 chunk
        if state.buffered_trailing_text:
            self._sign_thinking(state, events, synthesize_signature())

        finish_reason = candidate.get("finishReason")
        if finish_reason:
            self._finish(finish_reason, payload.get("usageMetadata"), state, events)

        return events

    def close_stream(self, state: StreamState, usage_metadata: Optional[Dict[str, Any]] = None) -> List[StreamEvent]:
        """上游没有给 finishReason 就结束时，按 STOP 收尾"""
        events: List[StreamEvent] = []
        if state.buffered_trailing_text:
            self._sign_thinking(state, events, synthesize_signature())
        self._finish("STOP", usage_metadata, state, events)
        return events

    # ------------------------------------------------------------------
    # part 处理
    # ------------------------------------------------------------------

    def _process_thought(self, part: Dict[str, Any], state: StreamState, events: List[StreamEvent]) -> None:
        text = part.get("text")
        if part.get("thought") is not True or not text:
            return

        if state.has_emitted_text:
            # 文本之后才到的思考片段降级为普通文本
            self.logger.debug("Late thought fragment after text, degrading to text delta")
            self._emit_text(state, events, "\n" + text)
            return

        if state.open_block_type != BlockType.THINKING:
            self._close_open_block(state, events)
            events.append(create_thinking_block_start(state.open_block(BlockType.THINKING)))
        events.append(create_thinking_delta(state.block_index, text))
        state.has_emitted_thinking = True
        state.has_emitted_thinking_delta = True

    def _process_signature(self, part: Dict[str, Any], state: StreamState, events: List[StreamEvent]) -> None:
        signature = part_signature(part)
        if not signature:
            return
        if state.signature_already_sent:
            self.logger.debug("Duplicate thought signature ignored")
            return
        if (
            state.open_block_type == BlockType.THINKING
            or state.has_emitted_thinking
            or not state.has_emitted_text
        ):
            self._sign_thinking(state, events, signature)

    def _process_text(self, part: Dict[str, Any], state: StreamState, events: List[StreamEvent]) -> None:
        text = part.get("text")
        if not text or part.get("thought") is True:
            return

        if state.open_block_type == BlockType.THINKING and not state.signature_already_sent:
            state.buffered_trailing_text += text
            return

        if state.thinking_unsigned:
            self._sign_thinking(state, events, synthesize_signature())

        self._emit_text(state, events, text)

    def _process_grounding(self, candidate: Dict[str, Any], state: StreamState, events: List[StreamEvent]) -> None:
        grounding = candidate.get("groundingMetadata")
        if not isinstance(grounding, dict):
            return
        chunks = grounding.get("groundingChunks")
        if not isinstance(chunks, list) or not chunks:
            return

        results = []
        for item in chunks:
            web = item.get("web") if isinstance(item, dict) else None
            if not isinstance(web, dict):
                continue
            url = web.get("uri") or ""
            results.append({
                "type": "web_search_result",
                "title": web.get("title") or url,
                "url": url,
            })
        if not results:
            return

        if state.thinking_unsigned:
            self._sign_thinking(state, events, synthesize_signature())
        self._close_open_block(state, events)

        # 自包含块：start 携带全部结果后立即 stop
        events.append(create_web_search_result_block_start(
            state.block_index, f"srvtoolu_{uuid.uuid4().hex[:8]}", results
        ))
        events.append(create_block_stop(state.close_block()))

    def _process_function_call(self, part: Dict[str, Any], state: StreamState, events: List[StreamEvent]) -> None:
        function_call = part.get("functionCall")
        if not isinstance(function_call, dict):
            return

        if state.thinking_unsigned:
            self._sign_thinking(state, events, synthesize_signature())
        self._close_open_block(state, events)

        index = state.open_block(BlockType.TOOL_USE)
        events.append(create_tool_use_block_start(index, new_tool_use_id(), function_call.get("name", "")))
        args = function_call.get("args") or {}
        events.append(create_input_json_delta(index, json.dumps(args, ensure_ascii=False)))
        events.append(create_block_stop(state.close_block()))
        state.tool_use_active = True

    # ------------------------------------------------------------------
    # 块操作
    # ------------------------------------------------------------------

    def _close_open_block(self, state: StreamState, events: List[StreamEvent]) -> None:
        if state.has_open_block:
            events.append(create_block_stop(state.close_block()))

    def _emit_text(self, state: StreamState, events: List[StreamEvent], text: str) -> None:
        if state.open_block_type != BlockType.TEXT:
            self._close_open_block(state, events)
            events.append(create_text_block_start(state.open_block(BlockType.TEXT)))
        events.append(create_text_delta(state.block_index, text))
        state.has_emitted_text = True

    def _sign_thinking(self, state: StreamState, events: List[StreamEvent], signature: str) -> None:
        """给当前思考上下文签名并关闭，随后冲刷缓冲文本"""
        if state.open_block_type != BlockType.THINKING:
            self._close_open_block(state, events)
            events.append(create_thinking_block_start(state.open_block(BlockType.THINKING)))
        if not state.has_emitted_thinking_delta:
            events.append(create_thinking_delta(state.block_index, PLACEHOLDER_THINKING))
            state.has_emitted_thinking_delta = True

        events.append(create_signature_delta(state.block_index, signature))
        state.signature_already_sent = True
        state.has_emitted_thinking = True
        events.append(create_block_stop(state.close_block()))

        buffered = state.buffered_trailing_text.lstrip()
        state.buffered_trailing_text = ""
        if buffered:
            self._emit_text(state, events, buffered)

    def _finish(
        self,
        finish_reason: str,
        usage_metadata: Optional[Dict[str, Any]],
        state: StreamState,
        events: List[StreamEvent],
    ) -> None:
        if state.thinking_unsigned:
            self._sign_thinking(state, events, synthesize_signature())
        self._close_open_block(state, events)

        stop_reason, stop_sequence = map_finish_reason(finish_reason)

        placeholder: Optional[str] = None
        if not state.has_emitted_text and not state.tool_use_active:
            if state.has_emitted_thinking:
                placeholder = PLACEHOLDER_TEXT
            elif finish_reason == "SAFETY":
                placeholder = SAFETY_BLOCKED_TEXT
            elif finish_reason == "RECITATION":
                placeholder = RECITATION_BLOCKED_TEXT
        if placeholder:
            index = state.open_block(BlockType.TEXT)
            events.append(create_text_block_start(index))
            events.append(create_text_delta(index, placeholder))
            events.append(create_block_stop(state.close_block()))
            state.has_emitted_text = True

        if state.tool_use_active:
            stop_reason, stop_sequence = "tool_use", None

        output_tokens = int((usage_metadata or {}).get("candidatesTokenCount") or 0)
        events.append(create_message_delta(stop_reason, stop_sequence, output_tokens))
        events.append(create_message_stop())
