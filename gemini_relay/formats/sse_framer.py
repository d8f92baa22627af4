"""
SSE 分帧
把上游的字节流切成 JSON 事件：处理任意位置的读取边界（包括多字节字符中间）、
跨读取的残余片段、[DONE] 结束标记以及无法解析的 JSON。
"""
import codecs
import json
from typing import Any, AsyncIterator, Dict, List, Union

from gemini_relay.utils.logger import setup_logger

logger = setup_logger("converter.sse_framer")

DONE_SENTINEL = "[DONE]"
EVENT_DELIMITER = "\n\n"


class SSEFramer:
    """增量分帧器：feed() 每次读取，close() 在输入结束时冲刷"""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: Union[bytes, str]) -> List[Dict[str, Any]]:
        if isinstance(data, (bytes, bytearray)):
            text = self._decoder.decode(bytes(data))
        else:
            text = data
        # CRLF 统一成 LF，分隔符才能匹配
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        events: List[Dict[str, Any]] = []
        while EVENT_DELIMITER in self._buffer:
            raw_event, self._buffer = self._buffer.split(EVENT_DELIMITER, 1)
            events.extend(self._parse_event(raw_event))
        return events

    def close(self) -> List[Dict[str, Any]]:
        tail = self._decoder.decode(b"", final=True)
        remaining = (self._buffer + tail).replace("\r\n", "\n")
        self._buffer = ""
        events: List[Dict[str, Any]] = []
        for raw_event in remaining.split(EVENT_DELIMITER):
            events.extend(self._parse_event(raw_event))
        return events

    @staticmethod
    def _parse_event(raw_event: str) -> List[Dict[str, Any]]:
        # 同一事件的多行 data: 按 SSE 规则以换行拼接后再解析
        data_lines = []
        for line in raw_event.split("\n"):
            line = line.strip()
            if line.startswith("data:"):
                data_lines.append(line[5:].strip())
        payload = "\n".join(data_lines).strip()
        if not payload or payload == DONE_SENTINEL:
            return []
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping malformed SSE payload: {e}; data={payload[:200]}")
            return []
        if not isinstance(parsed, dict):
            logger.warning(f"Dropping non-object SSE payload: {payload[:200]}")
            return []
        return [parsed]


async def iter_sse_json(byte_stream: AsyncIterator[bytes]) -> AsyncIterator[Dict[str, Any]]:
    """逐个产出上游 SSE 流中的 JSON 事件（一次性，绑定一条连接）"""
    framer = SSEFramer()
    async for chunk in byte_stream:
        for event in framer.feed(chunk):
            yield event
    for event in framer.close():
        yield event

