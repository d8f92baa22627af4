"""Unit tests for the streaming Gemini -> Claude block state machine.

Each test feeds chunks one at a time, the way the relay does for every
upstream SSE event, and inspects the emitted Claude events.
"""

import base64

import pytest

from gemini_relay.formats.claude_to_gemini import SAFETY_BLOCKED_TEXT
from gemini_relay.formats.stream_reconstructor import (
    PLACEHOLDER_TEXT,
    PLACEHOLDER_THINKING,
    StreamReconstructor,
    synthesize_signature,
)
from gemini_relay.formats.unified import StreamState, UpstreamShapeError


@pytest.fixture
def reconstructor():
    return StreamReconstructor()


def chunk(parts=None, finish_reason=None, usage=None, grounding=None):
    candidate = {"content": {"role": "model", "parts": parts or []}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    if grounding:
        candidate["groundingMetadata"] = grounding
    payload = {"candidates": [candidate]}
    if usage:
        payload["usageMetadata"] = usage
    return payload


def feed(reconstructor, *chunks):
    state = StreamState()
    events = []
    for item in chunks:
        events.extend(reconstructor.convert_chunk(item, state))
    return events, state


def describe(events):
    """Compact (type, block/delta kind) view of an event list."""
    out = []
    for event in events:
        if event["type"] == "content_block_start":
            out.append(("start", event["content_block"]["type"], event["index"]))
        elif event["type"] == "content_block_delta":
            out.append(("delta", event["delta"]["type"], event["index"]))
        elif event["type"] == "content_block_stop":
            out.append(("stop", event["index"]))
        else:
            out.append((event["type"],))
    return out


class TestToolUseStream:
    """Function calls in the stream."""

    def test_function_call_then_finish(self, reconstructor):
        """A lone function call closes with tool_use and no placeholder text."""
        events, _ = feed(
            reconstructor,
            chunk([{"functionCall": {"name": "get_weather", "args": {"city": "Paris"}}}]),
            chunk([], finish_reason="STOP", usage={"candidatesTokenCount": 7}),
        )
        assert describe(events) == [
            ("start", "tool_use", 0),
            ("delta", "input_json_delta", 0),
            ("stop", 0),
            ("message_delta",),
            ("message_stop",),
        ]
        assert events[0]["content_block"]["name"] == "get_weather"
        assert events[0]["content_block"]["id"].startswith("toolu_")
        assert events[1]["delta"]["partial_json"] == '{"city": "Paris"}'
        assert events[3]["delta"] == {"stop_reason": "tool_use", "stop_sequence": None}
        assert events[3]["usage"] == {"output_tokens": 7}

    def test_text_then_function_call(self, reconstructor):
        """The open text block is closed before the tool block opens."""
        events, _ = feed(
            reconstructor,
            chunk([{"text": "Checking"}, {"functionCall": {"name": "f", "args": {}}}], finish_reason="STOP"),
        )
        assert describe(events)[:5] == [
            ("start", "text", 0),
            ("delta", "text_delta", 0),
            ("stop", 0),
            ("start", "tool_use", 1),
            ("delta", "input_json_delta", 1),
        ]
        assert events[-2]["delta"]["stop_reason"] == "tool_use"


class TestThinkingStream:
    """Thinking blocks, signatures and buffered text."""

    def test_thinking_signature_then_text(self, reconstructor):
        """A signature closes thinking and the following text opens a new block."""
        events, _ = feed(
            reconstructor,
            chunk([{"text": "Let me think", "thought": True}]),
            chunk([{"text": "Answer", "thoughtSignature": "sig-abc"}]),
            chunk([], finish_reason="STOP"),
        )
        assert describe(events) == [
            ("start", "thinking", 0),
            ("delta", "thinking_delta", 0),
            ("delta", "signature_delta", 0),
            ("stop", 0),
            ("start", "text", 1),
            ("delta", "text_delta", 1),
            ("stop", 1),
            ("message_delta",),
            ("message_stop",),
        ]
        assert events[2]["delta"]["signature"] == "sig-abc"
        assert events[5]["delta"]["text"] == "Answer"

    def test_text_buffered_behind_unsigned_thinking(self, reconstructor):
        """Text never lands inside a thinking block; it flushes left-trimmed at chunk end."""
        events, state = feed(
            reconstructor,
            chunk([{"text": "pondering", "thought": True}, {"text": "\n\nHello"}]),
        )
        assert describe(events) == [
            ("start", "thinking", 0),
            ("delta", "thinking_delta", 0),
            ("delta", "signature_delta", 0),
            ("stop", 0),
            ("start", "text", 1),
            ("delta", "text_delta", 1),
        ]
        assert events[5]["delta"]["text"] == "Hello"
        assert state.buffered_trailing_text == ""
        assert state.signature_already_sent is True

    def test_buffer_flushed_by_real_signature_in_same_chunk(self, reconstructor):
        """A signature later in the chunk signs the block before the buffered text."""
        events, _ = feed(
            reconstructor,
            chunk([
                {"text": "pondering", "thought": True},
                {"text": "Hello"},
                {"text": " world", "thoughtSignature": "real-sig"},
            ]),
        )
        signatures = [e["delta"]["signature"] for e in events if e.get("delta", {}).get("type") == "signature_delta"]
        texts = [e["delta"]["text"] for e in events if e.get("delta", {}).get("type") == "text_delta"]
        assert signatures == ["real-sig"]
        assert texts == ["Hello", " world"]

    def test_duplicate_signature_ignored(self, reconstructor):
        """A signature repeated on a later part is not emitted twice."""
        events, _ = feed(
            reconstructor,
            chunk([{"text": "t", "thought": True}, {"text": "", "thoughtSignature": "sig-1"}]),
            chunk([{"text": "a", "thoughtSignature": "sig-1"}]),
            chunk([{"text": "b", "thoughtSignature": "sig-2"}], finish_reason="STOP"),
        )
        signature_deltas = [e for e in events if e.get("delta", {}).get("type") == "signature_delta"]
        assert len(signature_deltas) == 1
        assert signature_deltas[0]["delta"]["signature"] == "sig-1"

    def test_signature_before_any_content_gets_placeholder_thinking(self, reconstructor):
        """A signed block cannot be visually empty."""
        events, _ = feed(reconstructor, chunk([{"text": "", "thoughtSignature": "s"}]))
        assert describe(events) == [
            ("start", "thinking", 0),
            ("delta", "thinking_delta", 0),
            ("delta", "signature_delta", 0),
            ("stop", 0),
        ]
        assert events[1]["delta"]["thinking"] == PLACEHOLDER_THINKING

    def test_thinking_only_gets_visible_placeholder(self, reconstructor):
        """Thinking with no text or tool use ends with a placeholder text block."""
        events, _ = feed(reconstructor, chunk([{"text": "hmm", "thought": True}], finish_reason="STOP"))
        assert describe(events) == [
            ("start", "thinking", 0),
            ("delta", "thinking_delta", 0),
            ("delta", "signature_delta", 0),
            ("stop", 0),
            ("start", "text", 1),
            ("delta", "text_delta", 1),
            ("stop", 1),
            ("message_delta",),
            ("message_stop",),
        ]
        assert events[5]["delta"]["text"] == PLACEHOLDER_TEXT
        assert events[7]["delta"]["stop_reason"] == "end_turn"

    def test_late_thought_degrades_to_text(self, reconstructor):
        """Thought fragments after text continue the text block instead of vanishing."""
        events, _ = feed(
            reconstructor,
            chunk([{"text": "Answer"}]),
            chunk([{"text": "afterthought", "thought": True}]),
        )
        assert describe(events) == [
            ("start", "text", 0),
            ("delta", "text_delta", 0),
            ("delta", "text_delta", 0),
        ]
        assert events[2]["delta"]["text"] == "\nafterthought"

    def test_synthesized_signature_format(self):
        """Synthesized signatures decode to the auto_gemini2 marker."""
        decoded = base64.b64decode(synthesize_signature()).decode("utf-8")
        assert decoded.startswith("auto_gemini2_")
        assert decoded[len("auto_gemini2_"):].isdigit()


class TestGrounding:
    """Search citations."""

    GROUNDING = {
        "groundingChunks": [
            {"web": {"uri": "https://a.example", "title": "A"}},
            {"web": {"uri": "https://b.example"}},
            {"retrievedContext": {}},
        ],
    }

    def test_grounding_emitted_once_per_chunk(self, reconstructor):
        """Multi-part chunks emit the citation block only once."""
        events, _ = feed(
            reconstructor,
            chunk([{"text": "a"}, {"text": "b"}, {"text": "c"}], finish_reason="STOP", grounding=self.GROUNDING),
        )
        starts = [e for e in events if e["type"] == "content_block_start"]
        search_blocks = [e for e in starts if e["content_block"]["type"] == "web_search_tool_result"]
        assert len(search_blocks) == 1
        block = search_blocks[0]["content_block"]
        assert block["tool_use_id"].startswith("srvtoolu_")
        assert block["content"] == [
            {"type": "web_search_result", "title": "A", "url": "https://a.example"},
            {"type": "web_search_result", "title": "https://b.example", "url": "https://b.example"},
        ]
        assert describe(events)[4:7] == [
            ("stop", 0),
            ("start", "web_search_tool_result", 1),
            ("stop", 1),
        ]

    def test_grounding_on_terminal_chunk_without_parts(self, reconstructor):
        """Citations attached to an empty final chunk are still emitted."""
        events, _ = feed(
            reconstructor,
            chunk([{"text": "answer"}]),
            chunk([], finish_reason="STOP", grounding=self.GROUNDING),
        )
        assert describe(events) == [
            ("start", "text", 0),
            ("delta", "text_delta", 0),
            ("stop", 0),
            ("start", "web_search_tool_result", 1),
            ("stop", 1),
            ("message_delta",),
            ("message_stop",),
        ]
        assert events[-2]["delta"]["stop_reason"] == "end_turn"


class TestTermination:
    """Finish handling."""

    def test_single_message_stop(self, reconstructor):
        """One terminal chunk produces exactly one message_stop."""
        events, _ = feed(reconstructor, chunk([{"text": "done"}], finish_reason="STOP"))
        assert [e["type"] for e in events].count("message_stop") == 1

    def test_safety_finish_without_content(self, reconstructor):
        """A blocked stream still shows a marker and reports the stop sequence."""
        events, _ = feed(reconstructor, chunk([], finish_reason="SAFETY"))
        assert events[1]["delta"]["text"] == SAFETY_BLOCKED_TEXT
        assert events[-2]["delta"] == {"stop_reason": "stop_sequence", "stop_sequence": "SAFETY"}

    def test_max_tokens_finish(self, reconstructor):
        """MAX_TOKENS maps to max_tokens."""
        events, _ = feed(reconstructor, chunk([{"text": "cut"}], finish_reason="MAX_TOKENS"))
        assert events[-2]["delta"]["stop_reason"] == "max_tokens"

    def test_close_stream_without_finish_reason(self, reconstructor):
        """Ending without a finish reason closes the open block as end_turn."""
        events, state = feed(reconstructor, chunk([{"text": "partial"}]))
        closing = reconstructor.close_stream(state, {"candidatesTokenCount": 2})
        assert describe(closing) == [("stop", 0), ("message_delta",), ("message_stop",)]
        assert closing[1]["delta"]["stop_reason"] == "end_turn"
        assert closing[1]["usage"]["output_tokens"] == 2

    def test_envelope_chunk_unwrapped(self, reconstructor):
        """OAuth chunks nested under "response" are handled."""
        events, _ = feed(reconstructor, {"response": chunk([{"text": "hi"}])})
        assert describe(events) == [("start", "text", 0), ("delta", "text_delta", 0)]

    def test_chunk_without_candidates_emits_nothing(self, reconstructor):
        """Usage-only chunks are ignored."""
        events, _ = feed(reconstructor, {"usageMetadata": {"promptTokenCount": 3}})
        assert events == []

    def test_blocked_prompt_chunk(self, reconstructor):
        """A prompt blocked before any candidate reports the reason and stops."""
        state = StreamState()
        events = reconstructor.convert_chunk({"promptFeedback": {"blockReason": "SAFETY"}}, state)
        assert describe(events) == [
            ("start", "text", 0),
            ("delta", "text_delta", 0),
            ("stop", 0),
            ("message_delta",),
            ("message_stop",),
        ]
        assert events[1]["delta"]["text"] == "[Request blocked by Gemini: SAFETY]"
        assert events[-2]["delta"] == {"stop_reason": "stop_sequence", "stop_sequence": "SAFETY"}

    def test_uninterpretable_chunk_raises(self, reconstructor):
        """A chunk that is not an object is fatal."""
        with pytest.raises(UpstreamShapeError):
            reconstructor.convert_chunk([1, 2], StreamState())
