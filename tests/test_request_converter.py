"""Unit tests for Claude -> Gemini request conversion.

Covers turn merging, signature placement, tool declarations, tool choice,
generation parameters and thinking configuration.
"""

import pytest

from gemini_relay.core.relay_config import RelayConfig
from gemini_relay.core.user_config import SystemPromptConfig
from gemini_relay.formats.claude_to_gemini import (
    SAFETY_SETTINGS,
    ClaudeToGeminiConverter,
    sanitize_for_api_key,
)


@pytest.fixture
def converter():
    return ClaudeToGeminiConverter(RelayConfig())


def convert(converter, body, system_prompt=None, target_model="gemini-2.0-flash"):
    result = converter.convert_request(body, system_prompt, target_model)
    assert result.success, result.error
    return result.data


class TestBasicConversion:
    """Minimal request shape."""

    def test_simple_user_message(self, converter):
        """A single string message becomes one user turn with no tools or thinking."""
        body = convert(converter, {
            "model": "claude-sonnet-4",
            "messages": [{"role": "user", "content": "Hi"}],
            "max_tokens": 100,
        })
        assert body["contents"] == [{"role": "user", "parts": [{"text": "Hi"}]}]
        assert "tools" not in body
        assert "toolConfig" not in body
        assert "systemInstruction" not in body
        assert "thinkingConfig" not in body["generationConfig"]
        assert body["generationConfig"]["maxOutputTokens"] == 100
        assert body["safetySettings"] == SAFETY_SETTINGS

    def test_generation_parameters_copied(self, converter):
        """Sampling knobs are renamed into generationConfig."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "max_tokens": 10,
            "temperature": 0.2,
            "top_p": 0.9,
            "top_k": 40,
            "stop_sequences": ["END"],
        })
        assert body["generationConfig"] == {
            "temperature": 0.2,
            "topP": 0.9,
            "topK": 40,
            "maxOutputTokens": 10,
            "stopSequences": ["END"],
        }

    def test_empty_stop_sequences_not_sent(self, converter):
        """An empty stop list is omitted."""
        body = convert(converter, {"messages": [{"role": "user", "content": "Hi"}], "stop_sequences": []})
        assert "stopSequences" not in body["generationConfig"]


class TestTurnMerging:
    """Role mapping and same-role merging."""

    def test_consecutive_same_role_merged_in_order(self, converter):
        """Adjacent user turns collapse into one entry, parts in original order."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "one"},
                {"role": "user", "content": [{"type": "text", "text": "two"}, {"type": "text", "text": "three"}]},
                {"role": "assistant", "content": "four"},
                {"role": "assistant", "content": "five"},
            ],
        })
        assert body["contents"] == [
            {"role": "user", "parts": [{"text": "one"}, {"text": "two"}, {"text": "three"}]},
            {"role": "model", "parts": [{"text": "four"}, {"text": "five"}]},
        ]

    def test_empty_turn_gets_placeholder_part(self, converter):
        """A turn whose blocks all drop out still carries one part."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [{"type": "thinking", "thinking": "hmm"}]},
            ],
        })
        assert body["contents"][1] == {"role": "model", "parts": [{"text": ""}]}

    def test_media_blocks_become_inline_data(self, converter):
        """Images and documents are passed through as inline data."""
        body = convert(converter, {
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAA"}},
                    {"type": "document", "source": {"type": "base64", "media_type": "application/pdf", "data": "BBB"}},
                ],
            }],
        })
        assert body["contents"][0]["parts"] == [
            {"inlineData": {"mimeType": "image/png", "data": "AAA"}},
            {"inlineData": {"mimeType": "application/pdf", "data": "BBB"}},
        ]


class TestSignatures:
    """Thinking signature placement inside one message."""

    def test_thinking_block_not_emitted_signature_on_next_text(self, converter):
        """Thinking text never appears; its signature rides on the next text part."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [
                    {"type": "thinking", "thinking": "secret reasoning", "signature": "sig-1"},
                    {"type": "text", "text": "Answer"},
                    {"type": "text", "text": "More"},
                ]},
            ],
        })
        parts = body["contents"][1]["parts"]
        assert parts == [{"text": "Answer", "thoughtSignature": "sig-1"}, {"text": "More"}]
        assert all("secret reasoning" not in str(p) for p in parts)

    def test_tool_use_consumes_pending_signature(self, converter):
        """A function call after a signed thinking block carries that signature."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [
                    {"type": "thinking", "thinking": "x", "signature": "sig-2"},
                    {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": "a"}},
                ]},
            ],
        })
        assert body["contents"][1]["parts"] == [
            {"functionCall": {"name": "lookup", "args": {"q": "a"}}, "thoughtSignature": "sig-2"},
        ]

    def test_tool_use_without_signature_gets_empty_string(self, converter):
        """Function calls always carry the signature field."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {}},
                    {"type": "tool_use", "id": "toolu_2", "name": "lookup", "input": {}},
                ]},
            ],
        })
        parts = body["contents"][1]["parts"]
        assert [p["thoughtSignature"] for p in parts] == ["", ""]

    def test_signature_does_not_cross_messages(self, converter):
        """A pending signature is dropped at the end of its message."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [{"type": "thinking", "thinking": "x", "signature": "sig-3"}]},
                {"role": "user", "content": "next"},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "toolu_9", "name": "f", "input": {}},
                ]},
            ],
        })
        assert body["contents"][3]["parts"][0]["thoughtSignature"] == ""
        assert "sig-3" not in str(body["contents"])

    def test_echoed_tool_use_signature_used_when_nothing_pending(self, converter):
        """A signature carried on the tool_use block itself is kept."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "toolu_1", "name": "f", "input": {}, "signature": "own"},
                ]},
            ],
        })
        assert body["contents"][1]["parts"][0]["thoughtSignature"] == "own"


class TestToolResults:
    """tool_result -> functionResponse."""

    def test_tool_result_name_resolved_from_prior_turn(self, converter):
        """The function name comes from the matching tool_use id."""
        body = convert(converter, {
            "messages": [
                {"role": "user", "content": "weather?"},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "toolu_a", "name": "get_weather", "input": {"city": "Paris"}},
                ]},
                {"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_a",
                     "content": [{"type": "text", "text": "sunny"}, {"type": "text", "text": "22C"}]},
                ]},
            ],
        })
        assert body["contents"][2]["parts"] == [
            {"functionResponse": {"name": "get_weather", "response": {"result": "sunny\n22C"}}},
        ]

    def test_unknown_tool_result_id(self, converter):
        """An unresolvable id maps to unknown_tool instead of failing."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_missing", "content": "x", "is_error": True},
            ]}],
        })
        assert body["contents"][0]["parts"] == [
            {"functionResponse": {"name": "unknown_tool", "response": {"error": "x"}}},
        ]

    def test_api_key_sanitize_strips_function_response_id(self):
        """Public API bodies drop functionResponse ids without touching the original."""
        body = {"contents": [{"role": "user", "parts": [
            {"functionResponse": {"id": "call-1", "name": "f", "response": {"id": "r", "result": "ok"}}},
        ]}]}
        cleaned = sanitize_for_api_key(body)
        assert cleaned["contents"][0]["parts"][0]["functionResponse"] == {"name": "f", "response": {"result": "ok"}}
        assert body["contents"][0]["parts"][0]["functionResponse"]["id"] == "call-1"


class TestTools:
    """Tool declarations and tool choice."""

    TOOLS = [
        {"name": "lookup", "description": "Find things",
         "input_schema": {"type": "object", "properties": {"q": {"type": "string"}}, "additionalProperties": False}},
        {"name": "calc", "input_schema": {"type": "object"}},
        {"type": "web_search_20250305", "name": "web_search"},
    ]

    def test_function_declarations_and_search(self, converter):
        """Ordinary tools form one declaration group; web search becomes googleSearch."""
        body = convert(converter, {"messages": [{"role": "user", "content": "Hi"}], "tools": self.TOOLS})
        assert body["tools"] == [
            {"functionDeclarations": [
                {"name": "lookup", "description": "Find things",
                 "parametersJsonSchema": {"type": "OBJECT", "properties": {"q": {"type": "STRING"}}}},
                {"name": "calc", "parametersJsonSchema": {"type": "OBJECT"}},
            ]},
            {"googleSearch": {}},
        ]
        assert "toolConfig" not in body

    @pytest.mark.parametrize("choice,expected", [
        ({"type": "auto"}, {"mode": "auto"}),
        ({"type": "any"}, {"mode": "any", "allowedFunctionNames": ["lookup", "calc"]}),
        ({"type": "tool", "name": "calc"}, {"mode": "any", "allowedFunctionNames": ["calc"]}),
        ({"type": "none"}, {"mode": "none"}),
    ])
    def test_tool_choice_modes(self, converter, choice, expected):
        """Each tool_choice variant maps to a functionCallingConfig."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "tools": self.TOOLS,
            "tool_choice": choice,
        })
        assert body["toolConfig"] == {"functionCallingConfig": expected}

    @pytest.mark.parametrize("tools", [[], [{"type": "web_search_20250305", "name": "web_search"}]])
    @pytest.mark.parametrize("choice", [{"type": "any"}, {"type": "auto"}, {"type": "tool", "name": "calc"}])
    def test_tool_choice_without_functions_omitted(self, converter, tools, choice):
        """Without declared functions there is nothing to restrict calling to."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "tools": tools,
            "tool_choice": choice,
        })
        assert "toolConfig" not in body

    def test_tool_choice_none_kept_without_functions(self, converter):
        """Disabling calls is still forwarded when no functions are declared."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "tool_choice": {"type": "none"},
        })
        assert body["toolConfig"] == {"functionCallingConfig": {"mode": "none"}}


class TestSystemInstruction:
    """System prompt flattening and override splicing."""

    def test_list_system_joined(self, converter):
        """List-form system blocks join with newlines."""
        body = convert(converter, {
            "system": [{"type": "text", "text": "A"}, {"type": "text", "text": "B"}],
            "messages": [{"role": "user", "content": "Hi"}],
        })
        assert body["systemInstruction"] == {"parts": [{"text": "A\nB"}]}

    def test_override_appended_by_default(self, converter):
        """Without a position the override goes last, separated by a blank line."""
        body = convert(
            converter,
            {"system": "base", "messages": [{"role": "user", "content": "Hi"}]},
            SystemPromptConfig(prompt="extra"),
        )
        assert body["systemInstruction"]["parts"][0]["text"] == "base\n\nextra"

    def test_override_prepended(self, converter):
        """prepend puts the override first."""
        body = convert(
            converter,
            {"system": "base", "messages": [{"role": "user", "content": "Hi"}]},
            {"prompt": "extra", "position": "prepend"},
        )
        assert body["systemInstruction"]["parts"][0]["text"] == "extra\n\nbase"

    def test_override_alone(self, converter):
        """With no request system text the override stands alone."""
        body = convert(converter, {"messages": [{"role": "user", "content": "Hi"}]}, "only")
        assert body["systemInstruction"]["parts"][0]["text"] == "only"


class TestThinkingConfig:
    """Capability-driven thinkingConfig."""

    def test_level_family_from_budget(self, converter):
        """Level-style models bucket the budget."""
        for budget, level in ((1024, "LOW"), (8192, "MEDIUM"), (20000, "HIGH")):
            body = convert(converter, {
                "messages": [{"role": "user", "content": "Hi"}],
                "thinking": {"type": "enabled", "budget_tokens": budget},
            }, target_model="gemini-3-pro-preview")
            assert body["generationConfig"]["thinkingConfig"] == {"includeThoughts": True, "thinkingLevel": level}

    def test_level_family_from_effort(self, converter):
        """An effort label maps straight to a level."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "reasoning": {"effort": "medium"},
        }, target_model="gemini-3-pro-preview")
        assert body["generationConfig"]["thinkingConfig"]["thinkingLevel"] == "MEDIUM"

    def test_level_family_without_directive(self, converter):
        """Level-style models do not mandate thinking."""
        body = convert(converter, {"messages": [{"role": "user", "content": "Hi"}]},
                       target_model="gemini-3-pro-preview")
        assert "thinkingConfig" not in body["generationConfig"]

    def test_budget_family_capped(self, converter):
        """Budget-style models cap the budget at 32768."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "thinking": {"type": "enabled", "budget_tokens": 50000},
        }, target_model="gemini-2.5-pro")
        assert body["generationConfig"]["thinkingConfig"] == {"includeThoughts": True, "thinkingBudget": 32768}

    def test_budget_family_mandatory_unbounded(self, converter):
        """Mandatory-thinking models get the unbounded sentinel without a directive."""
        body = convert(converter, {"messages": [{"role": "user", "content": "Hi"}]},
                       target_model="gemini-2.5-flash")
        assert body["generationConfig"]["thinkingConfig"] == {"includeThoughts": True, "thinkingBudget": -1}

    def test_budget_family_effort(self, converter):
        """Effort labels map to fixed budgets."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "reasoning": {"effort": "high"},
        }, target_model="gemini-2.5-pro")
        assert body["generationConfig"]["thinkingConfig"]["thinkingBudget"] == 24576

    def test_unsupported_family_never_gets_field(self, converter):
        """Models without thinking support ignore the directive."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "thinking": {"type": "enabled", "budget_tokens": 4096},
        }, target_model="gemini-2.0-flash")
        assert "thinkingConfig" not in body["generationConfig"]

    def test_disabled_thinking_is_not_a_directive(self, converter):
        """thinking.type=disabled without budget does not enable thinking."""
        body = convert(converter, {
            "messages": [{"role": "user", "content": "Hi"}],
            "thinking": {"type": "disabled"},
        }, target_model="gemini-3-pro-preview")
        assert "thinkingConfig" not in body["generationConfig"]
