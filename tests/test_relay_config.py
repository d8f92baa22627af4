"""Unit tests for static relay configuration, session hashing and token estimation."""

import pytest
from pydantic import ValidationError

from gemini_relay.core.relay_config import (
    THINKING_STYLE_BUDGET,
    THINKING_STYLE_LEVEL,
    ModelCapability,
    RelayConfig,
    load_relay_config,
)
from gemini_relay.utils.env_config import EnvConfig
from gemini_relay.utils.security import mask_api_key, mask_sensitive_data, mask_url
from gemini_relay.utils.session import generate_session_hash
from gemini_relay.utils.token_estimator import MULTIMODAL_TOKEN_ESTIMATE, estimate_input_tokens


class TestRelayConfig:
    """Defaults, validation and env loading."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = RelayConfig()
        assert config.max_retries == 3
        assert config.heartbeat_interval == 15.0
        assert config.sticky_ttl_seconds == 3600
        assert config.renewal_threshold_seconds == 0
        assert config.rate_limit_duration_minutes == 60

    def test_capability_lookup(self):
        """Capabilities match by prefix and ignore models/."""
        config = RelayConfig()
        assert config.capability_for("models/gemini-3-pro-preview").thinking_style == THINKING_STYLE_LEVEL
        assert config.capability_for("gemini-2.5-flash").requires_thinking is True
        assert config.capability_for("gemini-2.0-flash") is None

    def test_longest_prefix_wins(self):
        """A more specific prefix overrides a broader one."""
        config = RelayConfig(model_capabilities=[
            ModelCapability("gemini-2.5", THINKING_STYLE_BUDGET, requires_thinking=True),
            ModelCapability("gemini-2.5-flash-lite", THINKING_STYLE_BUDGET, requires_thinking=False),
        ])
        assert config.capability_for("gemini-2.5-flash-lite-001").requires_thinking is False

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": 0},
        {"heartbeat_interval": 0},
        {"sticky_ttl_hours": -1},
        {"renewal_threshold_minutes": -5},
        {"default_gemini_model": ""},
    ])
    def test_invalid_values_rejected(self, kwargs):
        """__post_init__ validates ranges."""
        with pytest.raises(ValueError):
            RelayConfig(**kwargs)

    def test_mandatory_thinking_needs_style(self):
        """A capability cannot require thinking without a style."""
        with pytest.raises(ValueError):
            ModelCapability("gemini-x", None, requires_thinking=True)

    def test_dict_round_trip(self):
        """to_dict/from_dict preserve the config."""
        config = RelayConfig(model_mapping={"claude-sonnet-4": "gemini-2.5-pro"}, max_retries=5)
        assert RelayConfig.from_dict(config.to_dict()) == config

    def test_load_from_env(self, monkeypatch):
        """Environment variables, including JSON tables, are honoured."""
        monkeypatch.setenv("GEMINI_DEFAULT_MODEL", "gemini-2.5-flash")
        monkeypatch.setenv("RELAY_MAX_RETRIES", "2")
        monkeypatch.setenv("GEMINI_MODEL_MAPPING", '{"claude-haiku": "gemini-2.0-flash"}')
        monkeypatch.setenv("STICKY_SESSION_TTL_HOURS", "2")
        config = load_relay_config()
        assert config.default_gemini_model == "gemini-2.5-flash"
        assert config.max_retries == 2
        assert config.model_mapping == {"claude-haiku": "gemini-2.0-flash"}
        assert config.sticky_ttl_seconds == 7200

    def test_bad_json_env_rejected(self, monkeypatch):
        """Malformed JSON tables fail loudly instead of being ignored."""
        monkeypatch.setenv("GEMINI_MODEL_MAPPING", "{broken")
        with pytest.raises(ValueError):
            load_relay_config()

    def test_bad_number_env_rejected(self, monkeypatch):
        """Non-numeric values are validation errors, not silent defaults."""
        monkeypatch.setenv("RELAY_MAX_RETRIES", "three")
        with pytest.raises(ValueError):
            load_relay_config()

    def test_capability_table_from_env(self, monkeypatch):
        """The capability table is read as JSON."""
        monkeypatch.setenv(
            "GEMINI_MODEL_CAPABILITIES",
            '[{"prefix": "gemini-exp", "thinking_style": "level", "requires_thinking": true}]',
        )
        config = load_relay_config()
        assert config.capability_for("gemini-exp-1").requires_thinking is True
        assert config.capability_for("gemini-2.5-pro") is None

    def test_empty_env_uses_defaults(self, monkeypatch):
        """Empty variables are treated as unset."""
        monkeypatch.setenv("RELAY_MAX_RETRIES", "")
        monkeypatch.setenv("GEMINI_DEFAULT_MODEL", "")
        config = load_relay_config()
        assert config.max_retries == 3
        assert config.default_gemini_model == "gemini-2.5-pro"


class TestEnvConfig:
    """Process-level settings."""

    def test_reads_environment(self, monkeypatch):
        """Values come from the environment with type coercion."""
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("REQUEST_TIMEOUT", "30")
        config = EnvConfig()
        assert config.port == 8080
        assert config.debug is True
        assert config.log_level == "DEBUG"
        assert config.request_timeout == 30.0
        assert config.console_log_level is None

    @pytest.mark.parametrize("name, value", [
        ("PORT", "not-a-port"),
        ("LOG_LEVEL", "chatty"),
        ("REQUEST_TIMEOUT", "0"),
    ])
    def test_invalid_values_rejected(self, monkeypatch, name, value):
        """Bad values raise instead of falling back."""
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            EnvConfig()


class TestSessionHash:
    """Affinity key derivation."""

    def test_session_id_from_metadata(self):
        """A session_<uuid> in metadata.user_id determines the key."""
        body_a = {"metadata": {"user_id": "user_x_account__session_1234abcd-0000"}, "messages": [{"role": "user", "content": "a"}]}
        body_b = {"metadata": {"user_id": "other_session_1234abcd-0000"}, "messages": [{"role": "user", "content": "b"}]}
        assert generate_session_hash(body_a) == generate_session_hash(body_b)
        assert len(generate_session_hash(body_a)) == 32

    def test_falls_back_to_system_and_first_message(self):
        """Without metadata the system text and first message are hashed."""
        body = {"system": "sys", "messages": [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]}
        same = {"system": "sys", "messages": [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "x"}]}
        other = {"system": "sys", "messages": [{"role": "user", "content": "Bye"}]}
        assert generate_session_hash(body) == generate_session_hash(same)
        assert generate_session_hash(body) != generate_session_hash(other)

    def test_no_key_without_text(self):
        """Nothing to hash means no affinity."""
        assert generate_session_hash({"messages": []}) is None


class TestTokenEstimate:
    """count_tokens approximation."""

    def test_counts_text(self):
        """Text from system, messages and tools contributes tokens."""
        small = estimate_input_tokens({"messages": [{"role": "user", "content": "Hello"}]})
        large = estimate_input_tokens({
            "system": "You are a helpful assistant.",
            "messages": [{"role": "user", "content": "Hello"}],
            "tools": [{"name": "lookup", "description": "Find things", "input_schema": {"type": "object"}}],
        })
        assert small > 0
        assert large > small

    def test_multimodal_flat_cost(self):
        """Each image or document adds a flat estimate."""
        image = {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}}
        assert estimate_input_tokens({"messages": [{"role": "user", "content": [image, image]}]}) == 2 * MULTIMODAL_TOKEN_ESTIMATE

    def test_empty_request(self):
        """An empty request counts zero."""
        assert estimate_input_tokens({"messages": []}) == 0


class TestMasking:
    """Secret masking for logs."""

    def test_mask_helpers(self):
        """Keys, bearer tokens and key= query params are hidden."""
        assert mask_api_key("abcdefghijkl") == "abcd...ijkl"
        assert mask_url("https://x/models/m:generateContent?key=SECRET&alt=sse") == \
            "https://x/models/m:generateContent?key=***&alt=sse"
        masked = mask_sensitive_data({"Authorization": "Bearer abcdefghijklmnop", "nested": {"x-api-key": "abcdefghijkl"}})
        assert masked["Authorization"] == "Bearer abcd...mnop"
        assert masked["nested"]["x-api-key"] == "abcd...ijkl"
