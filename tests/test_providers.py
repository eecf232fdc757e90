"""Tests for the provider adapters: wire request shapes and text extraction."""

import pytest

from stepchain.service.errors import ConfigurationError
from stepchain.service.providers import (
    AnthropicAdapter,
    ApiDestination,
    CanonicalRequest,
    ChatMessage,
    GoogleAdapter,
    OpenAIAdapter,
    Provider,
    Role,
    extract_anthropic_delta,
    extract_google_delta,
    extract_openai_delta,
    get_adapter,
)


def _request(provider, *, instruction="Be brief.", stream=True, messages=None):
    return CanonicalRequest(
        provider=provider,
        model_id="test-model",
        messages=messages
        or [
            ChatMessage(Role.USER, "hi"),
            ChatMessage(Role.ASSISTANT, "hello"),
            ChatMessage(Role.USER, "write a haiku"),
        ],
        global_instruction=instruction,
        stream=stream,
    )


class TestProviderParsing:
    def test_parse_is_case_insensitive(self):
        assert Provider.parse("openai") is Provider.OPENAI
        assert Provider.parse("GOOGLE") is Provider.GOOGLE
        assert Provider.parse("Anthropic") is Provider.ANTHROPIC

    def test_unknown_provider_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            Provider.parse("Mistral")

    def test_get_adapter_rejects_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            get_adapter("cohere")

    def test_key_name_matches_settings_naming(self):
        assert Provider.GOOGLE.key_name == "google_api_key"


class TestCanonicalRequestInvariants:
    def test_empty_messages_rejected(self):
        with pytest.raises(ConfigurationError):
            CanonicalRequest(Provider.OPENAI, "m", [])

    def test_consecutive_user_messages_rejected(self):
        with pytest.raises(ConfigurationError):
            CanonicalRequest(
                Provider.OPENAI,
                "m",
                [ChatMessage(Role.USER, "a"), ChatMessage(Role.USER, "b")],
            )

    def test_system_only_allowed_first(self):
        CanonicalRequest(
            Provider.OPENAI,
            "m",
            [ChatMessage(Role.SYSTEM, "sys"), ChatMessage(Role.USER, "a")],
        )
        with pytest.raises(ConfigurationError):
            CanonicalRequest(
                Provider.OPENAI,
                "m",
                [ChatMessage(Role.USER, "a"), ChatMessage(Role.SYSTEM, "sys")],
            )

    def test_unknown_role_rejected(self):
        with pytest.raises(ConfigurationError):
            ChatMessage.from_dict({"role": "tool", "content": "x"})

    def test_missing_destination_path_rejected(self):
        with pytest.raises(ConfigurationError, match="API configuration is missing or invalid."):
            ApiDestination(path="")


class TestOpenAIAdapter:
    def test_instruction_becomes_leading_system_message(self):
        wire = OpenAIAdapter().build_request(
            _request(Provider.OPENAI), ApiDestination("/v1/chat/completions"), "sk-1"
        )
        assert wire.url == "https://api.openai.com/v1/chat/completions"
        assert wire.headers["Authorization"] == "Bearer sk-1"
        assert wire.headers["Accept-Encoding"] == "identity"
        assert wire.body["model"] == "test-model"
        assert wire.body["stream"] is True
        assert wire.body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert [m["role"] for m in wire.body["messages"][1:]] == ["user", "assistant", "user"]

    def test_no_system_message_without_instruction(self):
        wire = OpenAIAdapter().build_request(
            _request(Provider.OPENAI, instruction=None), ApiDestination("/v1/chat/completions"), "k"
        )
        assert wire.body["messages"][0]["role"] == "user"

    def test_full_response_text(self):
        payload = {"choices": [{"message": {"content": "done"}}]}
        assert OpenAIAdapter().extract_text(payload) == "done"


class TestGoogleAdapter:
    def test_roles_are_remapped_and_instruction_is_separate(self):
        wire = GoogleAdapter().build_request(
            _request(Provider.GOOGLE),
            ApiDestination("/v1beta/models/{modelId}:streamGenerateContent"),
            "g-key",
        )
        assert wire.url == (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            "test-model:streamGenerateContent?key=g-key&alt=sse"
        )
        assert [c["role"] for c in wire.body["contents"]] == ["user", "model", "user"]
        assert wire.body["contents"][1]["parts"] == [{"text": "hello"}]
        assert wire.body["system_instruction"] == {"parts": [{"text": "Be brief."}]}
        assert "Authorization" not in wire.headers
        assert wire.headers["Accept-Encoding"] == "identity"

    def test_non_streaming_url_has_no_sse_flag(self):
        wire = GoogleAdapter().build_request(
            _request(Provider.GOOGLE, stream=False),
            ApiDestination("/v1beta/models/{modelId}:streamGenerateContent"),
            "g-key",
        )
        assert wire.url.endswith("?key=g-key")

    def test_leading_system_message_folds_into_instruction(self):
        request = _request(
            Provider.GOOGLE,
            messages=[ChatMessage(Role.SYSTEM, "House style."), ChatMessage(Role.USER, "go")],
        )
        wire = GoogleAdapter().build_request(request, ApiDestination("/x/{modelId}"), "k")
        assert wire.body["system_instruction"]["parts"][0]["text"] == "Be brief.\n\nHouse style."
        assert [c["role"] for c in wire.body["contents"]] == ["user"]

    def test_full_response_accepts_json_array(self):
        payload = [
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "lo"}]}}]},
        ]
        assert GoogleAdapter().extract_text(payload) == "Hello"


class TestAnthropicAdapter:
    def test_system_is_top_level_and_messages_verbatim(self):
        wire = AnthropicAdapter().build_request(
            _request(Provider.ANTHROPIC), ApiDestination("/v1/messages"), "sk-ant"
        )
        assert wire.headers["x-api-key"] == "sk-ant"
        assert wire.headers["anthropic-version"] == "2023-06-01"
        assert wire.headers["Accept-Encoding"] == "identity"
        assert wire.body["system"] == "Be brief."
        assert wire.body["max_tokens"] == 4096
        assert wire.body["messages"][0] == {"role": "user", "content": "hi"}
        assert all(m["role"] != "system" for m in wire.body["messages"])

    def test_custom_ceiling(self):
        adapter = AnthropicAdapter(max_tokens=1024)
        wire = adapter.build_request(_request(Provider.ANTHROPIC), ApiDestination("/v1/messages"), "k")
        assert wire.body["max_tokens"] == 1024

    def test_full_response_joins_text_blocks(self):
        payload = {"content": [{"type": "text", "text": "a"}, {"type": "tool_use"}, {"type": "text", "text": "b"}]}
        assert AnthropicAdapter().extract_text(payload) == "ab"


class TestChunkExtraction:
    @pytest.mark.parametrize(
        "adapter,event",
        [
            (OpenAIAdapter(), {"choices": [{"delta": {"content": "orbit"}}]}),
            (GoogleAdapter(), {"candidates": [{"content": {"parts": [{"text": "orbit"}]}}]}),
            (AnthropicAdapter(), {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "orbit"}}),
        ],
    )
    def test_single_chunk_yields_original_text(self, adapter, event):
        assert adapter.extract_delta(event) == "orbit"

    def test_non_content_events_return_empty(self):
        assert extract_openai_delta({"choices": [{"delta": {"tool_calls": []}}]}) == ""
        assert extract_openai_delta({"choices": []}) == ""
        assert extract_google_delta({"usageMetadata": {}}) == ""
        assert extract_anthropic_delta({"type": "ping"}) == ""
        assert extract_anthropic_delta({"type": "message_start", "delta": {"text": "x"}}) == ""
        assert extract_anthropic_delta("[DONE]") == ""
