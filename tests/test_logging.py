from stepchain.logging import (
    _attach_request_id,
    _mask_credentials,
    get_request_id,
    set_request_id,
)


class TestCredentialMasking:
    def test_credential_named_fields_keep_last_four(self):
        event = _mask_credentials(
            None,
            "info",
            {"event": "x", "openai_api_key": "sk-abcdef1234", "x-api-key": "sk-ant-9999", "tokens": 12},
        )
        assert event["openai_api_key"] == "****1234"
        assert event["x-api-key"] == "****9999"
        assert event["tokens"] == 12

    def test_google_key_scrubbed_from_urls(self):
        url = "https://generativelanguage.googleapis.com/v1beta/models/m:streamGenerateContent?key=g-secret&alt=sse"
        event = _mask_credentials(None, "info", {"event": "relay_open", "url": url})
        assert "g-secret" not in event["url"]
        assert event["url"].endswith("?key=****&alt=sse")


class TestRequestId:
    def test_generated_when_absent_and_attached(self):
        generated = set_request_id()
        assert generated and get_request_id() == generated

        set_request_id("req-1")
        assert _attach_request_id(None, "info", {"event": "x"})["request_id"] == "req-1"
