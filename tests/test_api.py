"""HTTP surface tests through FastAPI's TestClient with a mocked upstream."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import make_template, openai_chunk, openai_message
from stepchain.app import app
from stepchain.service.runtime import get_runtime, reset_runtime_for_tests

HEADERS = {"X-User-Id": "u1", "X-Username": "ada"}


@pytest.fixture
def client(upstream):
    runtime = reset_runtime_for_tests(transport=upstream.transport)
    runtime.store.set_api_keys(
        {"openai_api_key": "sk-openai-test-1234", "anthropic_api_key": "sk-ant-test-9876"}
    )
    with TestClient(app) as test_client:
        yield test_client


def _proxy_body(**overrides):
    body = {
        "provider": "OpenAI",
        "modelId": "gpt-4o",
        "body": {
            "messages": [
                {"role": "user", "content": "first"},
                {"role": "user", "content": "second"},
            ]
        },
        "globalInstruction": "Be concise.",
        "apiConfig": {"path": "/v1/chat/completions"},
        "workflow_id": "wf-1",
        "template_name": "Blog post",
        "step_index": 0,
    }
    body.update(overrides)
    return body


def _events(text):
    return [json.loads(line[6:]) for line in text.splitlines() if line.startswith("data: ")]


def _create(client, steps=3, **config):
    response = client.post(
        "/api/workflows",
        json={"title": "Draft", "template_snapshot": make_template(step_count=steps, **config)},
        headers=HEADERS,
    )
    assert response.status_code == 201
    return response.json()["id"]


class TestIdentityAndErrors:
    def test_missing_identity_rejected(self, client):
        response = client.get("/api/workflows")
        assert response.status_code == 401
        assert response.json() == {"message": "Not authenticated."}

    def test_unknown_route_uses_message_shape(self, client):
        response = client.get("/api/nowhere", headers=HEADERS)
        assert response.status_code == 404
        assert set(response.json()) == {"message"}

    def test_validation_errors_are_400(self, client):
        response = client.post("/api/llm/proxy", json={"provider": "OpenAI"}, headers=HEADERS)
        assert response.status_code == 400
        assert "message" in response.json()

    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "MemoryStore"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestProxy:
    def test_streams_upstream_bytes(self, client, upstream):
        upstream.stream([openai_chunk("Hel"), openai_chunk("lo")])

        response = client.post("/api/llm/proxy", json=_proxy_body(), headers=HEADERS)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.content == openai_chunk("Hel") + openai_chunk("lo")
        sent = upstream.bodies[0]
        assert sent["messages"] == [
            {"role": "system", "content": "Be concise."},
            {"role": "user", "content": "first\n\nsecond"},
        ]
        record = get_runtime().store.list_interactions()[0][0]
        assert record.success is True
        assert record.username == "ada"
        assert record.step_index == 0

    def test_upstream_status_passed_through(self, client, upstream):
        upstream.stream([b'{"error":"quota"}'], status=429)

        response = client.post("/api/llm/proxy", json=_proxy_body(), headers=HEADERS)

        assert response.status_code == 429
        assert response.content == b'{"error":"quota"}'
        assert get_runtime().store.list_interactions()[0][0].error_message == "HTTP Status 429"

    def test_non_streaming_response(self, client, upstream):
        upstream.json(openai_message("full"))

        response = client.post(
            "/api/llm/proxy",
            json=_proxy_body(apiConfig={"path": "/v1/chat/completions", "stream": False}),
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["choices"][0]["message"]["content"] == "full"
        assert upstream.bodies[0]["stream"] is False

    def test_missing_api_config(self, client, upstream):
        response = client.post("/api/llm/proxy", json=_proxy_body(apiConfig=None), headers=HEADERS)
        assert response.status_code == 400
        assert response.json() == {"message": "API configuration is missing or invalid."}
        assert upstream.requests == []

    def test_missing_provider_key(self, client, upstream):
        response = client.post(
            "/api/llm/proxy",
            json=_proxy_body(provider="Google", modelId="gemini-2.5-flash",
                             apiConfig={"path": "/v1beta/models/{modelId}:streamGenerateContent"}),
            headers=HEADERS,
        )
        assert response.status_code == 400
        assert response.json() == {"message": "Google API key is not set."}
        assert upstream.requests == []
        assert get_runtime().store.list_interactions()[1] == 1

    def test_unknown_provider(self, client):
        response = client.post("/api/llm/proxy", json=_proxy_body(provider="Mistral"), headers=HEADERS)
        assert response.status_code == 400
        assert response.json() == {"message": "Unsupported provider: Mistral"}

    def test_transport_failure_is_502(self, client, upstream):
        upstream.fail()
        response = client.post("/api/llm/proxy", json=_proxy_body(), headers=HEADERS)
        assert response.status_code == 502
        assert response.json() == {"message": "LLM proxy request failed."}

    def test_models_catalog(self, client):
        catalog = client.get("/api/models", headers=HEADERS).json()
        assert set(catalog) == {"OpenAI", "Google", "Anthropic"}
        gpt5 = next(m for m in catalog["OpenAI"] if m["modelId"] == "gpt-5")
        assert gpt5["api"]["stream"] is False


class TestWorkflows:
    def test_create_get_and_list(self, client):
        workflow_id = _create(client)

        detail = client.get(f"/api/workflows/{workflow_id}", headers=HEADERS).json()
        assert detail["execution_context"]["currentStepIndex"] == 0
        assert len(detail["execution_context"]["results"]) == 3
        assert [w["id"] for w in client.get("/api/workflows", headers=HEADERS).json()] == [workflow_id]

        other = client.get(f"/api/workflows/{workflow_id}", headers={"X-User-Id": "u2"})
        assert other.status_code == 404
        assert other.json() == {"message": "Workflow not found or access denied"}

    def test_create_rejects_template_without_steps(self, client):
        response = client.post(
            "/api/workflows",
            json={"title": "x", "template_snapshot": {"name": "t", "config": {"steps": []}}},
            headers=HEADERS,
        )
        assert response.status_code == 400

    def test_bookmarks(self, client):
        workflow_id = _create(client)

        missing = client.put(f"/api/workflows/{workflow_id}/bookmark", json={}, headers=HEADERS)
        assert missing.status_code == 400
        assert missing.json() == {"message": "Bookmark title is required"}

        client.put(f"/api/workflows/{workflow_id}/bookmark", json={"bookmark_title": "Keep"}, headers=HEADERS)
        marked = client.get("/api/workflows/bookmarked", headers=HEADERS).json()
        assert [(w["id"], w["bookmark_title"]) for w in marked] == [(workflow_id, "Keep")]

        client.delete(f"/api/workflows/{workflow_id}/bookmark", headers=HEADERS)
        assert client.get("/api/workflows/bookmarked", headers=HEADERS).json() == []

    def test_export(self, client, upstream):
        workflow_id = _create(client)
        upstream.stream([openai_chunk("draft text")])
        client.post(f"/api/workflows/{workflow_id}/steps/0/generate", json={"userInput": "otters"}, headers=HEADERS)

        exported = client.get(f"/api/workflows/{workflow_id}/export", headers=HEADERS).json()

        assert exported["metadata"]["name"] == "Blog post"
        assert exported["metadata"]["originalWorkflowId"] == workflow_id
        assert "exportedAt" in exported["metadata"]
        first = exported["results"]["steps"][0]
        assert first == {
            "step": 1,
            "name": "Step 1",
            "status": "success",
            "userInput": "otters",
            "content": "draft text",
        }


class TestSteps:
    def test_generate_returns_updated_workflow(self, client, upstream):
        workflow_id = _create(client)
        upstream.stream([openai_chunk("one"), openai_chunk(" two")])

        response = client.post(
            f"/api/workflows/{workflow_id}/steps/0/generate", json={"userInput": "go"}, headers=HEADERS
        )

        assert response.status_code == 200
        context = response.json()["execution_context"]
        assert context["results"][0]["content"] == "one two"
        assert context["results"][0]["status"] == "success"
        assert context["currentStepIndex"] == 1

    def test_generate_streams_events(self, client, upstream):
        workflow_id = _create(client)
        upstream.stream([openai_chunk("a"), openai_chunk("b")])

        response = client.post(
            f"/api/workflows/{workflow_id}/steps/0/generate?stream=true", json={}, headers=HEADERS
        )

        events = _events(response.text)
        assert [e["delta"] for e in events if "delta" in e] == ["a", "b"]
        assert events[-1]["done"] is True
        assert events[-1]["result"]["content"] == "ab"
        assert events[-1]["currentStepIndex"] == 1

    def test_out_of_order_generate_conflicts(self, client):
        workflow_id = _create(client)
        response = client.post(f"/api/workflows/{workflow_id}/steps/1/generate", json={}, headers=HEADERS)
        assert response.status_code == 409

    def test_failed_step_then_retry(self, client, upstream):
        workflow_id = _create(client)
        upstream.stream([b"down"], status=500)
        failed = client.post(f"/api/workflows/{workflow_id}/steps/0/generate", json={"userInput": "x"}, headers=HEADERS)
        assert failed.json()["execution_context"]["results"][0]["status"] == "error"

        errors = client.get("/api/logs/errors", headers=HEADERS).json()
        assert errors["total"] == 1
        assert errors["logs"][0]["action_type"] == "GENERATE_STEP"

        upstream.stream([openai_chunk("fixed")])
        retried = client.post(f"/api/workflows/{workflow_id}/steps/0/retry", headers=HEADERS).json()
        assert retried["execution_context"]["results"][0]["content"] == "fixed"
        assert retried["execution_context"]["results"][0]["userInput"] == "x"

    def test_edit_cycle_and_invalidate(self, client, upstream):
        workflow_id = _create(client)
        for i in range(2):
            upstream.stream([openai_chunk(f"out {i}")])
            client.post(f"/api/workflows/{workflow_id}/steps/{i}/generate", json={}, headers=HEADERS)

        client.post(f"/api/workflows/{workflow_id}/steps/0/edit", headers=HEADERS)
        saved = client.post(
            f"/api/workflows/{workflow_id}/steps/0/edit/save", json={"content": "mine"}, headers=HEADERS
        ).json()
        results = saved["execution_context"]["results"]
        assert results[0]["content"] == "mine"
        assert results[1]["status"] == "pending"

        invalidated = client.post(f"/api/workflows/{workflow_id}/steps/0/invalidate", headers=HEADERS).json()
        assert invalidated["execution_context"]["results"][0]["status"] == "pending"
        assert invalidated["execution_context"]["currentStepIndex"] == 0

    def test_regenerate_requires_success(self, client):
        workflow_id = _create(client)
        response = client.post(f"/api/workflows/{workflow_id}/steps/0/regenerate", headers=HEADERS)
        assert response.status_code == 409


class TestLogsAndSettings:
    def test_llm_logs_paginated(self, client, upstream):
        for _ in range(3):
            upstream.json(openai_message("ok"))
            client.post(
                "/api/llm/proxy",
                json=_proxy_body(apiConfig={"path": "/v1/chat/completions", "stream": False}),
                headers=HEADERS,
            )

        page = client.get("/api/logs/llm?page=2&limit=2", headers=HEADERS).json()
        assert page["total"] == 3
        assert page["totalPages"] == 2
        assert [item["id"] for item in page["logs"]] == [1]

        detail = client.get("/api/logs/llm/1", headers=HEADERS).json()
        assert detail["is_success"] is True
        assert detail["request_payload"]["finalApiBody"]["model"] == "gpt-4o"

        missing = client.get("/api/logs/llm/99", headers=HEADERS)
        assert missing.status_code == 404
        assert missing.json() == {"message": "Log not found."}

    def test_keys_are_masked(self, client):
        keys = client.get("/api/settings/keys", headers=HEADERS).json()
        assert keys == {
            "openai_api_key": "****1234",
            "google_api_key": "",
            "anthropic_api_key": "****9876",
        }

    def test_key_update_takes_effect_immediately(self, client, upstream):
        assert client.put("/api/settings/keys", json={"google_api_key": "  "}, headers=HEADERS).status_code == 400

        get_runtime().credentials.resolve("Google")
        saved = client.put("/api/settings/keys", json={"google_api_key": "g-key-5555"}, headers=HEADERS)
        assert saved.status_code == 200
        assert client.get("/api/settings/keys", headers=HEADERS).json()["google_api_key"] == "****5555"

        upstream.stream([b'data: {"candidates":[{"content":{"parts":[{"text":"hi"}]}}]}\n\n'])
        response = client.post(
            "/api/llm/proxy",
            json=_proxy_body(provider="Google", modelId="gemini-2.5-flash",
                             apiConfig={"path": "/v1beta/models/{modelId}:streamGenerateContent"}),
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert upstream.requests[0].url.params["key"] == "g-key-5555"
