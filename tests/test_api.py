"""tests/test_api.py

Integration tests for the HTTP interface (mcp_bridge/api.py).
Uses FastAPI's TestClient over a context wired to the scripted fakes.
"""

from __future__ import annotations

import json

from fastapi.testclient import TestClient

from conftest import FakeLLM, FakeMcp
from mcp_bridge.api import BridgeContext, create_app
from mcp_bridge.errors import UpstreamLLMError
from mcp_bridge.models import LLMReply, ToolCall

CHAT_URL = "/v1/chat/completions"


def _sse_payloads(body: str) -> list[str]:
    frames = [frame for frame in body.split("\n\n") if frame]
    assert all(frame.startswith("data: ") for frame in frames)
    return [frame[len("data: "):] for frame in frames]


class TestChatCompletions:
    """Test suite for POST /v1/chat/completions."""

    def test_non_streaming(self, client: TestClient, fake_llm: FakeLLM) -> None:
        """Test a plain request returns a chat.completion object."""
        fake_llm.replies = [LLMReply(content="Hello from Ollama")]

        response = client.post(CHAT_URL, json={"messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 200
        body = response.json()
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"]["content"] == "Hello from Ollama"

    def test_prompt_body(self, client: TestClient, fake_llm: FakeLLM) -> None:
        """Test a legacy prompt body is accepted."""
        response = client.post(CHAT_URL, json={"prompt": "hi"})

        assert response.status_code == 200
        assert fake_llm.calls[0]["messages"][0].content == "hi"

    def test_streaming(self, client: TestClient) -> None:
        """Test stream=true returns an SSE body ending with [DONE]."""
        response = client.post(
            CHAT_URL,
            json={"stream": True, "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"

        payloads = _sse_payloads(response.text)
        assert payloads[-1] == "[DONE]"
        deltas = [json.loads(p)["choices"][0]["delta"] for p in payloads[:-1]]
        assert deltas == [{"role": "assistant"}, {"content": "Hi"}, {"content": " there"}, {}]

    def test_streaming_error_keeps_status_200(self, client: TestClient, fake_llm: FakeLLM) -> None:
        """Test an error after the stream started is reported in-band."""
        fake_llm.stream_error = UpstreamLLMError("LLM stream failed: reset")

        response = client.post(
            CHAT_URL,
            json={"stream": True, "messages": [{"role": "user", "content": "hi"}]},
        )

        assert response.status_code == 200
        payloads = _sse_payloads(response.text)
        assert payloads[-1] == "[DONE]"
        assert json.loads(payloads[-3])["choices"][0]["delta"] == {
            "content": "Error: LLM stream failed: reset"
        }
        assert json.loads(payloads[-2])["choices"][0]["finish_reason"] == "stop"

    def test_upstream_failure_is_500(self, client: TestClient, fake_llm: FakeLLM) -> None:
        """Test a non-streaming upstream failure returns 500 with an error body."""
        fake_llm.replies = [UpstreamLLMError("LLM call failed: connection refused")]

        response = client.post(CHAT_URL, json={"messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 500
        assert response.json() == {"error": "LLM call failed: connection refused"}

    def test_invalid_json_is_400(self, client: TestClient) -> None:
        """Test a malformed body is rejected before orchestration."""
        response = client.post(
            CHAT_URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_bearer_token_reaches_mcp(self, client: TestClient, fake_mcp: FakeMcp) -> None:
        """Test the request bearer token is used for MCP calls."""
        response = client.post(
            CHAT_URL,
            json={"messages": [{"role": "user", "content": "#mcp:grafana:tools"}]},
            headers={"Authorization": "Bearer user-token"},
        )

        assert response.status_code == 200
        assert fake_mcp.calls[0]["api_key"] == "user-token"

    def test_test_mode_is_idempotent(self, client: TestClient, fake_llm: FakeLLM) -> None:
        """Test identical canned requests differ only in id and created."""
        payload = {"messages": [{"role": "user", "content": "#llm:test"}]}

        first = client.post(CHAT_URL, json=payload).json()
        second = client.post(CHAT_URL, json=payload).json()

        for body in (first, second):
            body.pop("id")
            body.pop("created")
        assert first == second
        assert first["choices"][0]["message"]["content"] == "Lorem ipsum dolor sit amet"
        assert fake_llm.calls == []

    def test_tool_assisted_is_idempotent(
        self, client: TestClient, fake_llm: FakeLLM, fake_mcp: FakeMcp
    ) -> None:
        """Test identical tool-assisted requests issue the same calls and answer."""
        script = [
            LLMReply(content="", tool_calls=(ToolCall(id="call_0", name="getDashboards"),)),
            LLMReply(content="You have 1 dashboard."),
        ]
        fake_llm.replies = script * 2
        fake_mcp.results["search_dashboards"] = [{"uid": "a1", "title": "Overview"}]
        payload = {"messages": [{"role": "user", "content": "#mcp:grafana list dashboards"}]}

        first = client.post(CHAT_URL, json=payload).json()
        second = client.post(CHAT_URL, json=payload).json()

        for body in (first, second):
            body.pop("id")
            body.pop("created")
        assert first == second
        assert first["choices"][0]["message"]["content"] == "You have 1 dashboard."
        assert fake_mcp.calls[:1] == fake_mcp.calls[1:]
        assert len(fake_mcp.calls) == 2
        assert [c["messages"] for c in fake_llm.calls[:2]] == [c["messages"] for c in fake_llm.calls[2:]]

    def test_developer_role_is_accepted(self, client: TestClient) -> None:
        """Test a developer message alongside a sentinel does not fail the request."""
        response = client.post(
            CHAT_URL,
            json={
                "messages": [
                    {"role": "developer", "content": "Answer tersely."},
                    {"role": "user", "content": "#llm:test"},
                ]
            },
        )

        assert response.status_code == 200
        assert response.json()["choices"][0]["message"]["content"] == "Lorem ipsum dolor sit amet"

    def test_schema_violation_is_400(self, client: TestClient, fake_llm: FakeLLM) -> None:
        """Test a body that fails validation never reaches the LLM."""
        response = client.post(CHAT_URL, json={"messages": [{"role": "user", "content": 42}]})

        assert response.status_code == 400
        assert "messages.0.content" in response.json()["error"]
        assert fake_llm.calls == []


class TestMetaEndpoints:
    """Test suite for health, metrics and models endpoints."""

    def test_health(self, client: TestClient) -> None:
        """Test the liveness check."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics_after_request(self, client: TestClient) -> None:
        """Test Prometheus metrics are exposed with the service prefix."""
        client.get("/health")
        client.post(CHAT_URL, json={"messages": [{"role": "user", "content": "#llm:test"}]})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "mcp_bridge_requests_total 1.0" in response.text
        assert "mcp_bridge_health_status 1.0" in response.text

    def test_models(self, client: TestClient) -> None:
        """Test the default model is listed in the OpenAI list shape."""
        response = client.get("/v1/models")

        assert response.status_code == 200
        assert response.json()["data"][0]["id"] == "test-model"

    def test_lifespan_closes_mcp_client(self, context: BridgeContext, fake_mcp: FakeMcp) -> None:
        """Test the MCP client is closed on shutdown and not before."""
        with TestClient(create_app(context=context)) as test_client:
            test_client.get("/health")
            assert fake_mcp.closed is False

        assert fake_mcp.closed is True
