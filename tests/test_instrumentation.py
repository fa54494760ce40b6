"""tests/test_instrumentation.py

Unit tests for metrics and tracing hooks (mcp_bridge/instrumentation.py).
"""

from __future__ import annotations

import logging

import pytest

from mcp_bridge.instrumentation import BridgeInstrumentation, normalize_identifier


class TestNormalizeIdentifier:
    """Test suite for normalize_identifier."""

    def test_service_names(self) -> None:
        """Test service names become valid metric prefixes."""
        assert normalize_identifier("mcp-bridge") == "mcp_bridge"
        assert normalize_identifier("My Bridge.v2") == "my_bridge_v2"
        assert normalize_identifier("---") == "app"


class TestBridgeInstrumentation:
    """Test suite for BridgeInstrumentation."""

    def test_instances_do_not_share_metrics(self) -> None:
        """Test two instances with the same name can coexist."""
        first = BridgeInstrumentation("mcp-bridge")
        second = BridgeInstrumentation("mcp-bridge")

        first.requests.inc()

        assert first.registry.get_sample_value("mcp_bridge_requests_total") == 1.0
        assert second.registry.get_sample_value("mcp_bridge_requests_total") == 0.0

    def test_render_metrics(self) -> None:
        """Test the exposition body uses the service prefix."""
        instrumentation = BridgeInstrumentation("grafana-bridge")
        instrumentation.set_health(False)

        body, content_type = instrumentation.render_metrics()

        assert content_type.startswith("text/plain")
        assert b"grafana_bridge_health_status 0.0" in body
        assert b"grafana_bridge_ollama_latency_seconds_bucket" in body

    @pytest.mark.asyncio
    async def test_with_span_returns_value(self) -> None:
        """Test with_span returns the wrapped coroutine's result."""
        instrumentation = BridgeInstrumentation()

        async def work() -> int:
            return 42

        assert await instrumentation.with_span("work", {"tools": 3, "obj": object()}, work) == 42

    @pytest.mark.asyncio
    async def test_with_span_reraises(self) -> None:
        """Test with_span propagates the wrapped coroutine's error."""
        instrumentation = BridgeInstrumentation()

        async def fail() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await instrumentation.with_span("fail", {}, fail)

    def test_log_appends_meta(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test log lines carry their metadata as key=value pairs."""
        instrumentation = BridgeInstrumentation("mcp-bridge")

        with caplog.at_level(logging.INFO, logger="mcp-bridge"):
            instrumentation.log(logging.INFO, "[orchestrator] mode selected", mode="MCP", model="m")

        assert "[orchestrator] mode selected mode=MCP model=m" in caplog.text
