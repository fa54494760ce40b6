"""tests/conftest.py

Pytest configuration and shared fixtures for the mcp-bridge test suite.

The LLM and the MCP server are replaced by scripted fakes that record every
call, so orchestration can be asserted without any network access.
"""

from __future__ import annotations

# Standard Library
import asyncio
from collections.abc import AsyncIterator, Iterator, Sequence
from pathlib import Path
from typing import Any

# Third-Party Libraries
import pytest
from fastapi.testclient import TestClient

# Local Modules
from mcp_bridge.api import BridgeContext, create_app
from mcp_bridge.config import BridgeMode, BridgeSettings
from mcp_bridge.errors import UpstreamToolError
from mcp_bridge.instrumentation import BridgeInstrumentation
from mcp_bridge.models import ChatRequest, ConversationMessage, LLMReply
from mcp_bridge.orchestrator import Orchestrator
from mcp_bridge.tools import ToolRegistry
from mcp_bridge.wire import parse_inbound

SYSTEM_PROMPT = "You are a Grafana assistant. Use the tools when asked."


class FakeLLM:
    """Scripted stand-in for ``LLMClient``.

    ``replies`` are consumed in order by ``chat``; an exception instance in
    the list is raised instead of returned.  ``stream`` yields ``pieces``
    and then raises ``stream_error`` if one is set; ``stream_closed`` records
    that the generator was finalised.
    """

    def __init__(self) -> None:
        self.replies: list[LLMReply | Exception] = []
        self.pieces: list[str] = ["Hi", " there"]
        self.stream_error: Exception | None = None
        self.calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []
        self.pieces_sent = 0
        self.stream_closed = False

    async def chat(
        self,
        model: str,
        messages: Sequence[ConversationMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMReply:
        self.calls.append({"model": model, "messages": list(messages), "tools": tools})
        reply = self.replies.pop(0) if self.replies else LLMReply(content="default answer")
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream(
        self,
        model: str,
        messages: Sequence[ConversationMessage],
    ) -> AsyncIterator[str]:
        self.stream_calls.append({"model": model, "messages": list(messages)})
        try:
            for piece in self.pieces:
                self.pieces_sent += 1
                yield piece
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


class FakeMcp:
    """Scripted stand-in for ``McpClient``.

    ``results`` maps a server tool name to its payload and ``errors`` maps a
    tool name to the ``UpstreamToolError`` it should raise.  When ``gate`` is
    set, tool calls block until it is released.
    """

    def __init__(self) -> None:
        self.tools_list: Any = {"tools": [{"name": "search_dashboards"}]}
        self.tools_list_error: UpstreamToolError | None = None
        self.results: dict[str, Any] = {}
        self.errors: dict[str, UpstreamToolError] = {}
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def list_tools(self, *, api_key: str | None = None) -> Any:
        self.calls.append({"name": "tools/list", "arguments": {}, "api_key": api_key})
        if self.tools_list_error is not None:
            raise self.tools_list_error
        return self.tools_list

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        api_key: str | None = None,
    ) -> Any:
        self.calls.append({"name": name, "arguments": arguments or {}, "api_key": api_key})
        if self.gate is not None:
            await self.gate.wait()
        if name in self.errors:
            raise self.errors[name]
        return self.results.get(name, {"tool": name, "ok": True})

    async def aclose(self) -> None:
        self.closed = True


def user_request(*lines: str, stream: bool = False, api_key: str | None = None) -> ChatRequest:
    """Build a one-message request whose content is ``lines`` joined by newlines."""
    return parse_inbound(
        {"messages": [{"role": "user", "content": "\n".join(lines)}], "stream": stream},
        api_key=api_key,
    )


@pytest.fixture
def settings(tmp_path: Path) -> BridgeSettings:
    """Create settings isolated from the environment and any .env file.

    Returns:
        Settings in LLM mode with a temporary system prompt directory.
    """
    return BridgeSettings(
        _env_file=None,
        mode=BridgeMode.LLM,
        service_name="mcp-bridge",
        system_prompt_path=str(tmp_path),
        ollama_host="http://ollama.test:11434",
        ollama_model="test-model",
        honor_request_model=False,
        mcp_url="http://mcp.test:8000",
        mcp_api_key="server-key",
    )


@pytest.fixture
def instrumentation() -> BridgeInstrumentation:
    """Create instrumentation backed by its own Prometheus registry."""
    return BridgeInstrumentation("mcp-bridge")


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_mcp() -> FakeMcp:
    return FakeMcp()


@pytest.fixture
def registry(fake_mcp: FakeMcp, instrumentation: BridgeInstrumentation) -> ToolRegistry:
    return ToolRegistry(fake_mcp, instrumentation)  # type: ignore[arg-type]


@pytest.fixture
def orchestrator(
    settings: BridgeSettings,
    registry: ToolRegistry,
    fake_llm: FakeLLM,
    instrumentation: BridgeInstrumentation,
) -> Orchestrator:
    """Create an orchestrator wired to the fakes and a known system prompt."""
    return Orchestrator(
        settings,
        registry,
        fake_llm,  # type: ignore[arg-type]
        instrumentation,
        system_prompt=SYSTEM_PROMPT,
    )


@pytest.fixture
def context(
    settings: BridgeSettings,
    fake_llm: FakeLLM,
    fake_mcp: FakeMcp,
    instrumentation: BridgeInstrumentation,
) -> BridgeContext:
    return BridgeContext.build(
        settings,
        llm=fake_llm,  # type: ignore[arg-type]
        mcp=fake_mcp,  # type: ignore[arg-type]
        instrumentation=instrumentation,
        system_prompt=SYSTEM_PROMPT,
    )


@pytest.fixture
def client(context: BridgeContext) -> Iterator[TestClient]:
    """Create a FastAPI test client over the faked context."""
    with TestClient(create_app(context=context)) as test_client:
        yield test_client
