"""
mcp_bridge/llm.py

LLM backend client built on the Ollama async chat API.

Two call shapes are exposed: a complete reply (optionally with the tool
catalogue attached, so the model may emit tool calls) and a token stream for
the final answer.  Every transport failure is raised as ``UpstreamLLMError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from typing import Any

import httpx
from ollama import AsyncClient, RequestError, ResponseError

from .errors import AnalysisDecodeError, UpstreamLLMError
from .models import ConversationMessage, LLMReply, ToolCall
from .wire import decode_arguments

logger = logging.getLogger("mcp-bridge.llm")

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    ResponseError,
    RequestError,
    httpx.HTTPError,
    ConnectionError,
    TimeoutError,
)


def _get(obj: Any, key: str) -> Any:
    """Read ``key`` from an Ollama pydantic model or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _to_tool_calls(raw_calls: Any, content: str) -> tuple[ToolCall, ...]:
    calls: list[ToolCall] = []
    for index, raw in enumerate(raw_calls or []):
        function = _get(raw, "function")
        name = _get(function, "name")
        try:
            if not name:
                raise ValueError("tool call has no function name")
            arguments = decode_arguments(_get(function, "arguments"))
        except ValueError as exc:
            raise AnalysisDecodeError(f"undecodable tool call: {exc}", raw_text=content) from exc
        calls.append(ToolCall(id=f"call_{index}", name=str(name), arguments=arguments))
    return tuple(calls)


class LLMClient:
    """Thin async wrapper over ``ollama.AsyncClient``."""

    def __init__(
        self,
        ollama_host: str,
        *,
        timeout: float = 120.0,
        client: AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            ollama_host: Ollama API endpoint.
            timeout: Seconds to wait for each call (and between stream chunks).
            client: Pre-built Ollama client, mainly for tests.
        """
        self.ollama_host = ollama_host
        self.client = client or AsyncClient(host=ollama_host, timeout=timeout)

    async def chat(
        self,
        model: str,
        messages: Sequence[ConversationMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMReply:
        """Request one complete reply.

        Args:
            model: Model tag.
            messages: Conversation to send, in order.
            tools: Function-calling schemas; ``None`` sends no catalogue.

        Returns:
            The reply text and any tool calls the model emitted.

        Raises:
            UpstreamLLMError: If Ollama is unreachable, times out or answers non-2xx.
            AnalysisDecodeError: If an emitted tool call cannot be decoded.
        """
        logger.debug(
            "[llm] chat model=%s messages=%d tools=%d",
            model,
            len(messages),
            len(tools or []),
        )
        try:
            response = await self.client.chat(
                model=model,
                messages=[m.to_ollama() for m in messages],
                tools=tools or None,
                stream=False,
            )
        except _TRANSPORT_ERRORS as exc:
            raise UpstreamLLMError(f"LLM call failed: {exc}") from exc

        raw_msg = _get(response, "message")
        content: str = _get(raw_msg, "content") or ""
        reply = LLMReply(
            content=content,
            tool_calls=_to_tool_calls(_get(raw_msg, "tool_calls"), content),
        )
        logger.debug(
            "[llm] reply %d chars, %d tool calls", len(reply.content), len(reply.tool_calls)
        )
        return reply

    async def stream(
        self,
        model: str,
        messages: Sequence[ConversationMessage],
    ) -> AsyncIterator[str]:
        """Yield content pieces verbatim as the backend emits them.

        Raises:
            UpstreamLLMError: If the call fails before or during streaming.
        """
        logger.debug("[llm] stream model=%s messages=%d", model, len(messages))
        try:
            parts = await self.client.chat(
                model=model,
                messages=[m.to_ollama() for m in messages],
                stream=True,
            )
            async with aclosing(parts):
                async for part in parts:
                    content = _get(_get(part, "message"), "content")
                    if content:
                        yield content
                    if _get(part, "done"):
                        break
        except _TRANSPORT_ERRORS as exc:
            raise UpstreamLLMError(f"LLM stream failed: {exc}") from exc
