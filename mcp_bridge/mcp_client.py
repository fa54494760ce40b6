"""
mcp_bridge/mcp_client.py

JSON-RPC 2.0 over HTTP POST client for the MCP tool server.

Transport failures, non-2xx statuses and RPC-level errors all surface as
``UpstreamToolError`` so the tool registry can capture them as data.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import UpstreamToolError
from .wire import decode_tool_rpc, encode_tool_rpc

logger = logging.getLogger("mcp-bridge.mcp")

DEFAULT_CALL_TIMEOUT: float = 30.0


class McpClient:
    """Async client for the ``/mcp`` JSON-RPC endpoint of a tool server."""

    def __init__(
        self,
        mcp_url: str,
        *,
        api_key: str = "",
        timeout: float = DEFAULT_CALL_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            mcp_url: Tool server base URL; ``/mcp`` is appended.
            api_key: Default bearer token.
            timeout: Seconds to wait for each call.
            transport: Optional httpx transport (used by tests).
        """
        if not mcp_url:
            raise ValueError("[mcp] URL is missing.")
        self.endpoint = mcp_url.rstrip("/") + "/mcp"
        self.api_key = api_key
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def method_call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        api_key: str | None = None,
    ) -> Any:
        """Invoke an MCP server method and return its ``result`` payload.

        Args:
            method: ``"tools/list"`` or ``"tools/call"``.
            params: Method params, e.g. ``{"name": "tool", "arguments": {...}}``.
            api_key: Per-request bearer token overriding the default.

        Raises:
            UpstreamToolError: On any transport or protocol failure.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        token = api_key or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("[mcp] %s params=%s", method, params)
        try:
            response = await self._http.post(
                self.endpoint,
                json=encode_tool_rpc(method, params),
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamToolError(f"MCP call {method} timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamToolError(f"MCP Server unreachable: {exc}") from exc

        result = decode_tool_rpc(response)
        logger.debug("[mcp] %s -> %d bytes", method, len(response.content))
        return result

    async def list_tools(self, *, api_key: str | None = None) -> Any:
        return await self.method_call("tools/list", {}, api_key=api_key)

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        api_key: str | None = None,
    ) -> Any:
        return await self.method_call(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            api_key=api_key,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
