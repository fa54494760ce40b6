"""
mcp_bridge/tools.py

Tool registry: the static catalogue advertised to the LLM and the dispatcher
that executes tool calls against the MCP (Grafana) server.

Catalogue entries map friendly tool names onto the tool server's own tools,
e.g. ``getDashboards`` -> ``tools/call search_dashboards {"search": "*"}``.
Names that are not in the catalogue are forwarded verbatim as a
``tools/call`` so new server-side tools work without registry changes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from .errors import UpstreamToolError
from .instrumentation import Instrumentation
from .mcp_client import McpClient
from .models import ToolCall, ToolDescriptor, ToolResult

logger = logging.getLogger("mcp-bridge.tools")

_UID_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["uid"],
    "properties": {"uid": {"type": "string", "description": "Unique ID"}},
}

GRAFANA_TOOLS: tuple[ToolDescriptor, ...] = (
    ToolDescriptor("getToolsList", "Get the MCP server tools list"),
    ToolDescriptor("getGrafanaVersion", "Return Grafana's current version"),
    ToolDescriptor(
        "getDashboards", "List all dashboards (id, name, title, description...)"
    ),
    ToolDescriptor("getMetricsNames", "List all metrics (only names)"),
    ToolDescriptor("getMetrics", "List all metrics (id, name, title, description...)"),
    ToolDescriptor(
        "getDatasources", "List all datasources (id, name, title, description...)"
    ),
    ToolDescriptor(
        "getDashboard",
        "List strictly a specific given dashboard from its id",
        _UID_SCHEMA,
    ),
    ToolDescriptor(
        "getMetric",
        "List strictly a specific given metric from its id",
        _UID_SCHEMA,
    ),
)

Handler = Callable[[dict[str, Any], str | None], Awaitable[Any]]


class ToolRegistry:
    """Enumerable tool catalogue plus sequential dispatcher.

    The catalogue is read-only after construction and may be shared by all
    requests; dispatch keeps no per-request state.
    """

    def __init__(
        self,
        client: McpClient,
        instrumentation: Instrumentation,
        *,
        datasource_uid: str = "Prometheus",
        catalog: Sequence[ToolDescriptor] = GRAFANA_TOOLS,
    ) -> None:
        self._client = client
        self._instrumentation = instrumentation
        self._datasource_uid = datasource_uid
        self._catalog: tuple[ToolDescriptor, ...] = tuple(catalog)
        self._handlers: dict[str, Handler] = {
            "getToolsList": self._tools_list,
            "getGrafanaVersion": self._grafana_version,
            "getDashboards": self._dashboards,
            "getMetricsNames": self._metrics_names,
            "getMetrics": self._metrics,
            "getDatasources": self._datasources,
            "getDashboard": self._dashboard,
            "getMetric": self._metric,
        }
        self._inflight: set[asyncio.Future[ToolResult]] = set()

    def list(self) -> tuple[ToolDescriptor, ...]:
        return self._catalog

    def schemas(self) -> list[dict[str, Any]]:
        """Return the catalogue in function-calling schema form."""
        return [tool.to_schema() for tool in self._catalog]

    async def list_remote(self, *, api_key: str | None = None) -> ToolResult:
        """Fetch the tool server's own catalogue via ``tools/list``."""
        return await self._guarded(
            "tools/list", lambda: self._client.list_tools(api_key=api_key)
        )

    async def dispatch(self, call: ToolCall, *, api_key: str | None = None) -> ToolResult:
        """Execute one tool call; failures are returned, never raised."""
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.info("[tools] %s not in catalogue, forwarding to MCP server", call.name)
            return await self._guarded(
                call.name,
                lambda: self._client.call_tool(call.name, call.arguments, api_key=api_key),
            )
        return await self._guarded(call.name, lambda: handler(call.arguments, api_key))

    async def dispatch_batch(
        self,
        calls: Sequence[ToolCall],
        *,
        api_key: str | None = None,
    ) -> list[ToolResult]:
        """Execute calls one after another; results keep the call order."""
        results: list[ToolResult] = []
        for call in calls:
            results.append(await self.dispatch(call, api_key=api_key))
        return results

    async def drain(self) -> None:
        """Wait for MCP calls whose callers have already gone away."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _guarded(self, name: str, fn: Callable[[], Awaitable[Any]]) -> ToolResult:
        """Run one MCP call with metrics, converting failures into data.

        The call runs in its own shielded task: a client disconnect does not
        cancel an MCP call that has already been issued.  Its metrics and
        failure log are still recorded, only the result is discarded.
        """
        task = asyncio.ensure_future(self._run(name, fn))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> ToolResult:
        self._instrumentation.mcp_requests.inc()
        with self._instrumentation.mcp_latency.time():
            try:
                payload = await fn()
            except UpstreamToolError as exc:
                self._instrumentation.mcp_errors.inc()
                logger.error("[tools] MCP call %s failed: %s", name, exc)
                return ToolResult.failure(name, str(exc))
        logger.debug("[tools] MCP call %s succeeded", name)
        return ToolResult(name=name, ok=True, payload=payload)

    # ------------------------------------------------------------------
    # Catalogue handlers
    # ------------------------------------------------------------------

    async def _tools_list(self, _args: dict[str, Any], api_key: str | None) -> Any:
        return await self._client.list_tools(api_key=api_key)

    async def _grafana_version(self, _args: dict[str, Any], _api_key: str | None) -> Any:
        return {"version": "latest"}

    async def _dashboards(self, _args: dict[str, Any], api_key: str | None) -> Any:
        return await self._client.call_tool(
            "search_dashboards", {"search": "*"}, api_key=api_key
        )

    async def _metrics_names(self, _args: dict[str, Any], api_key: str | None) -> Any:
        return await self._client.call_tool(
            "list_prometheus_metric_names",
            {"datasourceUid": self._datasource_uid},
            api_key=api_key,
        )

    async def _metrics(self, _args: dict[str, Any], api_key: str | None) -> Any:
        return await self._metric({"uid": "*"}, api_key)

    async def _datasources(self, _args: dict[str, Any], api_key: str | None) -> Any:
        return await self._client.call_tool("list_datasources", {}, api_key=api_key)

    async def _dashboard(self, args: dict[str, Any], api_key: str | None) -> Any:
        return await self._client.call_tool(
            "get_dashboard_summary", {"uid": args.get("uid", "")}, api_key=api_key
        )

    async def _metric(self, args: dict[str, Any], api_key: str | None) -> Any:
        return await self._client.call_tool(
            "list_prometheus_metric_metadata",
            {"datasourceUid": self._datasource_uid, "metric": args.get("uid", "")},
            api_key=api_key,
        )
