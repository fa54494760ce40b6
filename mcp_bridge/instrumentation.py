"""
mcp_bridge/instrumentation.py

Instrumentation hooks consumed by the orchestrator and tool registry.

``Instrumentation`` is the capability the orchestrator depends on; it is
injected at construction.  ``BridgeInstrumentation`` is the shipped
implementation: Prometheus counters / histograms on a per-instance registry
and OpenTelemetry spans (a no-op tracer unless an SDK is configured).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, ContextManager, Protocol, TypeVar

from opentelemetry import trace
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

T = TypeVar("T")

LATENCY_BUCKETS: tuple[float, ...] = (0.5, 1, 2, 5, 10, 30, 60, 120, 180, 300, 600)


class CounterLike(Protocol):
    def inc(self, amount: float = 1) -> None: ...


class HistogramLike(Protocol):
    def time(self) -> ContextManager[Any]: ...


class Instrumentation(Protocol):
    """Spans, counters and a logger for one service."""

    logger: logging.Logger
    requests: CounterLike
    errors: CounterLike
    mcp_requests: CounterLike
    mcp_errors: CounterLike
    ollama_requests: CounterLike
    ollama_errors: CounterLike
    request_latency: HistogramLike
    mcp_latency: HistogramLike
    ollama_latency: HistogramLike

    def log(self, level: int, message: str, **meta: Any) -> None: ...

    async def with_span(
        self,
        name: str,
        attributes: dict[str, Any],
        fn: Callable[[], Awaitable[T]],
    ) -> T: ...


def normalize_identifier(name: str) -> str:
    """Turn a service name into a valid metric prefix (``[a-z0-9_]``)."""
    return re.sub(r"[^a-z0-9_]", "_", name.lower()).strip("_") or "app"


def _span_value(value: Any) -> str | bool | int | float:
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


class BridgeInstrumentation:
    """Prometheus + OpenTelemetry implementation of ``Instrumentation``."""

    def __init__(
        self,
        service_name: str = "mcp-bridge",
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self.logger = logging.getLogger(service_name)
        self._tracer = trace.get_tracer(service_name)

        prefix = normalize_identifier(service_name)
        self.requests = Counter(
            f"{prefix}_requests",
            f"Total requests received by {service_name}",
            registry=self.registry,
        )
        self.errors = Counter(
            f"{prefix}_errors",
            f"Total errors occurred in {service_name}",
            registry=self.registry,
        )
        self.request_latency = Histogram(
            f"{prefix}_request_latency_seconds",
            f"{service_name} response time",
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.health = Gauge(
            f"{prefix}_health_status",
            f"{service_name} health status (1 = healthy, 0 = failed last check)",
            registry=self.registry,
        )
        self.mcp_requests = Counter(
            f"{prefix}_mcp_requests",
            "Total calls made to the MCP Server",
            registry=self.registry,
        )
        self.mcp_latency = Histogram(
            f"{prefix}_mcp_latency_seconds",
            "MCP Server response time",
            registry=self.registry,
        )
        self.mcp_errors = Counter(
            f"{prefix}_mcp_errors",
            "Total errors occurred when calling the MCP Server",
            registry=self.registry,
        )
        self.ollama_requests = Counter(
            f"{prefix}_ollama_requests",
            "Total calls made to Ollama",
            registry=self.registry,
        )
        self.ollama_latency = Histogram(
            f"{prefix}_ollama_latency_seconds",
            "Ollama response time",
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.ollama_errors = Counter(
            f"{prefix}_ollama_errors",
            "Total errors occurred in the call to Ollama",
            registry=self.registry,
        )

    async def with_span(
        self,
        name: str,
        attributes: dict[str, Any],
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``fn`` inside a span, returning its value or re-raising its error."""
        attrs = {key: _span_value(value) for key, value in attributes.items()}
        with self._tracer.start_as_current_span(name, attributes=attrs):
            return await fn()

    def log(self, level: int, message: str, **meta: Any) -> None:
        """Log ``message`` with ``meta`` appended as ``key=value`` pairs."""
        if meta:
            message = f"{message} " + " ".join(f"{key}={value}" for key, value in meta.items())
        self.logger.log(level, message)

    def set_health(self, healthy: bool) -> None:
        self.health.set(1 if healthy else 0)

    def render_metrics(self) -> tuple[bytes, str]:
        """Return the Prometheus exposition body and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
