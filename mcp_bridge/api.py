"""
mcp_bridge/api.py

FastAPI HTTP interface for the bridge.

Endpoints:
  POST /v1/chat/completions - OpenAI-compatible chat completion (JSON or SSE)
  GET  /v1/models           - the bridge default model, OpenAI list shape
  GET  /health              - liveness check
  GET  /metrics             - Prometheus exposition
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import BridgeSettings, configure_logging, load_system_prompt
from .errors import ParseError
from .instrumentation import BridgeInstrumentation
from .llm import LLMClient
from .mcp_client import McpClient
from .orchestrator import Orchestrator
from .renderer import ResponseRenderer
from .tools import ToolRegistry
from .wire import parse_inbound

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger("mcp-bridge.api")

_STREAM_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclasses.dataclass(slots=True)
class BridgeContext:
    """Process-wide collaborators, built once and shared read-only by requests."""

    settings: BridgeSettings
    instrumentation: BridgeInstrumentation
    mcp: McpClient
    registry: ToolRegistry
    llm: LLMClient
    orchestrator: Orchestrator
    renderer: ResponseRenderer

    @classmethod
    def build(
        cls,
        settings: BridgeSettings,
        *,
        llm: LLMClient | None = None,
        mcp: McpClient | None = None,
        instrumentation: BridgeInstrumentation | None = None,
        system_prompt: str | None = None,
    ) -> BridgeContext:
        """Wire every collaborator from settings; any of them may be injected."""
        instrumentation = instrumentation or BridgeInstrumentation(settings.service_name)
        mcp = mcp or McpClient(
            settings.mcp_url, api_key=settings.mcp_token, timeout=settings.mcp_timeout
        )
        llm = llm or LLMClient(settings.ollama_host, timeout=settings.llm_timeout)
        registry = ToolRegistry(
            mcp, instrumentation, datasource_uid=settings.prometheus_datasource_uid
        )
        orchestrator = Orchestrator(
            settings,
            registry,
            llm,
            instrumentation,
            system_prompt=load_system_prompt(settings) if system_prompt is None else system_prompt,
        )
        return cls(
            settings=settings,
            instrumentation=instrumentation,
            mcp=mcp,
            registry=registry,
            llm=llm,
            orchestrator=orchestrator,
            renderer=ResponseRenderer(orchestrator, instrumentation),
        )

    async def aclose(self) -> None:
        await self.registry.drain()
        await self.mcp.aclose()


def _bearer_token(request: Request) -> str | None:
    """Extract the bearer token from the Authorization header, if any."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------


def create_app(
    settings: BridgeSettings | None = None,
    *,
    context: BridgeContext | None = None,
) -> FastAPI:
    """Build the bridge application.

    Args:
        settings: Settings to use; loaded from the environment when omitted.
        context: Fully built context (tests inject fakes this way).
    """
    if context is None:
        settings = settings or BridgeSettings()
        context = BridgeContext.build(settings)
    ctx: BridgeContext = context

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "[bridge] %s ready [mode=%s] (model=%s, MCP=%s)",
            ctx.settings.service_name,
            ctx.settings.mode,
            ctx.settings.ollama_model,
            ctx.settings.mcp_url,
        )
        yield
        await ctx.aclose()

    app = FastAPI(
        title="MCP Bridge",
        version="0.1.0",
        description=(
            "OpenAI-compatible chat completions backed by a local Ollama model, "
            "optionally augmented by MCP tool calls."
        ),
        lifespan=lifespan,
    )
    app.state.bridge = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/v1/chat/completions", tags=["chat"])
    async def chat_completions(request: Request) -> Response:
        """OpenAI-compatible chat completion, streamed when ``stream`` is true."""
        raw_body = await request.body()
        try:
            chat = parse_inbound(raw_body, api_key=_bearer_token(request))
        except ParseError as exc:
            ctx.instrumentation.errors.inc()
            logger.warning("[bridge] rejected request: %s", exc)
            return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

        if chat.stream:
            return StreamingResponse(
                ctx.renderer.stream(chat),
                media_type="text/event-stream",
                headers=_STREAM_HEADERS,
            )
        status_code, body = await ctx.renderer.complete(chat)
        return JSONResponse(body, status_code=status_code)

    @app.get("/v1/models", tags=["chat"])
    async def list_models() -> dict[str, Any]:
        return {
            "object": "list",
            "data": [
                {
                    "id": ctx.settings.ollama_model,
                    "object": "model",
                    "created": 0,
                    "owned_by": "ollama",
                }
            ],
        }

    @app.get("/health", tags=["meta"])
    async def health() -> Response:
        """Liveness check."""
        try:
            ctx.instrumentation.set_health(True)
            return JSONResponse({"status": "ok"})
        except Exception as exc:
            ctx.instrumentation.set_health(False)
            logger.error("[bridge] health check failed: %s", exc)
            return JSONResponse({"status": "error", "error": str(exc)}, status_code=500)

    @app.get("/metrics", tags=["meta"])
    async def metrics() -> Response:
        body, content_type = ctx.instrumentation.render_metrics()
        return Response(content=body, media_type=content_type)

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_api() -> None:
    """Start the HTTP server via uvicorn."""
    load_dotenv()
    settings = BridgeSettings()
    configure_logging(settings.log_level)
    logger.info("Starting %s on %s:%d", settings.service_name, settings.host, settings.port)
    uvicorn.run(
        "mcp_bridge.api:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run_api()
