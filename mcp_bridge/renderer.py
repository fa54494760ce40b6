"""
mcp_bridge/renderer.py

Response renderer: turns an orchestrated request into either one
``chat.completion`` object or a Server-Sent-Event stream.

The stream is always, on success and on failure alike:

    role chunk -> content chunk* -> finish chunk -> ``data: [DONE]``

A failure after the stream has started becomes one error content chunk
followed by the normal finish / DONE frames.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from .errors import BridgeError
from .instrumentation import Instrumentation
from .models import ChatRequest, DeltaChunk
from .orchestrator import Orchestrator
from .wire import DONE_FRAME, new_request_id, render_chunk, render_final

logger = logging.getLogger("mcp-bridge.renderer")


class ResponseRenderer:
    """Renders orchestrator results in OpenAI wire format."""

    def __init__(self, orchestrator: Orchestrator, instrumentation: Instrumentation) -> None:
        self.orchestrator = orchestrator
        self.instrumentation = instrumentation

    async def complete(self, request: ChatRequest) -> tuple[int, dict[str, Any]]:
        """Produce a non-streaming response.

        Returns:
            ``(status_code, body)``; failures yield ``(500, {"error": ...})``.
        """
        request_id = new_request_id()
        model = self.orchestrator.model_for(request)
        self.instrumentation.requests.inc()
        with self.instrumentation.request_latency.time():
            try:
                answer = await self.orchestrator.complete(request)
            except BridgeError as exc:
                self.instrumentation.errors.inc()
                logger.error("[bridge] request %s failed: %s", request_id, exc)
                return exc.status_code, {"error": str(exc)}
            except Exception as exc:
                self.instrumentation.errors.inc()
                logger.error("[bridge] internal error in %s: %s", request_id, exc, exc_info=True)
                return 500, {"error": str(exc)}
        return 200, render_final(answer.content, request_id, model)

    async def stream(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """Produce SSE frames for a streaming response.

        Closing this generator (client disconnect) closes the orchestrator
        stream too, abandoning any in-flight token consumption.
        """
        request_id = new_request_id()
        model = self.orchestrator.model_for(request)
        created = int(time.time())
        self.instrumentation.requests.inc()
        with self.instrumentation.request_latency.time():
            yield render_chunk(None, request_id, model, created=created)
            try:
                async with aclosing(self.orchestrator.stream(request)) as events:
                    async for event in events:
                        if isinstance(event, DeltaChunk):
                            yield render_chunk(event.content, request_id, model, created=created)
            except Exception as exc:
                self.instrumentation.errors.inc()
                logger.error(
                    "[bridge] stream %s failed: %s",
                    request_id,
                    exc,
                    exc_info=not isinstance(exc, BridgeError),
                )
                yield render_chunk(f"Error: {exc}", request_id, model, created=created)
            yield render_chunk(None, request_id, model, True, created=created)
            yield DONE_FRAME
