"""
mcp_bridge/errors.py

Error taxonomy shared by the wire adapters, upstream clients and HTTP layer.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bridge.

    Attributes:
        status_code: HTTP status the error maps to when it reaches a client.
    """

    status_code: int = 500


class ParseError(BridgeError):
    """The inbound request body is malformed."""

    status_code = 400


class UpstreamLLMError(BridgeError):
    """The LLM backend is unreachable, timed out or answered non-2xx."""


class UpstreamToolError(BridgeError):
    """The tool server is unreachable, answered non-2xx or returned an RPC error.

    Never surfaced to the client: the registry turns it into a failed
    ``ToolResult`` so the conversation still receives a tool message.
    """


class AnalysisDecodeError(BridgeError):
    """The LLM's tool-routing reply is not valid structured output.

    Recovered locally by treating the raw reply text as a direct answer.

    Attributes:
        raw_text: The undecodable reply text.
    """

    def __init__(self, message: str, *, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text
