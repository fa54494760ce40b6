"""
mcp_bridge/models.py

Request-scoped data model: conversation messages, tool calls and results,
and the terminal outcome handed to the response renderer.

Everything here is created fresh per inbound request except the
``ToolDescriptor`` catalogue, which lives for the whole process.
"""

from __future__ import annotations

import dataclasses
import json
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    """Conversation message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclasses.dataclass(frozen=True, slots=True)
class ToolCall:
    """A tool invocation requested by the LLM.

    Attributes:
        id: Call identifier, unique within one LLM turn.
        name: Tool name as advertised in the catalogue.
        arguments: Decoded keyword arguments.
    """

    id: str
    name: str
    arguments: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_ollama(self) -> dict[str, Any]:
        """Render the call in the shape the Ollama chat API expects."""
        return {"function": {"name": self.name, "arguments": dict(self.arguments)}}


@dataclasses.dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of one tool call.

    Failures are data, not exceptions: ``ok`` is false and ``payload`` holds
    the error description.
    """

    name: str
    ok: bool
    payload: Any

    @classmethod
    def failure(cls, name: str, message: str) -> ToolResult:
        return cls(name=name, ok=False, payload=message)

    def to_content(self) -> str:
        """Serialise the result as tool-message content."""
        body = self.payload if self.ok else {"error": self.payload}
        return json.dumps(body, ensure_ascii=False)


@dataclasses.dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """A callable tool advertised to the LLM."""

    name: str
    description: str
    parameter_schema: dict[str, Any] = dataclasses.field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_schema(self) -> dict[str, Any]:
        """Return the OpenAI / Ollama function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema,
            },
        }


@dataclasses.dataclass(frozen=True, slots=True)
class ConversationMessage:
    """One message of a conversation.

    Attributes:
        role: Author of the message.
        content: Plain-text content.
        tool_calls: Calls emitted by an assistant turn, in order.
        tool_name: Tool that produced a ``tool``-role message.
    """

    role: Role
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_name: str | None = None

    def to_ollama(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": str(self.role), "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_ollama() for call in self.tool_calls]
        if self.tool_name:
            message["tool_name"] = self.tool_name
        return message


@dataclasses.dataclass(frozen=True, slots=True)
class ChatRequest:
    """A parsed inbound chat-completion request.

    Attributes:
        messages: Structured conversation for the tool-aware path.
        prompt_text: Single-string rendering of the user's intent
            (``role: content`` lines when ``messages`` was supplied).
        source: Which body field won the fallback chain:
            ``messages``, ``prompt``, ``input`` or ``raw``.
        stream: Whether the client asked for Server-Sent Events.
        model: Model requested by the client, if any.
        api_key_override: Pre-validated credential carried by the request.
    """

    messages: tuple[ConversationMessage, ...]
    prompt_text: str
    source: str
    stream: bool = False
    model: str | None = None
    api_key_override: str | None = dataclasses.field(default=None, repr=False)

    def last_user_message(self) -> ConversationMessage | None:
        for message in reversed(self.messages):
            if message.role is Role.USER:
                return message
        return None


@dataclasses.dataclass(frozen=True, slots=True)
class LLMReply:
    """A complete (non-streamed) LLM response."""

    content: str
    tool_calls: tuple[ToolCall, ...] = ()


@dataclasses.dataclass(frozen=True, slots=True)
class FinalText:
    """Terminal outcome carrying the whole answer."""

    content: str


@dataclasses.dataclass(frozen=True, slots=True)
class DeltaChunk:
    """One incremental piece of a streamed answer."""

    content: str


@dataclasses.dataclass(frozen=True, slots=True)
class Done:
    """End-of-stream marker."""
