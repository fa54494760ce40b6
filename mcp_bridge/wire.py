"""
mcp_bridge/wire.py

Translators between the wire formats and the internal model:

- OpenAI chat-completion request body  -> ``ChatRequest``
- resolved text                         -> OpenAI completion object / SSE frames
- tool method + params                  -> JSON-RPC 2.0 request envelope
- JSON-RPC HTTP response                -> result payload or ``UpstreamToolError``
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ParseError, UpstreamToolError
from .models import ChatRequest, ConversationMessage, Role, ToolCall

logger = logging.getLogger("mcp-bridge.wire")

JSONRPC_VERSION: str = "2.0"
JSONRPC_ID: str = "1"

DONE_FRAME: bytes = b"data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


def _str_content(val: None | str | list[Any] | Any) -> str:
    """Normalise an OpenAI message content value to a plain string.

    Args:
        val: Raw content field, which may be ``None``, a ``str``, or a list of
            content parts (multimodal format).

    Returns:
        A plain string safe for all string operations.
    """
    if val is None:
        return ""
    if isinstance(val, str):
        return val
    if isinstance(val, list):
        parts: list[str] = []
        for item in val:
            if isinstance(item, dict):
                parts.append(str(item.get("text") or item.get("content") or ""))
            else:
                parts.append(str(item))
        return " ".join(p for p in parts if p)
    return str(val)


def decode_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments given as a mapping or a JSON string.

    Raises:
        ValueError: If the arguments are neither an object nor a JSON object string.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        decoded = json.loads(raw)
        if isinstance(decoded, dict):
            return decoded
    raise ValueError(f"tool arguments must be an object, got {type(raw).__name__}")


# Role spellings accepted beyond the four the bridge models.  Any other
# role is dropped from the conversation with a warning.
ROLE_ALIASES: dict[str, Role] = {
    "developer": Role.SYSTEM,
    "function": Role.TOOL,
}


class InboundFunction(BaseModel):
    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def parse_arguments(cls, value: Any) -> dict[str, Any]:
        return decode_arguments(value)


class InboundToolCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    function: InboundFunction


class InboundMessage(BaseModel):
    """One entry of an OpenAI ``messages`` array."""

    model_config = ConfigDict(extra="allow")

    role: str
    content: str | list[Any] | None = None
    tool_calls: list[InboundToolCall] | None = None
    name: str | None = None
    tool_name: str | None = None

    def to_message(self) -> ConversationMessage | None:
        """Convert to the internal message, or ``None`` for an unmodelled role."""
        role = ROLE_ALIASES.get(self.role)
        if role is None:
            try:
                role = Role(self.role)
            except ValueError:
                return None
        return ConversationMessage(
            role=role,
            content=_str_content(self.content),
            tool_calls=tuple(
                ToolCall(
                    id=call.id or f"call_{index}",
                    name=call.function.name,
                    arguments=call.function.arguments,
                )
                for index, call in enumerate(self.tool_calls or ())
            ),
            tool_name=self.tool_name or self.name,
        )


class ChatCompletionBody(BaseModel):
    """OpenAI chat-completion request body.

    Unknown fields (``temperature``, ``tools``, ...) are kept so the raw
    fallback can echo the whole body.
    """

    model_config = ConfigDict(extra="allow")

    messages: list[InboundMessage] | None = None
    prompt: Any = None
    input: Any = None
    stream: Any = None
    model: str | None = None


def _validation_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    if location:
        return f"invalid request body at {location}: {error['msg']}"
    return f"invalid request body: {error['msg']}"


def parse_inbound(raw_body: bytes | str | dict[str, Any], *, api_key: str | None = None) -> ChatRequest:
    """Parse an OpenAI-style chat-completion body.

    The user's intent is taken from the first non-empty source, in order:
    ``messages``, ``prompt``, ``input``, then the JSON-stringified body.
    Sources after the winner are ignored even when present.

    Args:
        raw_body: Request body as bytes, text or an already-decoded object.
        api_key: Pre-validated credential carried by the request, if any.

    Returns:
        The parsed, immutable request.

    Raises:
        ParseError: If the body is not a JSON object or a message is malformed.
    """
    if not isinstance(raw_body, dict) and not raw_body:
        raise ParseError("request body is empty")
    try:
        if isinstance(raw_body, dict):
            body = ChatCompletionBody.model_validate(raw_body)
        else:
            body = ChatCompletionBody.model_validate_json(raw_body)
    except ValidationError as exc:
        raise ParseError(_validation_message(exc)) from exc

    messages: tuple[ConversationMessage, ...] = ()
    for index, inbound in enumerate(body.messages or ()):
        message = inbound.to_message()
        if message is None:
            logger.warning("[wire] dropping messages[%d] with unknown role %r", index, inbound.role)
            continue
        messages += (message,)

    if messages:
        prompt_text = "\n".join(f"{m.role}: {m.content}" for m in messages)
        source = "messages"
    elif isinstance(body.prompt, str) and body.prompt:
        prompt_text, source = body.prompt, "prompt"
    elif isinstance(body.input, str) and body.input:
        prompt_text, source = body.input, "input"
    else:
        raw = body.model_dump(mode="json", exclude_unset=True)
        prompt_text, source = json.dumps(raw, ensure_ascii=False), "raw"

    if source != "messages":
        messages = (ConversationMessage(role=Role.USER, content=prompt_text),)

    request = ChatRequest(
        messages=messages,
        prompt_text=prompt_text,
        source=source,
        stream=body.stream is True,
        model=body.model or None,
        api_key_override=api_key or None,
    )
    logger.debug(
        "[wire] parsed request source=%s messages=%d stream=%s",
        request.source,
        len(request.messages),
        request.stream,
    )
    return request


# ---------------------------------------------------------------------------
# Outbound to the client
# ---------------------------------------------------------------------------


def new_request_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def render_final(
    text: str,
    request_id: str,
    model_id: str,
    *,
    created: int | None = None,
) -> dict[str, Any]:
    """Build a non-streaming ``chat.completion`` object."""
    return {
        "id": request_id,
        "object": "chat.completion",
        "created": int(time.time()) if created is None else created,
        "model": model_id,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        "usage": {},
    }


def render_chunk(
    text: str | None,
    request_id: str,
    model_id: str,
    done: bool = False,
    *,
    created: int | None = None,
) -> bytes:
    """Encode one ``chat.completion.chunk`` SSE frame.

    ``text=None`` with ``done=False`` is the role announcement; ``done=True``
    is the finish chunk with an empty delta.
    """
    if done:
        delta: dict[str, Any] = {}
        finish_reason: str | None = "stop"
    elif text is None:
        delta, finish_reason = {"role": "assistant"}, None
    else:
        delta, finish_reason = {"content": text}, None

    payload = {
        "id": request_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()) if created is None else created,
        "model": model_id,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


# ---------------------------------------------------------------------------
# Tool server JSON-RPC
# ---------------------------------------------------------------------------


def encode_tool_rpc(method: str, params: dict[str, Any] | None) -> dict[str, Any]:
    """Build a JSON-RPC 2.0 request envelope.

    Args:
        method: RPC method, e.g. ``"tools/list"`` or ``"tools/call"``.
        params: Method parameters, copied verbatim.
    """
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": JSONRPC_ID,
        "method": method,
        "params": params if params is not None else {},
    }


def _read_envelope(response: httpx.Response) -> Any:
    """Return the JSON envelope from a plain JSON or an SSE-framed body."""
    content_type = response.headers.get("content-type", "")
    if content_type.startswith("text/event-stream"):
        data_lines = [
            line[len("data:"):].strip()
            for line in response.text.splitlines()
            if line.startswith("data:")
        ]
        if not data_lines:
            raise ValueError("event stream carried no data")
        return json.loads(data_lines[-1])
    return response.json()


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


def decode_tool_rpc(response: httpx.Response) -> Any:
    """Decode a JSON-RPC HTTP response into its ``result`` payload.

    Raises:
        UpstreamToolError: On non-2xx status, an undecodable body, an RPC
            ``error`` member, a ``result.error`` field or a ``result.isError``
            flag.
    """
    if not response.is_success:
        raise UpstreamToolError(
            f"MCP Server connection error: {response.status_code} - {response.reason_phrase}"
        )
    try:
        envelope = _read_envelope(response)
    except ValueError as exc:
        raise UpstreamToolError(f"MCP Server returned an invalid body: {exc}") from exc
    if not isinstance(envelope, dict):
        raise UpstreamToolError("MCP Server returned a non-object envelope")
    if envelope.get("error"):
        raise UpstreamToolError(_error_text(envelope["error"]))

    result = envelope.get("result")
    if isinstance(result, dict):
        if result.get("error"):
            raise UpstreamToolError(_error_text(result["error"]))
        if result.get("isError"):
            texts = [
                str(item.get("text", ""))
                for item in result.get("content") or []
                if isinstance(item, dict)
            ]
            raise UpstreamToolError(" ".join(t for t in texts if t) or "tool reported an error")
    return result
