"""
mcp_bridge/orchestrator.py

Chat-completion orchestration engine.

State machine, one pass per inbound request:

  RECEIVED -> MODE_SELECT -> TEST_SHORT_CIRCUIT ------------------> FINALIZE -> DONE
                          -> DIRECT_ANSWER -----------------------> FINALIZE
                          -> MCP_TOOLS_LIST ----------------------> FINALIZE
                          -> MCP_ANALYSIS -> [MCP_EXECUTE] -------> FINALIZE

Mode is chosen from the *last line* of the last user message:
  <test_sentinel>...        canned reply, no backend call
  <tools_list_sentinel>...  tool server ``tools/list``, no LLM call
  <tool_sentinel>...        tool-assisted path ("opinion" call with catalogue)
  anything else             direct answer

The tool-assisted path runs at most one batch of tool calls.  The follow-up
answer call never carries the catalogue, so tools cannot be chained.

Known ambiguity: only the final line is inspected, but any multi-line message
whose last line happens to start with a sentinel switches mode.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from enum import StrEnum
from typing import Any

from .config import BridgeMode, BridgeSettings
from .errors import AnalysisDecodeError, UpstreamLLMError
from .instrumentation import Instrumentation
from .llm import LLMClient
from .models import (
    ChatRequest,
    ConversationMessage,
    DeltaChunk,
    Done,
    FinalText,
    LLMReply,
    Role,
    ToolCall,
    ToolResult,
)
from .tools import ToolRegistry
from .wire import decode_arguments

logger = logging.getLogger("mcp-bridge.orchestrator")

TOOL_RESULTS_INSTRUCTION: str = (
    "The tools requested above have already run and their results are in the "
    "tool messages.  Answer the user's last request using ONLY those results. "
    "If a tool result contains an error, explain the failure to the user. "
    "Do NOT request further tool calls."
)


class Mode(StrEnum):
    """Operation modes selected from the last user line."""

    TEST = "TEST"
    TOOLS_LIST = "TOOLS_LIST"
    MCP = "MCP"
    DIRECT = "DIRECT"


class State(StrEnum):
    RECEIVED = "RECEIVED"
    MODE_SELECT = "MODE_SELECT"
    TEST_SHORT_CIRCUIT = "TEST_SHORT_CIRCUIT"
    DIRECT_ANSWER = "DIRECT_ANSWER"
    MCP_TOOLS_LIST = "MCP_TOOLS_LIST"
    MCP_ANALYSIS = "MCP_ANALYSIS"
    MCP_EXECUTE = "MCP_EXECUTE"
    FINALIZE = "FINALIZE"
    DONE = "DONE"


class Outcome(StrEnum):
    """How a turn was resolved."""

    CANNED = "canned"
    DIRECT = "direct"
    TOOLS_LISTED = "tools_listed"
    TOOLS_DECLINED = "tools_declined"
    TOOLS_EXECUTED = "tools_executed"


@dataclasses.dataclass(slots=True)
class Turn:
    """Request-scoped working state.

    Attributes:
        request: The immutable parsed request.
        model: Model used for every backend call of this turn.
        state: Current state.
        history: States visited, in order.
        conversation: Working copy of the conversation; append-only.
        opinion: Reply of the tool-routing LLM call, if one was made.
        tool_calls: Calls selected for execution.
        tool_results: Results of the executed batch, in call order.
        resolved_text: Answer known before FINALIZE, or ``None`` when the
            final answer still has to be generated by the LLM.
        outcome: How the turn was resolved.
        answer: The final answer once the turn is complete (non-streaming).
    """

    request: ChatRequest
    model: str
    state: State = State.RECEIVED
    history: list[State] = dataclasses.field(default_factory=lambda: [State.RECEIVED])
    conversation: list[ConversationMessage] = dataclasses.field(default_factory=list)
    mode: Mode | None = None
    opinion: LLMReply | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_results: list[ToolResult] = dataclasses.field(default_factory=list)
    resolved_text: str | None = None
    outcome: Outcome | None = None
    answer: FinalText | None = None

    def advance(self, state: State) -> None:
        logger.debug("[orchestrator] %s -> %s", self.state, state)
        self.state = state
        self.history.append(state)

    def append(self, message: ConversationMessage) -> None:
        self.conversation.append(message)


# ---------------------------------------------------------------------------
# Mode selection
# ---------------------------------------------------------------------------


def last_line(text: str) -> str:
    """Return the final ``\\n``-separated line of ``text`` (may be empty)."""
    return text.split("\n")[-1]


def select_mode(request: ChatRequest, settings: BridgeSettings) -> Mode:
    """Pick the operation mode for a request.

    Args:
        request: Parsed request.
        settings: Sentinels and the global mode.

    Returns:
        The selected :class:`Mode`.
    """
    if settings.mode is BridgeMode.TEST:
        return Mode.TEST
    message = request.last_user_message()
    if message is None:
        return Mode.DIRECT
    line = last_line(message.content)
    if line.startswith(settings.test_sentinel):
        return Mode.TEST
    # The tools-list sentinel extends the tool sentinel, so it is checked first.
    if line.startswith(settings.tools_list_sentinel):
        return Mode.TOOLS_LIST
    if line.startswith(settings.tool_sentinel):
        return Mode.MCP
    return Mode.DIRECT


# ---------------------------------------------------------------------------
# Tool calls written as text
# ---------------------------------------------------------------------------

_FENCE_OPEN: re.Pattern[str] = re.compile(r"^```[a-z]*\n?", re.IGNORECASE)
_FENCE_CLOSE: re.Pattern[str] = re.compile(r"\n?```$")


def decode_text_tool_calls(text: str) -> tuple[ToolCall, ...]:
    """Recover tool calls that a model wrote as JSON into its reply content.

    Small models sometimes answer an opinion call with
    ``{"name": "getDashboards", "arguments": {}}`` (possibly fenced in
    Markdown) instead of structured ``tool_calls``.  Plain prose yields no
    calls.

    Raises:
        AnalysisDecodeError: If the text looks like JSON but is not a valid
            tool call (or list of tool calls).
    """
    clean = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip())).strip()
    if not clean.startswith(("{", "[")):
        return ()
    try:
        parsed: Any = json.loads(clean)
    except json.JSONDecodeError as exc:
        raise AnalysisDecodeError(f"reply is not valid JSON: {exc}", raw_text=text) from exc

    items = parsed if isinstance(parsed, list) else [parsed]
    calls: list[ToolCall] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise AnalysisDecodeError("tool call entry is not an object", raw_text=text)
        function = item.get("function") if isinstance(item.get("function"), dict) else item
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise AnalysisDecodeError("tool call entry has no name", raw_text=text)
        try:
            arguments = decode_arguments(function.get("arguments", function.get("parameters")))
        except ValueError as exc:
            raise AnalysisDecodeError(f"invalid tool arguments: {exc}", raw_text=text) from exc
        calls.append(ToolCall(id=f"call_{index}", name=name, arguments=arguments))
    return tuple(calls)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Drives one request through the state machine.

    Holds no per-request state; every call works on a fresh :class:`Turn`.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        registry: ToolRegistry,
        llm: LLMClient,
        instrumentation: Instrumentation,
        *,
        system_prompt: str = "",
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.llm = llm
        self.instrumentation = instrumentation
        self.system_prompt = system_prompt
        self._handlers: dict[State, Callable[[Turn], Awaitable[State]]] = {
            State.RECEIVED: self._received,
            State.MODE_SELECT: self._mode_select,
            State.TEST_SHORT_CIRCUIT: self._test_short_circuit,
            State.DIRECT_ANSWER: self._direct_answer,
            State.MCP_TOOLS_LIST: self._tools_list,
            State.MCP_ANALYSIS: self._mcp_analysis,
            State.MCP_EXECUTE: self._mcp_execute,
        }

    def model_for(self, request: ChatRequest) -> str:
        if self.settings.honor_request_model and request.model:
            return request.model
        return self.settings.ollama_model

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def resolve(self, request: ChatRequest) -> Turn:
        """Run every state up to FINALIZE.

        Raises:
            UpstreamLLMError: If the opinion call fails.
        """
        turn = Turn(request=request, model=self.model_for(request))

        async def _drive() -> Turn:
            while turn.state is not State.FINALIZE:
                turn.advance(await self._handlers[turn.state](turn))
            return turn

        return await self.instrumentation.with_span(
            "orchestrator.resolve",
            {"source": request.source, "stream": request.stream},
            _drive,
        )

    async def run(self, request: ChatRequest) -> Turn:
        """Resolve a request and produce the whole answer in one piece."""
        turn = await self.resolve(request)
        if turn.resolved_text is not None:
            text = turn.resolved_text
        else:
            reply = await self.instrumentation.with_span(
                "llm.answer",
                {"model": turn.model, "messages": len(turn.conversation)},
                lambda: self._call_llm("answer", turn.model, turn.conversation),
            )
            text = reply.content
        turn.answer = FinalText(content=text)
        turn.advance(State.DONE)
        logger.info("[orchestrator] turn done outcome=%s chars=%d", turn.outcome, len(text))
        return turn

    async def complete(self, request: ChatRequest) -> FinalText:
        turn = await self.run(request)
        return turn.answer or FinalText(content="")

    async def stream(self, request: ChatRequest) -> AsyncIterator[DeltaChunk | Done]:
        """Resolve a request and yield the answer incrementally.

        Backend pieces are passed through verbatim; an answer resolved
        before FINALIZE is yielded as a single piece.
        """
        turn = await self.resolve(request)
        if turn.resolved_text is not None:
            if turn.resolved_text:
                yield DeltaChunk(turn.resolved_text)
        else:
            self.instrumentation.ollama_requests.inc()
            with self.instrumentation.ollama_latency.time():
                try:
                    async with aclosing(self.llm.stream(turn.model, turn.conversation)) as pieces:
                        async for piece in pieces:
                            yield DeltaChunk(piece)
                except UpstreamLLMError as exc:
                    self.instrumentation.ollama_errors.inc()
                    logger.error("[orchestrator] LLM stream for an answer failed: %s", exc)
                    raise
        turn.advance(State.DONE)
        logger.info("[orchestrator] stream done outcome=%s", turn.outcome)
        yield Done()

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _received(self, turn: Turn) -> State:
        turn.conversation = list(turn.request.messages)
        return State.MODE_SELECT

    async def _mode_select(self, turn: Turn) -> State:
        turn.mode = select_mode(turn.request, self.settings)
        self.instrumentation.log(
            logging.INFO, "[orchestrator] mode selected", mode=turn.mode, model=turn.model
        )
        return {
            Mode.TEST: State.TEST_SHORT_CIRCUIT,
            Mode.TOOLS_LIST: State.MCP_TOOLS_LIST,
            Mode.MCP: State.MCP_ANALYSIS,
            Mode.DIRECT: State.DIRECT_ANSWER,
        }[turn.mode]

    async def _test_short_circuit(self, turn: Turn) -> State:
        logger.warning("[orchestrator] test mode active")
        turn.resolved_text = self.settings.canned_reply
        turn.outcome = Outcome.CANNED
        return State.FINALIZE

    async def _direct_answer(self, turn: Turn) -> State:
        turn.outcome = Outcome.DIRECT
        return State.FINALIZE

    async def _tools_list(self, turn: Turn) -> State:
        logger.debug("[orchestrator] MCP tools list requested")
        result = await self.registry.list_remote(api_key=turn.request.api_key_override)
        turn.tool_results = [result]
        turn.resolved_text = result.to_content()
        turn.outcome = Outcome.TOOLS_LISTED
        return State.FINALIZE

    async def _mcp_analysis(self, turn: Turn) -> State:
        if self.system_prompt:
            turn.conversation = [
                ConversationMessage(role=Role.SYSTEM, content=self.system_prompt),
                *turn.conversation,
            ]
        tools = self.registry.schemas()
        logger.debug(
            "[orchestrator] MCP call requested, tools=%s", [t.name for t in self.registry.list()]
        )

        try:
            reply = await self.instrumentation.with_span(
                "llm.opinion",
                {"model": turn.model, "tools": len(tools)},
                lambda: self._call_llm("MCP opinion", turn.model, turn.conversation, tools),
            )
            turn.opinion = reply
            calls = reply.tool_calls or decode_text_tool_calls(reply.content)
        except AnalysisDecodeError as exc:
            logger.warning("[orchestrator] undecodable LLM opinion, using it as the answer: %s", exc)
            turn.resolved_text = exc.raw_text
            turn.outcome = Outcome.TOOLS_DECLINED
            return State.FINALIZE

        logger.debug("[orchestrator] LLM opinion: %d tool calls", len(calls))
        if not calls:
            self.instrumentation.log(
                logging.WARNING, "[orchestrator] LLM declined to use tools", model=turn.model
            )
            turn.resolved_text = reply.content or None
            turn.outcome = Outcome.TOOLS_DECLINED
            return State.FINALIZE

        turn.tool_calls = calls
        return State.MCP_EXECUTE

    async def _mcp_execute(self, turn: Turn) -> State:
        results = await self.instrumentation.with_span(
            "mcp.execute",
            {"tool_calls": len(turn.tool_calls)},
            lambda: self.registry.dispatch_batch(
                turn.tool_calls, api_key=turn.request.api_key_override
            ),
        )
        turn.tool_results = results

        turn.append(
            ConversationMessage(
                role=Role.ASSISTANT,
                content="",
                tool_calls=turn.tool_calls,
            )
        )
        for result in results:
            turn.append(
                ConversationMessage(
                    role=Role.TOOL, content=result.to_content(), tool_name=result.name
                )
            )
        turn.append(ConversationMessage(role=Role.SYSTEM, content=TOOL_RESULTS_INSTRUCTION))

        self.instrumentation.log(
            logging.INFO,
            "[orchestrator] MCP call executed",
            tools=len(results),
            failed=sum(1 for r in results if not r.ok),
        )
        turn.outcome = Outcome.TOOLS_EXECUTED
        return State.FINALIZE

    # ------------------------------------------------------------------
    # Backend call wrapper
    # ------------------------------------------------------------------

    async def _call_llm(
        self,
        purpose: str,
        model: str,
        conversation: list[ConversationMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMReply:
        self.instrumentation.ollama_requests.inc()
        with self.instrumentation.ollama_latency.time():
            try:
                return await self.llm.chat(model, conversation, tools)
            except UpstreamLLMError as exc:
                self.instrumentation.ollama_errors.inc()
                logger.error("[orchestrator] LLM call for %s failed: %s", purpose, exc)
                raise
