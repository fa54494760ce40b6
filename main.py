#!/usr/bin/env python3
"""main.py

Developer console for the MCP bridge.
Sends each typed line through the same orchestrator the HTTP API uses, so
sentinels (``#llm:test``, ``#mcp:grafana``, ``#mcp:grafana:tools``) can be
smoke-tested against a real Ollama / MCP server without an HTTP client.
"""

from __future__ import annotations

# Standard Library
import asyncio
import sys

# Third-Party Libraries
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.theme import Theme

# Local Modules
from mcp_bridge.api import BridgeContext
from mcp_bridge.config import BridgeSettings, configure_logging
from mcp_bridge.errors import BridgeError
from mcp_bridge.models import ChatRequest, ConversationMessage, DeltaChunk, Role

# Load environment variables from .env file
load_dotenv()

custom_theme = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "user": "bold blue",
        "assistant": "green",
    }
)
console = Console(theme=custom_theme)


def display_banner(settings: BridgeSettings) -> None:
    """Display the welcome banner and active configuration."""
    console.print(
        Panel(
            f"[bold]{settings.service_name}[/bold] developer console\n"
            f"mode: {settings.mode}   model: {settings.ollama_model}\n"
            f"Ollama: {settings.ollama_host}   MCP: {settings.mcp_url}",
            border_style="cyan",
        )
    )
    console.print()


def display_help(settings: BridgeSettings) -> None:
    """Display available commands and sentinels."""
    help_text = f"""
**Available Commands:**

- `/help` - Show this help message
- `/clear` - Clear conversation history
- `/stream` - Toggle streamed answers
- `/quit` or `/exit` - Exit the console
- Any other text - Send it to the bridge

**Sentinels (last line of your message):**

- `{settings.test_sentinel}` - canned reply, no backend call
- `{settings.tools_list_sentinel}` - list the MCP server tools
- `{settings.tool_sentinel}` - let the model call Grafana tools
    """
    console.print(Panel(Markdown(help_text), title="Help", border_style="cyan"))


def _request(history: list[ConversationMessage], stream: bool) -> ChatRequest:
    return ChatRequest(
        messages=tuple(history),
        prompt_text="\n".join(f"{m.role}: {m.content}" for m in history),
        source="messages",
        stream=stream,
    )


async def _answer(ctx: BridgeContext, history: list[ConversationMessage], stream: bool) -> str:
    """Run one turn and return the full answer text."""
    request = _request(history, stream)
    if not stream:
        with console.status("[bold green]Thinking...", spinner="dots"):
            answer = await ctx.orchestrator.complete(request)
        console.print(
            Panel(
                Markdown(answer.content),
                title="[bold green]bridge[/bold green]",
                border_style="green",
            )
        )
        return answer.content

    pieces: list[str] = []
    async for event in ctx.orchestrator.stream(request):
        if isinstance(event, DeltaChunk):
            pieces.append(event.content)
            console.print(event.content, end="", style="assistant", markup=False)
    console.print()
    return "".join(pieces)


async def _repl(ctx: BridgeContext) -> None:
    history: list[ConversationMessage] = []
    stream = False
    try:
        while True:
            user_input = (await asyncio.to_thread(Prompt.ask, "[bold blue]You[/bold blue]")).strip()
            if not user_input:
                continue

            command = user_input.lower()
            if command in ("/quit", "/exit"):
                console.print("\nGoodbye!\n", style="success")
                return
            if command == "/help":
                display_help(ctx.settings)
                continue
            if command == "/clear":
                history.clear()
                console.print("Conversation history cleared.\n", style="success")
                continue
            if command == "/stream":
                stream = not stream
                console.print(f"Streaming {'on' if stream else 'off'}.\n", style="info")
                continue

            history.append(ConversationMessage(role=Role.USER, content=user_input))
            console.print()
            try:
                text = await _answer(ctx, history, stream)
            except BridgeError as exc:
                history.pop()
                console.print(f"\nError: {exc}\n", style="error")
                console.print("You can continue chatting or type /quit to exit.\n", style="info")
                continue
            history.append(ConversationMessage(role=Role.ASSISTANT, content=text))
            console.print()
    finally:
        await ctx.aclose()


def main() -> None:
    """Main entry point for the developer console."""
    settings = BridgeSettings()
    configure_logging(settings.log_level)
    display_banner(settings)

    try:
        ctx = BridgeContext.build(settings)
    except ValueError as exc:
        console.print(f"Failed to initialize: {exc}", style="error")
        sys.exit(1)

    console.print("Type [bold]/help[/bold] for commands, or start chatting!\n", style="info")
    try:
        asyncio.run(_repl(ctx))
    except KeyboardInterrupt:
        console.print("\n\nInterrupted. Goodbye!\n", style="warning")


if __name__ == "__main__":
    main()
