"""
mcp_bridge/config.py

Runtime configuration for the bridge, loaded from environment variables and
an optional ``.env`` file.

Configure via environment variables:
  BRIDGE_MODE              - ``LLM`` (default) or ``TEST`` (canned replies only)
  BRIDGE_SERVICE_NAME      - service name used for metrics, spans and logs
  BRIDGE_SYSTEM_PROMPT_PATH - directory holding ``system-prompt.mdc``
  OLLAMA_HOST / OLLAMA_MODEL - LLM backend endpoint and default model
  MCP_URL / MCP_API_KEY    - tool server endpoint and bearer token
"""

from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("mcp-bridge.config")

SYSTEM_PROMPT_FILE: str = "system-prompt.mdc"

LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class BridgeMode(StrEnum):
    """Global operation mode."""

    LLM = "LLM"
    TEST = "TEST"


class BridgeSettings(BaseSettings):
    """Runtime configuration loaded from environment variables / .env file.

    Attributes:
        mode: ``LLM`` for normal operation, ``TEST`` to answer every request
            with the canned reply.
        service_name: Name used as metric prefix, tracer name and log label.
        system_prompt_path: Directory containing ``system-prompt.mdc``.
        api_key: Default bearer token forwarded to the tool server.
        ollama_host: Ollama API endpoint.
        ollama_model: Bridge default model tag.
        honor_request_model: Use the client-supplied ``model`` instead of
            forcing the default model.
        mcp_url: Tool server base URL (``/mcp`` is appended).
        test_sentinel: Last-line prefix triggering the canned reply.
        tool_sentinel: Last-line prefix triggering the tool-assisted path.
        tools_list_sentinel: Last-line prefix triggering a direct ``tools/list``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    mode: BridgeMode = Field(
        BridgeMode.LLM,
        alias="BRIDGE_MODE",
        description="Operation mode: LLM or TEST.",
    )
    service_name: str = Field(
        "mcp-bridge",
        alias="BRIDGE_SERVICE_NAME",
        description="Service name for metrics, spans and logs.",
    )
    system_prompt_path: str = Field(
        "./resources",
        alias="BRIDGE_SYSTEM_PROMPT_PATH",
        description="Directory holding system-prompt.mdc.",
    )
    api_key: str = Field(
        "",
        alias="BRIDGE_API_KEY",
        description="Default bearer token forwarded to the tool server.",
    )
    log_level: str = Field(
        "INFO",
        alias="BRIDGE_LOG_LEVEL",
        description="Root logging level.",
    )
    host: str = Field(
        "0.0.0.0",  # nosec B104 - intentional for server binding
        alias="BRIDGE_HOST",
        description="Bind address for the HTTP server.",
    )
    port: int = Field(
        3001,
        alias="BRIDGE_PORT",
        description="Bind port for the HTTP server.",
    )
    ollama_host: str = Field(
        "http://localhost:11434",
        alias="OLLAMA_HOST",
        description="Ollama API endpoint.",
    )
    ollama_model: str = Field(
        "llama3.1:8b-instruct-q4_K_M",
        alias="OLLAMA_MODEL",
        description="Bridge default model tag.",
    )
    honor_request_model: bool = Field(
        False,
        alias="BRIDGE_HONOR_REQUEST_MODEL",
        description=(
            "Use the model named by the client.  When false the bridge "
            "default model is forced for every call."
        ),
    )
    llm_timeout: float = Field(
        120.0,
        alias="BRIDGE_LLM_TIMEOUT",
        description="Seconds to wait for each LLM call.",
    )
    mcp_url: str = Field(
        "http://mcp-grafana:8000",
        alias="MCP_URL",
        description="Tool server base URL.",
    )
    mcp_api_key: str = Field(
        "",
        alias="MCP_API_KEY",
        description="Bearer token for the tool server.",
    )
    mcp_timeout: float = Field(
        30.0,
        alias="MCP_TIMEOUT",
        description="Seconds to wait for each MCP call.",
    )
    prometheus_datasource_uid: str = Field(
        "Prometheus",
        alias="MCP_PROMETHEUS_DATASOURCE",
        description="Datasource uid used by the metric tools.",
    )
    test_sentinel: str = Field(
        "#llm:test",
        alias="BRIDGE_TEST_SENTINEL",
        description="Last-line prefix that short-circuits to the canned reply.",
    )
    tool_sentinel: str = Field(
        "#mcp:grafana",
        alias="BRIDGE_TOOL_SENTINEL",
        description="Last-line prefix that enables the tool-assisted path.",
    )
    tools_list_sentinel: str = Field(
        "#mcp:grafana:tools",
        alias="BRIDGE_TOOLS_LIST_SENTINEL",
        description="Last-line prefix that returns the tool server catalogue.",
    )
    canned_reply: str = Field(
        "Lorem ipsum dolor sit amet",
        alias="BRIDGE_CANNED_REPLY",
        description="Reply content used in test mode.",
    )

    @property
    def mcp_token(self) -> str:
        """Bearer token used for MCP calls when the request carries none."""
        return self.mcp_api_key or self.api_key


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process.

    Args:
        level: Logging level name, e.g. ``"DEBUG"``.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def load_system_prompt(settings: BridgeSettings) -> str:
    """Read the system prompt file, returning ``""`` when it is unavailable.

    Args:
        settings: Active settings; ``system_prompt_path`` locates the file.

    Returns:
        The prompt text, or an empty string if the file cannot be read.
    """
    path = Path(settings.system_prompt_path) / SYSTEM_PROMPT_FILE
    logger.debug("[bridge] loading MCP system prompt from %s", path)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("[bridge] failed to load MCP system prompt: %s", exc)
        return ""
