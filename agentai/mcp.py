"""MCP bridge for agentai.

Connects to Model-Context-Protocol servers, discovers their tools and exposes
each one as a registry entry whose handler forwards calls over the server's
session.

Usage:
    servers = [
        McpServerConfig(name="time", command="uvx", args=["mcp-server-time"]),
        McpServerConfig(name="docs", url="http://localhost:8000/mcp"),
    ]
    async with Agent("You are helpful.", mcp_servers=servers) as agent:
        result = await agent.run("gpt-4o", "What time is it in Tokyo?")

Lifecycle:
    1. Open the transport (stdio subprocess or streamable HTTP)
    2. Handshake via session.initialize() under init_timeout
    3. Discover tools via session.list_tools()
    4. Forward calls via session.call_tool(), one at a time per connection
    5. Close the transport exactly once when the owning agent exits
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
from contextlib import AsyncExitStack
from typing import Any

from pydantic import BaseModel, Field, model_validator

from agentai.errors import McpConnectionError, RemoteToolError
from agentai.tools import ToolDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MCP_INIT_TIMEOUT: float = 30.0
"""Seconds to wait for each MCP server to initialize."""


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class McpServerConfig(BaseModel):
    """How to reach one MCP server: a stdio command or a streamable HTTP url."""

    name: str
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] | None = None
    tool_prefix: str | None = None
    init_timeout: float = DEFAULT_MCP_INIT_TIMEOUT

    @model_validator(mode="after")
    def _one_transport(self) -> "McpServerConfig":
        if bool(self.command) == bool(self.url):
            raise ValueError(
                f"MCP server {self.name!r} needs exactly one of 'command' (stdio) or 'url' (http)"
            )
        return self

    @property
    def transport(self) -> str:
        return "stdio" if self.command else "http"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (stdio_client, StdioServerParameters, ClientSession, streamablehttp_client)
    """
    try:
        from mcp import ClientSession
        from mcp.client.stdio import (
            StdioServerParameters,
            stdio_client,
        )
        from mcp.client.streamable_http import streamablehttp_client
    except ImportError:
        raise ImportError(
            "mcp package is required for MCP tools. "
            "Install with: pip install mcp"
        ) from None
    return stdio_client, StdioServerParameters, ClientSession, streamablehttp_client


def _content_to_text(mcp_result: Any) -> str:
    parts: list[str] = []
    for content_item in getattr(mcp_result, "content", None) or []:
        text = getattr(content_item, "text", None)
        if isinstance(text, str):
            parts.append(text)
        elif hasattr(content_item, "model_dump"):
            parts.append(_json.dumps(content_item.model_dump(mode="json")))
        else:
            parts.append(str(content_item))
    return "\n".join(parts)


class McpServerConnection:
    """One live session to one MCP server.

    The underlying session is not safe for concurrent requests, so calls are
    serialised with a per-connection lock. Tools on different connections
    still run in parallel.
    """

    def __init__(self, config: McpServerConfig) -> None:
        self.config = config
        self.session: Any = None
        self._stack: AsyncExitStack | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_open(self) -> bool:
        return self.session is not None and not self._closed

    async def open(self) -> "McpServerConnection":
        if self._stack is not None or self._closed:
            raise McpConnectionError(
                f"MCP connection {self.name!r} cannot be reopened", server=self.name,
            )
        stdio_client, StdioServerParameters, ClientSession, streamablehttp_client = _import_mcp()
        stack = AsyncExitStack()
        self._stack = stack
        cfg = self.config
        try:
            if cfg.command:
                params = StdioServerParameters(
                    command=cfg.command,
                    args=cfg.args,
                    env=cfg.env,
                    cwd=cfg.cwd,
                )
                read_stream, write_stream = await stack.enter_async_context(
                    stdio_client(params)
                )
            else:
                streams = await stack.enter_async_context(
                    streamablehttp_client(cfg.url, headers=cfg.headers)
                )
                read_stream, write_stream = streams[0], streams[1]
            session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream)
            )
            await asyncio.wait_for(session.initialize(), timeout=cfg.init_timeout)
        except asyncio.CancelledError:
            await self.close()
            raise
        except Exception as exc:
            await self.close()
            raise McpConnectionError(
                f"Failed to connect to MCP server {self.name!r} ({cfg.transport}): "
                f"{type(exc).__name__}: {exc}",
                server=self.name,
                original=exc,
            ) from exc
        self.session = session
        logger.info("Connected to MCP server %r over %s", self.name, cfg.transport)
        return self

    async def list_tools(self) -> list[Any]:
        self._require_open()
        try:
            async with self._lock:
                result = await self.session.list_tools()
        except Exception as exc:
            raise McpConnectionError(
                f"Tool discovery failed on MCP server {self.name!r}: {exc}",
                server=self.name,
                original=exc,
            ) from exc
        return list(result.tools or [])

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        self._require_open()
        try:
            async with self._lock:
                mcp_result = await self.session.call_tool(tool_name, arguments)
        except Exception as exc:
            raise RemoteToolError(
                f"MCP server {self.name!r} failed on {tool_name!r}: {type(exc).__name__}: {exc}",
                tool_name=tool_name,
                original=exc,
            ) from exc
        text = _content_to_text(mcp_result)
        if getattr(mcp_result, "isError", False):
            raise RemoteToolError(text or f"{tool_name} returned an error", tool_name=tool_name)
        return text

    async def close(self) -> None:
        """Close the transport. Safe to call more than once; only the first call acts."""
        if self._closed:
            return
        self._closed = True
        stack, self._stack = self._stack, None
        self.session = None
        if stack is not None:
            try:
                await stack.aclose()
            except Exception as exc:
                logger.warning("Error while closing MCP server %r: %s", self.name, exc)
            else:
                logger.info("Closed MCP server %r", self.name)

    def _require_open(self) -> None:
        if not self.is_open:
            raise McpConnectionError(
                f"MCP connection {self.name!r} is not open", server=self.name,
            )

    async def __aenter__(self) -> "McpServerConnection":
        if self.session is None:
            await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


def _mcp_tool_to_descriptor(tool: Any, prefix: str | None = None) -> ToolDescriptor:
    """Convert an MCP Tool object to a ToolDescriptor.

    MCP: {"name": "foo", "description": "...", "inputSchema": {...}}
    """
    parameters = tool.inputSchema if isinstance(tool.inputSchema, dict) else {}
    parameters = dict(parameters) or {"type": "object", "properties": {}}
    parameters.setdefault("type", "object")
    if not isinstance(parameters.get("properties", {}), dict):
        parameters["properties"] = {}
    name = f"{prefix}{tool.name}" if prefix else tool.name
    return ToolDescriptor(
        name=name,
        description=tool.description or "",
        parameters=parameters,
    )


class McpTool:
    """Handler proxying one remote tool through its server connection."""

    def __init__(
        self,
        connection: McpServerConnection,
        descriptor: ToolDescriptor,
        remote_name: str,
    ) -> None:
        self.connection = connection
        self.descriptor = descriptor
        self.remote_name = remote_name
        self.source = f"mcp:{connection.name}"

    async def invoke(self, arguments: dict[str, Any]) -> str:
        return await self.connection.call_tool(self.remote_name, arguments)

    def __repr__(self) -> str:
        return f"McpTool(name={self.descriptor.name!r}, server={self.connection.name!r})"


async def connect(config: McpServerConfig) -> McpServerConnection:
    """Open and handshake one MCP server. Raises McpConnectionError."""
    return await McpServerConnection(config).open()


async def discover_tools(connection: McpServerConnection) -> list[McpTool]:
    """List a server's tools and wrap each as a handler."""
    tools = await connection.list_tools()
    handlers = [
        McpTool(
            connection,
            _mcp_tool_to_descriptor(t, connection.config.tool_prefix),
            t.name,
        )
        for t in tools
    ]
    logger.info(
        "MCP server %r advertises %d tools: %s",
        connection.name, len(handlers), [h.descriptor.name for h in handlers],
    )
    return handlers


async def invoke(connection: McpServerConnection, tool_name: str, arguments: dict[str, Any]) -> str:
    """Forward one call to a server. Raises RemoteToolError."""
    return await connection.call_tool(tool_name, arguments)


async def bridge_servers(
    configs: list[McpServerConfig],
    stack: AsyncExitStack,
) -> list[McpTool]:
    """Connect every server and discover its tools.

    Each connection's close is registered on *stack*; a failure on any server
    raises McpConnectionError after the stack has been left to close the ones
    already opened.
    """
    handlers: list[McpTool] = []
    for cfg in configs:
        connection = McpServerConnection(cfg)
        stack.push_async_callback(connection.close)
        await connection.open()
        handlers.extend(await discover_tools(connection))
    logger.info("MCP bridge: %d tools from %d servers", len(handlers), len(configs))
    return handlers
