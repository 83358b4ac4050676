"""
MCP tool backend client.

Connects to one tool server over either transport the MCP SDK offers:
- a local subprocess speaking stdio (`.py` scripts run with this interpreter, `.js`
  with node, anything else executed directly)
- a network SSE endpoint (`http://` / `https://` URL)

The session is opened once and reused for every turn. Invocations are serialized on a
lock because one stdio pipe carries one request/response exchange at a time.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import sys
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from pydantic import BaseModel, Field

from mcpchat.chat.errors import ToolInvocationError
from mcpchat.chat.types import ToolDescriptor
from mcpchat.graphs.tracing import trace_tool_call

logger = logging.getLogger(__name__)


class ToolBackendNotConnected(ToolInvocationError):
    def __init__(self, message: str = "Not connected to an MCP server"):
        super().__init__(message)


class ToolConnection(BaseModel):
    endpoint: str
    transport: str
    tools: List[ToolDescriptor] = Field(default_factory=list)


class ToolInvocationResult(BaseModel):
    content: Any = None
    is_error: bool = False


def is_network_endpoint(endpoint: str) -> bool:
    e = str(endpoint or "").strip().lower()
    return e.startswith("http://") or e.startswith("https://")


def stdio_params_for(endpoint: str) -> StdioServerParameters:
    """
    Build subprocess parameters for a local server path.

    `endpoint` may carry extra arguments after the path ("server.py --flag").
    """
    parts = shlex.split(str(endpoint or "").strip())
    if not parts:
        raise ValueError("empty tool server path")
    path, extra = parts[0], parts[1:]
    if path.endswith(".py"):
        return StdioServerParameters(command=sys.executable, args=[path, *extra])
    if path.endswith(".js") or path.endswith(".mjs"):
        return StdioServerParameters(command="node", args=[path, *extra])
    return StdioServerParameters(command=path, args=extra)


def _descriptor(tool: Any) -> ToolDescriptor:
    schema = getattr(tool, "inputSchema", None) or getattr(tool, "input_schema", None) or {}
    return ToolDescriptor(
        name=str(getattr(tool, "name", "") or ""),
        description=str(getattr(tool, "description", "") or ""),
        input_schema=dict(schema) if isinstance(schema, dict) else {"type": "object", "properties": {}},
    )


def result_content(result: Any) -> Any:
    """Flatten a CallToolResult into text (or structured content when that's all there is)."""
    parts: List[str] = []
    for block in getattr(result, "content", None) or []:
        if getattr(block, "type", None) == "text":
            parts.append(str(getattr(block, "text", "") or ""))
        elif hasattr(block, "model_dump"):
            parts.append(str(block.model_dump(mode="json")))
    if parts:
        return "\n".join(parts)
    return getattr(result, "structuredContent", None)


class ToolBackendClient:
    def __init__(self) -> None:
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None
        self._connection: Optional[ToolConnection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    @property
    def connection(self) -> Optional[ToolConnection]:
        return self._connection

    async def connect(self, endpoint: str) -> ToolConnection:
        """Open a session to `endpoint` and return the tools it declares."""
        if self.is_connected:
            await self.close()

        transport = "sse" if is_network_endpoint(endpoint) else "stdio"
        stack = AsyncExitStack()
        try:
            if transport == "sse":
                read, write = await stack.enter_async_context(sse_client(str(endpoint).strip()))
            else:
                read, write = await stack.enter_async_context(stdio_client(stdio_params_for(endpoint)))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            listed = await session.list_tools()
        except BaseException:
            await stack.aclose()
            raise

        tools = [_descriptor(t) for t in getattr(listed, "tools", None) or []]
        tools = [t for t in tools if t.name]
        self._stack = stack
        self._session = session
        self._connection = ToolConnection(endpoint=str(endpoint), transport=transport, tools=tools)
        logger.info("Connected to tool server %s over %s (%d tools)", endpoint, transport, len(tools))
        return self._connection

    async def invoke(self, name: str, args: Dict[str, Any]) -> ToolInvocationResult:
        session = self._session
        if session is None:
            raise ToolBackendNotConnected()

        async def _call() -> Any:
            async with self._lock:
                return await session.call_tool(name, dict(args or {}))

        result = await trace_tool_call(tool=name, args=args, fn=_call)
        return ToolInvocationResult(content=result_content(result), is_error=bool(getattr(result, "isError", False)))

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        self._session = None
        self._connection = None
        if stack is not None:
            await stack.aclose()
            logger.info("Tool server connection closed")
