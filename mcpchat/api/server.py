"""
Chat HTTP server.

Serves the persona table, the connected tool list, and chat turns in two shapes:
- `POST /api/v1/chat`: blocking JSON reply
- `POST /api/v1/chat/stream`: Server-Sent Events (`chunk`, `error`, then `done`)

Each `session_id` maps to one orchestrator (one transcript). The tool backend is
process-wide and connected at startup when MCP_SERVER is set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import threading
import time
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from mcpchat.authz.policy import ChatPolicy, load_chat_policy
from mcpchat.chat.personas import DEFAULT_PERSONA_ID, list_personas
from mcpchat.chat.runtime import QueryOrchestrator, build_orchestrator
from mcpchat.chat.tools import ToolRegistry
from mcpchat.chat.types import ChatRequest, ChatResponse, InboundTurn
from mcpchat.providers.mcp_provider import ToolBackendClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_SESSIONS = 1000

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def new_session_id() -> str:
    return f"sess_{secrets.token_hex(8)}"


class ChatSessions:
    """In-memory session registry (least recently used sessions are evicted first)."""

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        tool_backend: Any,
        llm: Any = None,
        policy: Optional[ChatPolicy] = None,
        rate_limiter: Any = None,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        self.registry = registry
        self.tool_backend = tool_backend
        self._llm = llm
        self._policy = policy
        self._rate_limiter = rate_limiter
        self._max_sessions = max(1, int(max_sessions))
        self._sessions: "OrderedDict[str, QueryOrchestrator]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get_or_create(self, session_id: Optional[str]) -> Tuple[str, QueryOrchestrator]:
        sid = str(session_id or "").strip() or new_session_id()
        with self._lock:
            orch = self._sessions.get(sid)
            if orch is not None:
                self._sessions.move_to_end(sid)
                return sid, orch
            orch = build_orchestrator(
                registry=self.registry,
                tool_backend=self.tool_backend,
                llm=self._llm,
                policy=self._policy,
                rate_limiter=self._rate_limiter,
            )
            self._sessions[sid] = orch
            while len(self._sessions) > self._max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("Evicted chat session %s", evicted)
            return sid, orch


_sessions: Optional[ChatSessions] = None
_sessions_lock = threading.Lock()


def get_chat_sessions() -> ChatSessions:
    global _sessions
    with _sessions_lock:
        if _sessions is None:
            policy = load_chat_policy()
            _sessions = ChatSessions(
                registry=ToolRegistry(limit_cap=policy.tool_limit_cap, result_max_bytes=policy.tool_result_max_bytes),
                tool_backend=ToolBackendClient(),
                policy=policy,
            )
        return _sessions


def set_chat_sessions(sessions: Optional[ChatSessions]) -> None:
    """Replace the process-wide session registry (tests, CLI)."""
    global _sessions
    with _sessions_lock:
        _sessions = sessions


app = FastAPI(title="MCP chat server")


@app.on_event("startup")
async def _startup_connect_tool_server() -> None:
    """
    Connect the tool backend when MCP_SERVER is set.

    This should never prevent the server from starting; failures are logged and chat
    runs without tools.
    """
    endpoint = (os.getenv("MCP_SERVER") or "").strip()
    if not endpoint:
        logger.info("MCP_SERVER not set; chat runs without tools")
        return
    sessions = get_chat_sessions()
    try:
        conn = await sessions.tool_backend.connect(endpoint)
    except Exception as e:
        logger.warning("Tool server connection to %s failed: %s", endpoint, str(e))
        return
    sessions.registry.clear()
    sessions.registry.register(conn.tools)


@app.on_event("shutdown")
async def _shutdown_close_tool_server() -> None:
    backend = get_chat_sessions().tool_backend
    if getattr(backend, "is_connected", False):
        await backend.close()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/api/v1/personas")
def personas() -> Dict[str, Any]:
    return {"default": DEFAULT_PERSONA_ID, "personas": [p.to_public_dict() for p in list_personas()]}


@app.get("/api/v1/tools")
def tools() -> Dict[str, Any]:
    sessions = get_chat_sessions()
    return {
        "connected": bool(getattr(sessions.tool_backend, "is_connected", False)),
        "tools": [t.model_dump() for t in sessions.registry.get_tools()],
    }


def _caller_id(request: Request, req: ChatRequest) -> str:
    if req.caller_id:
        return str(req.caller_id)
    client = request.client
    return client.host if client is not None else "anonymous"


def _inbound(request: Request, req: ChatRequest) -> InboundTurn:
    return InboundTurn(
        text=req.message,
        chat_id=req.chat_id,
        persona_id=req.persona_id,
        caller_id=_caller_id(request, req),
    )


@app.post("/api/v1/chat")
async def chat(request: Request, req: ChatRequest) -> JSONResponse:
    """Blocking chat endpoint."""
    session_id, orch = get_chat_sessions().get_or_create(req.session_id)
    outcome = await orch.run_blocking(_inbound(request, req))
    body = ChatResponse(chat_id=outcome.chat_id, reply=outcome.text, state=outcome.state, error_kind=outcome.error_kind)
    content = {"session_id": session_id, **body.model_dump()}
    status_code = 429 if outcome.error_kind == "rate_limited" else 200
    return JSONResponse(status_code=status_code, content=content)


def _format_sse_event(event_type: str, data: Dict[str, Any]) -> str:
    """Format data as Server-Sent Event."""
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


_END = object()


async def _chat_event_stream(session_id: str, orch: QueryOrchestrator, turn: InboundTurn) -> AsyncIterator[str]:
    """
    Run one streaming turn and re-emit its chunks as SSE events.

    The newest chunk is held back until the next one arrives: when the turn ends in an
    error, that last chunk is the error payload and goes out as an `error` event.
    """
    queue: asyncio.Queue = asyncio.Queue()

    def sink(chunk: str) -> None:
        queue.put_nowait(chunk)

    task = asyncio.create_task(orch.process_streaming(turn, sink))
    task.add_done_callback(lambda _t: queue.put_nowait(_END))
    held: Optional[str] = None
    try:
        while True:
            item = await queue.get()
            if item is _END:
                break
            if held is not None:
                yield _format_sse_event("chunk", {"content": held})
            held = item

        outcome = task.result()
        if held is not None:
            if outcome.state == "error":
                yield _format_sse_event("error", json.loads(held))
            else:
                yield _format_sse_event("chunk", {"content": held})
        yield _format_sse_event(
            "done",
            {
                "session_id": session_id,
                "chat_id": outcome.chat_id,
                "state": outcome.state,
                "error_kind": outcome.error_kind,
                "tool_calls": outcome.tool_calls,
            },
        )
    finally:
        if not task.done():
            logger.info("Client went away; cancelling chat turn for session %s", session_id)
            task.cancel()


@app.post("/api/v1/chat/stream")
async def chat_stream(request: Request, req: ChatRequest) -> StreamingResponse:
    """Streaming chat endpoint using Server-Sent Events."""
    session_id, orch = get_chat_sessions().get_or_create(req.session_id)
    return StreamingResponse(
        _chat_event_stream(session_id, orch, _inbound(request, req)),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting chat server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
