"""
Streaming LLM client for progressive text + tool-call responses.

The stream is normalized into three chunk kinds:
- "text": a piece of assistant prose, in arrival order
- "tool_call": a complete tool call announced by the model (emitted once the stream ends,
  after LangChain has merged the partial tool-call chunks)
- "done": the provider's terminal signal (stop/finish reason); absent when the stream
  ended without one

Usage:
    async for chunk in stream_chat(llm, messages, tools=tools):
        if chunk.kind == "text":
            print(chunk.content, end="", flush=True)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Literal, Optional

from mcpchat.chat.types import ChatToolCall
from mcpchat.llm.client import classify_backend_error, message_text, stop_reason_of

# Stop reasons that mean the model ran out of budget mid-answer.
TRUNCATED_STOP_REASONS = {"max_tokens", "length", "MAX_TOKENS"}


@dataclass
class LLMStreamChunk:
    """Single chunk of streamed content."""

    kind: Literal["text", "tool_call", "done"]
    content: str = ""
    tool_call: Optional[ChatToolCall] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


async def stream_chat(
    llm: Any,
    messages: List[Any],
    *,
    tools: Optional[List[Dict[str, Any]]] = None,
) -> AsyncGenerator[LLMStreamChunk, None]:
    """
    Stream one assistant turn from a LangChain chat model.

    Provider exceptions are re-raised as classified `BackendError`s.
    """
    runnable = llm.bind_tools(tools) if tools else llm
    gathered = None
    stop_reason: Optional[str] = None
    try:
        async for chunk in runnable.astream(messages):  # type: ignore[attr-defined]
            text = message_text(chunk)
            if text:
                yield LLMStreamChunk(kind="text", content=text)
            gathered = chunk if gathered is None else gathered + chunk
            stop_reason = stop_reason_of(chunk) or stop_reason
    except Exception as e:
        raise classify_backend_error(e) from e

    if gathered is not None:
        for i, tc in enumerate(getattr(gathered, "tool_calls", None) or []):
            name = str(tc.get("name") or "").strip()
            if not name:
                continue
            yield LLMStreamChunk(
                kind="tool_call",
                tool_call=ChatToolCall(
                    id=str(tc.get("id") or f"call_{i}"),
                    name=name,
                    args=dict(tc.get("args") or {}),
                ),
            )

    if stop_reason:
        yield LLMStreamChunk(
            kind="done",
            metadata={"stop_reason": stop_reason, "truncated": stop_reason in TRUNCATED_STOP_REASONS},
        )
