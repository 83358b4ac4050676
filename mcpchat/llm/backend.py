"""
Chat backend used by the orchestrator, the resolver and the safety gate.

Wraps the LangChain model factory so callers deal in transcript turns and tool schemas
rather than provider objects. Tests inject their own object with the same methods.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from mcpchat.chat.errors import BackendError
from mcpchat.chat.types import ChatToolCall, ChatTurn
from mcpchat.llm.client import (
    _get_llm_instance,
    _load_config,
    _provider,
    classify_backend_error,
    config_with_budget,
    message_text,
    mock_enabled,
    stop_reason_of,
    to_langchain_messages,
)
from mcpchat.llm.client_streaming import LLMStreamChunk, stream_chat

logger = logging.getLogger(__name__)

# Model construction failures are all configuration problems (credentials, project, provider).
_INIT_ERROR_KINDS = {
    "missing_api_key": "backend_auth",
    "missing_gcp_project": "backend_auth",
    "missing_gcp_location": "backend_auth",
    "provider_not_configured": "backend_auth",
}


@dataclass
class LLMReply:
    text: str = ""
    tool_calls: List[ChatToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None


class LLMBackend:
    def __init__(self, provider: Optional[str] = None):
        self.provider = provider or _provider()

    @property
    def mock(self) -> bool:
        return mock_enabled()

    def _llm(self, *, max_tokens: Optional[int] = None, fast: bool = False) -> Any:
        cfg = config_with_budget(_load_config(fast=fast), max_tokens)
        llm, err = _get_llm_instance(self.provider, cfg)
        if err:
            logger.error("LLM initialization failed: %s", err)
            raise BackendError(_INIT_ERROR_KINDS.get(err, "unknown"), err)  # type: ignore[arg-type]
        return llm

    async def stream(
        self,
        *,
        system: str,
        turns: Sequence[ChatTurn],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[LLMStreamChunk]:
        if self.mock:
            yield LLMStreamChunk(kind="text", content="LLM_MOCK enabled: no external call was made.")
            yield LLMStreamChunk(kind="done", metadata={"stop_reason": "end_turn"})
            return
        llm = self._llm(max_tokens=max_tokens)
        async for chunk in stream_chat(llm, to_langchain_messages(system, turns), tools=tools):
            yield chunk

    async def complete(
        self,
        *,
        system: str,
        turns: Sequence[ChatTurn],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMReply:
        if self.mock:
            return LLMReply(text="LLM_MOCK enabled: no external call was made.", stop_reason="end_turn")
        llm = self._llm(max_tokens=max_tokens)
        runnable = llm.bind_tools(tools) if tools else llm
        try:
            msg = await runnable.ainvoke(to_langchain_messages(system, turns))
        except Exception as e:
            raise classify_backend_error(e) from e
        calls = [
            ChatToolCall(id=str(tc.get("id") or f"call_{i}"), name=str(tc.get("name")), args=dict(tc.get("args") or {}))
            for i, tc in enumerate(getattr(msg, "tool_calls", None) or [])
            if tc.get("name")
        ]
        return LLMReply(text=message_text(msg), tool_calls=calls, stop_reason=stop_reason_of(msg))

    async def generate_text(
        self, *, system: str, text: str, max_tokens: int, fast: bool = True
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Single-shot auxiliary call (extraction, classification, moderation).

        Returns: (text, err_code). Exactly one is non-None. Never raises.
        """
        if self.mock:
            return None, "llm_mock"
        try:
            llm = self._llm(max_tokens=max_tokens, fast=fast)
            msg = await llm.ainvoke(to_langchain_messages(system, [ChatTurn(role="user", content=text)]))
        except BackendError as e:
            return None, e.kind
        except Exception as e:
            return None, classify_backend_error(e).kind
        out = message_text(msg).strip()
        return (out, None) if out else (None, "empty_response")


_backend: Optional[LLMBackend] = None


def get_llm_backend() -> LLMBackend:
    global _backend
    if _backend is None:
        _backend = LLMBackend()
    return _backend
