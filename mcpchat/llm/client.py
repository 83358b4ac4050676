"""
Provider-agnostic LLM client.

Goals:
- Provide a single, uniform way to build a LangChain chat model for any provider.
- Convert the chat transcript into LangChain messages (tool use/result pairs included).
- Classify backend failures into the chat error taxonomy.
- Keep auxiliary calls (`generate_text`) non-raising: `(text, err_code)`.

Env (core):
- LLM_PROVIDER: which provider to use (default: "anthropic")
  - anthropic: Claude via Anthropic API using `langchain_anthropic`
  - vertexai: Gemini via Vertex AI using `langchain_google_vertexai`
- LLM_MODEL: main chat model
- LLM_FAST_MODEL: model for small extraction/classification calls (default: LLM_MODEL)
- LLM_MOCK=1: return deterministic stubs (no external calls)
- LLM_TIMEOUT_SECONDS: HTTP timeout for LLM requests (default: 120, range: 5-300)

Anthropic requirements:
- ANTHROPIC_API_KEY (required)

Vertex requirements:
- GOOGLE_CLOUD_PROJECT, GOOGLE_CLOUD_LOCATION (required)
- Application Default Credentials (ADC)
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mcpchat.chat.errors import BackendError
from mcpchat.chat.types import ChatTurn


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _provider() -> str:
    return (os.getenv("LLM_PROVIDER") or "").strip().lower() or "anthropic"


def mock_enabled() -> bool:
    return _env_bool("LLM_MOCK", False)


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort extraction for when a model wraps JSON in code fences or adds prose around it.
    """
    if not text:
        return None
    t = text.strip()

    if t.startswith("```"):
        t = re.sub(r"^```[a-zA-Z]*\s*", "", t)
        t = re.sub(r"\s*```$", "", t).strip()

    # Scan for the first balanced {...} that parses.
    in_str = False
    escape = False
    depth = 0
    start = None
    for i, ch in enumerate(t):
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_str = not in_str
            continue
        if in_str:
            continue
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                try:
                    obj = json.loads(t[start : i + 1])
                except ValueError:
                    start = None
                    continue
                return obj if isinstance(obj, dict) else None
    return None


@dataclass(frozen=True)
class LLMConfig:
    model: str
    temperature: float
    max_output_tokens: int
    timeout: int = 120


def _load_config(*, fast: bool = False) -> LLMConfig:
    default_model = "claude-3-7-sonnet-latest" if _provider() == "anthropic" else "gemini-2.5-flash"
    model = (os.getenv("LLM_MODEL") or "").strip() or default_model
    if fast:
        model = (os.getenv("LLM_FAST_MODEL") or "").strip() or model
    try:
        temperature = float((os.getenv("LLM_TEMPERATURE") or "").strip() or "0.3")
    except Exception:
        temperature = 0.3
    try:
        max_output_tokens = int((os.getenv("LLM_MAX_OUTPUT_TOKENS") or "").strip() or "4096")
    except Exception:
        max_output_tokens = 4096
    try:
        timeout = int((os.getenv("LLM_TIMEOUT_SECONDS") or "").strip() or "120")
    except Exception:
        timeout = 120

    temperature = max(0.0, min(temperature, 1.0))
    max_output_tokens = max(32, min(max_output_tokens, 8192))
    timeout = max(5, min(timeout, 300))

    return LLMConfig(model=model, temperature=temperature, max_output_tokens=max_output_tokens, timeout=timeout)


def config_with_budget(cfg: LLMConfig, max_tokens: Optional[int]) -> LLMConfig:
    if not max_tokens:
        return cfg
    return replace(cfg, max_output_tokens=max(1, min(int(max_tokens), cfg.max_output_tokens)))


def classify_backend_error(e: BaseException) -> BackendError:
    """
    Map a provider exception to one of the backend_* error kinds.

    Works off the SDK's `status_code` when present and falls back to message patterns,
    so it does not depend on a particular provider SDK's exception classes.
    """
    if isinstance(e, BackendError):
        return e
    msg = str(e or "").replace("\n", " ").strip()
    up = msg.upper()
    status = getattr(e, "status_code", None)
    if status is None:
        resp = getattr(e, "response", None)
        status = getattr(resp, "status_code", None)
    try:
        code = int(status) if status is not None else None
    except (TypeError, ValueError):
        code = None

    quota = "QUOTA" in up or "CREDIT BALANCE" in up or "CREDIT_BALANCE" in up or "BILLING" in up
    if code in (401, 403) or "UNAUTHENTICATED" in up or "PERMISSION_DENIED" in up:
        return BackendError("backend_auth", msg, status_code=code)
    if "API_KEY" in up and ("INVALID" in up or "MISSING" in up):
        return BackendError("backend_auth", msg, status_code=code)
    if quota and code in (None, 400, 402, 429):
        return BackendError("backend_quota", msg, status_code=code)
    if code == 529 or "OVERLOADED" in up:
        return BackendError("backend_overloaded", msg, status_code=code)
    if code == 429 or ("RATE" in up and "LIMIT" in up) or "RESOURCE_EXHAUSTED" in up:
        return BackendError("backend_rate_limit", msg, status_code=code)
    return BackendError("unknown", msg, status_code=code)


def _vertex_project_location_required() -> Tuple[Optional[str], Optional[str], Optional[str]]:
    project = (os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip() or None
    location = (os.getenv("GOOGLE_CLOUD_LOCATION") or "").strip() or None
    if not project:
        return None, None, "missing_gcp_project"
    if not location:
        return None, None, "missing_gcp_location"
    return project, location, None


def _get_llm_instance(provider: str, cfg: LLMConfig) -> Tuple[Any, Optional[str]]:
    """
    Factory function that returns the appropriate LangChain chat model.

    Returns: (llm_instance, error_code). Exactly one is None.
    """
    if provider == "anthropic":
        api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
        if not api_key:
            return None, "missing_api_key"
        try:
            from langchain_anthropic import ChatAnthropic  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_anthropic"

        llm = ChatAnthropic(
            model=cfg.model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_output_tokens,
            anthropic_api_key=api_key,
            timeout=cfg.timeout,
            # Retries are owned by the orchestrator (follow-up recovery only).
            max_retries=0,
        )
        return llm, None

    if provider in ("vertexai", "vertex", "gcp_vertexai"):
        project, location, err = _vertex_project_location_required()
        if err:
            return None, err
        try:
            from langchain_google_vertexai import ChatVertexAI  # type: ignore[import-not-found]
        except Exception:
            return None, "sdk_import_failed:langchain_google_vertexai"

        llm = ChatVertexAI(
            model=cfg.model,
            temperature=cfg.temperature,
            max_output_tokens=cfg.max_output_tokens,
            project=str(project),
            location=str(location),
            timeout=cfg.timeout,
            max_retries=0,
        )
        return llm, None

    return None, "provider_not_configured"


def to_langchain_messages(system: str, turns: Sequence[ChatTurn]) -> List[Any]:
    """
    Replay the transcript as LangChain messages.

    Consecutive assistant text + tool-use turns collapse into one AIMessage so each
    tool result directly follows the assistant message that requested it.
    """
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

    out: List[Any] = [SystemMessage(content=system)]
    for t in turns:
        if t.kind == "tool_use":
            call = {"name": t.tool_name or "", "args": dict(t.tool_input or {}), "id": t.tool_use_id, "type": "tool_call"}
            prev = out[-1]
            if isinstance(prev, AIMessage):
                out[-1] = AIMessage(content=prev.content, tool_calls=list(prev.tool_calls or []) + [call])
            else:
                out.append(AIMessage(content="", tool_calls=[call]))
        elif t.kind == "tool_result":
            out.append(ToolMessage(content=t.content, tool_call_id=str(t.tool_use_id)))
        elif t.role == "assistant":
            out.append(AIMessage(content=t.content))
        else:
            out.append(HumanMessage(content=t.content))
    return out


def message_text(msg: Any) -> str:
    """Text carried by a LangChain message or chunk (string or content-block list)."""
    content = getattr(msg, "content", None)
    if isinstance(content, str):
        return content
    text = ""
    if isinstance(content, list):
        for block in content:
            if isinstance(block, str):
                text += block
            elif isinstance(block, dict) and block.get("type") == "text":
                text += str(block.get("text") or "")
    return text


def stop_reason_of(msg: Any) -> Optional[str]:
    md = getattr(msg, "response_metadata", None) or {}
    if not isinstance(md, dict):
        return None
    sr = md.get("stop_reason") or md.get("finish_reason")
    return str(sr) if sr else None
