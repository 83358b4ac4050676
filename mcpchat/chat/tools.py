from __future__ import annotations

import html
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from mcpchat.chat.errors import ToolValidationError
from mcpchat.chat.intents import fallback_domains
from mcpchat.chat.types import SearchContext, ToolDescriptor

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = (
    "\n\n[Note: The complete result was too large to display in full. This is a truncated version.]"
)

QUERY_ALIASES = {"query", "search", "q", "searchterm"}
LIMIT_ALIASES = {"limit", "maxresults", "topk"}
DOMAINS_PROPERTY = "domains"


def _key(name: str) -> str:
    return str(name or "").replace("_", "").replace("-", "").lower()


def _jsonable(v: Any, *, _depth: int = 0, _max_depth: int = 8) -> Any:
    """Best-effort convert values to JSON-serializable objects for display."""
    if _depth >= _max_depth:
        return str(v)
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, datetime):
        return v.isoformat()
    if isinstance(v, dict):
        return {str(k): _jsonable(vv, _depth=_depth + 1, _max_depth=_max_depth) for k, vv in v.items()}
    if isinstance(v, (list, tuple, set)):
        return [_jsonable(x, _depth=_depth + 1, _max_depth=_max_depth) for x in list(v)]
    if hasattr(v, "model_dump"):
        return _jsonable(v.model_dump(mode="json"), _depth=_depth + 1, _max_depth=_max_depth)
    return str(v)


def serialize(v: Any) -> str:
    if isinstance(v, str):
        return v
    return json.dumps(_jsonable(v), indent=2, ensure_ascii=False)


def truncate_bytes(text: str, max_bytes: int) -> Tuple[str, bool]:
    """
    Cut `text` to at most `max_bytes` UTF-8 bytes and append the truncation marker.

    Never splits a multi-byte character or a trailing HTML entity.
    """
    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text, False
    cut = raw[:max_bytes].decode("utf-8", errors="ignore")
    amp = cut.rfind("&")
    if amp != -1 and len(cut) - amp <= 8 and ";" not in cut[amp:]:
        cut = cut[:amp]
    return cut + TRUNCATION_MARKER, True


class ToolCallDisplay(BaseModel):
    """Display block for one tool call; text fields are already escaped."""

    tool: str
    header: str
    args_text: str
    result_text: str
    is_error: bool = False
    truncated: bool = False

    def render(self) -> str:
        return (
            f'<tool-call data-expanded="false" data-tool="{self.tool}" '
            f'data-error="{"true" if self.is_error else "false"}">'
            f"<tool-header>{self.header}</tool-header>"
            f"<tool-args>{self.args_text}</tool-args>"
            f"<tool-result>{self.result_text}</tool-result>"
            "</tool-call>"
        )


class ToolRegistry:
    """
    Tool schemas announced by the tool backend, plus argument completion and display.
    """

    def __init__(self, *, limit_cap: int = 6, result_max_bytes: int = 1_000_000):
        self._tools: Dict[str, ToolDescriptor] = {}
        self._limit_cap = int(limit_cap)
        self._result_max_bytes = int(result_max_bytes)

    def register(self, tools: Iterable[ToolDescriptor]) -> None:
        for t in tools:
            if t.name in self._tools:
                logger.debug("Replacing tool descriptor %s", t.name)
            self._tools[t.name] = t

    def clear(self) -> None:
        self._tools = {}

    def get_tools(self) -> List[ToolDescriptor]:
        return [t.model_copy(deep=True) for t in self._tools.values()]

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def validate(self, name: str, args: Any = None) -> ToolDescriptor:
        t = self._tools.get(str(name or ""))
        if t is None:
            raise ToolValidationError(f"Unknown tool: {name}")
        if args is not None and not isinstance(args, dict):
            raise ToolValidationError(f"Arguments for {name} must be an object")
        return t

    def to_llm_tools(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
            }
            for t in self._tools.values()
        ]

    def enrich(self, name: str, raw_args: Dict[str, Any], search_context: SearchContext) -> Dict[str, Any]:
        """
        Complete `raw_args` against the tool schema.

        - query-like properties: filled from the refined query when absent, or replaced
          when the model passed the user's text through unchanged
        - `domains`: filled when absent or empty
        - limit-like properties: bounded to the cap
        - other required properties: filled from the schema default, never invented
        """
        tool = self.validate(name, raw_args)
        args = dict(raw_args or {})
        props = tool.properties()

        for prop in props:
            k = _key(prop)
            if k in QUERY_ALIASES:
                current = args.get(prop)
                if current is None or (isinstance(current, str) and not current.strip()):
                    args[prop] = search_context.search_query
                elif isinstance(current, str) and current.strip() == search_context.original_query.strip():
                    args[prop] = search_context.search_query
            elif k == DOMAINS_PROPERTY:
                current = args.get(prop)
                if not current:
                    args[prop] = list(search_context.domains) or fallback_domains(search_context.original_query)

        for prop in tool.required():
            if prop in args:
                continue
            prop_schema = props.get(prop)
            if isinstance(prop_schema, dict) and "default" in prop_schema:
                args[prop] = prop_schema["default"]

        for prop in props:
            if _key(prop) in LIMIT_ALIASES and prop in args:
                try:
                    args[prop] = min(int(args[prop]), self._limit_cap)
                except (TypeError, ValueError):
                    args[prop] = self._limit_cap

        return args

    def format(self, name: str, args: Dict[str, Any], result: Any, is_error: bool = False) -> ToolCallDisplay:
        result_text, truncated = truncate_bytes(html.escape(serialize(result), quote=False), self._result_max_bytes)
        header = f"Error Calling MCP Tool: {name}" if is_error else f"Called MCP Tool: {name}"
        return ToolCallDisplay(
            tool=html.escape(str(name), quote=True),
            header=html.escape(header, quote=False),
            args_text=html.escape(serialize(args or {}), quote=False),
            result_text=result_text,
            is_error=bool(is_error),
            truncated=truncated,
        )
