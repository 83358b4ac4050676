from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

TurnRole = Literal["user", "assistant"]
TurnKind = Literal["text", "tool_use", "tool_result"]


class ChatTurn(BaseModel):
    role: TurnRole
    kind: TurnKind = "text"
    content: str = ""
    # tool_use: call id + name + input; tool_result: tool_use_id
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Dict[str, Any] = Field(default_factory=dict)


class ChatToolCall(BaseModel):
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolDescriptor(BaseModel):
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def properties(self) -> Dict[str, Any]:
        props = self.input_schema.get("properties") if isinstance(self.input_schema, dict) else None
        return props if isinstance(props, dict) else {}

    def required(self) -> List[str]:
        req = self.input_schema.get("required") if isinstance(self.input_schema, dict) else None
        return [str(x) for x in req] if isinstance(req, list) else []


class SearchContext(BaseModel):
    search_query: str
    domains: List[str] = Field(default_factory=list)
    # Verbatim user text the query was derived from.
    original_query: str = ""


class InboundTurn(BaseModel):
    text: str
    chat_id: Optional[str] = None
    persona_id: Optional[str] = None
    # Rate-limit scope; the HTTP layer fills it from the session or client address.
    caller_id: Optional[str] = None


class TurnOutcome(BaseModel):
    chat_id: str
    state: Literal["done", "error", "cancelled"] = "done"
    error_kind: Optional[str] = None
    text: str = ""
    tool_calls: int = 0


class ChatRequest(BaseModel):
    message: str
    session_id: Optional[str] = None
    chat_id: Optional[str] = None
    persona_id: Optional[str] = None
    caller_id: Optional[str] = None


class ChatResponse(BaseModel):
    chat_id: str
    reply: str
    state: str = "done"
    error_kind: Optional[str] = None
