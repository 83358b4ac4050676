from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any, Dict, List, Optional

from mcpchat.chat.personas import Persona, default_persona, find_persona
from mcpchat.chat.types import ChatTurn

logger = logging.getLogger(__name__)


def new_chat_id() -> str:
    return f"chat_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ConversationState:
    """
    Ordered, append-only transcript for one chat session.

    The transcript is the only conversational memory: every backend call replays it
    from the first turn, so turns are never edited or removed once appended.
    """

    def __init__(self, persona_id: Optional[str] = None):
        self._chat_id: Optional[str] = None
        self._persona: Persona = default_persona()
        self._turns: List[ChatTurn] = []
        self._open_tool_uses: Dict[str, str] = {}
        if persona_id:
            self.set_persona(persona_id)

    @property
    def chat_id(self) -> Optional[str]:
        return self._chat_id

    @property
    def persona(self) -> Persona:
        return self._persona

    def __len__(self) -> int:
        return len(self._turns)

    def start_new_chat(self, persona_id: Optional[str] = None) -> str:
        self._chat_id = new_chat_id()
        self._turns = []
        self._open_tool_uses = {}
        self.set_persona(persona_id)
        logger.info("Started chat %s (persona=%s)", self._chat_id, self._persona.id)
        return self._chat_id

    def is_current_chat(self, chat_id: Optional[str]) -> bool:
        return bool(chat_id) and self._chat_id is not None and chat_id == self._chat_id

    def set_persona(self, persona_id: Optional[str]) -> Persona:
        p = find_persona(persona_id)
        if p is None:
            if persona_id:
                logger.warning("Chat %s: unknown persona %r, using default", self._chat_id, persona_id)
            p = default_persona()
        self._persona = p
        return p

    def _ensure_chat(self) -> None:
        if self._chat_id is None:
            self.start_new_chat(self._persona.id)

    def add_user_message(self, text: str) -> None:
        self._ensure_chat()
        self._turns.append(ChatTurn(role="user", kind="text", content=str(text or "")))

    def add_to_existing_chat(self, chat_id: str, text: str) -> None:
        if not self.is_current_chat(chat_id):
            raise ValueError(f"chat id mismatch: {chat_id!r} is not the current chat")
        self.add_user_message(text)

    def add_assistant_message(self, text: str) -> None:
        self._ensure_chat()
        content = str(text or "")
        p = self._persona
        if not p.is_default:
            prefix = f"{p.display_name}: "
            if not content.startswith(prefix):
                content = prefix + content
        self._turns.append(ChatTurn(role="assistant", kind="text", content=content))

    def add_tool_use_message(self, tool_use_id: str, name: str, args: Dict[str, Any]) -> None:
        self._ensure_chat()
        self._turns.append(
            ChatTurn(
                role="assistant",
                kind="tool_use",
                tool_use_id=str(tool_use_id),
                tool_name=str(name),
                tool_input=dict(args or {}),
            )
        )
        self._open_tool_uses[str(tool_use_id)] = str(name)

    def add_tool_result_message(self, tool_use_id: str, content: Any) -> None:
        tid = str(tool_use_id)
        if tid not in self._open_tool_uses:
            raise ValueError(f"tool result {tid!r} has no matching tool use")
        if isinstance(content, str):
            text = content
        else:
            text = json.dumps(content, indent=2, ensure_ascii=False, default=str)
        self._turns.append(ChatTurn(role="user", kind="tool_result", tool_use_id=tid, content=text))
        del self._open_tool_uses[tid]

    def get_history(self) -> List[ChatTurn]:
        return [t.model_copy(deep=True) for t in self._turns]
