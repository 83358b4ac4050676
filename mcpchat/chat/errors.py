"""
Error taxonomy surfaced to chat callers.

Every failure inside a turn is converted into one of these kinds at the boundary where
it happens. Tool failures become transcript entries; everything else ends the turn with
a single `{type, message}` error chunk.
"""

from __future__ import annotations

import json
from typing import Dict, Literal, Optional

ErrorKind = Literal[
    "rate_limited",
    "unsafe_content",
    "backend_auth",
    "backend_quota",
    "backend_overloaded",
    "backend_rate_limit",
    "tool_invocation_error",
    "stream_stalled",
    "unknown",
]

USER_MESSAGES: Dict[str, str] = {
    "rate_limited": "Too many requests right now. Please wait a minute before trying again.",
    "unsafe_content": "Your message could not be processed because it violates the content policy.",
    "backend_auth": "The assistant could not authenticate with the language model service. Please check the API key.",
    "backend_quota": "The language model account has run out of credit or quota. Please top up or try again later.",
    "backend_overloaded": "The language model service is overloaded at the moment. Please try again in a little while.",
    "backend_rate_limit": "The language model service is rate limiting requests. Please try again shortly.",
    "tool_invocation_error": "A tool call failed.",
    "stream_stalled": "The response stream stopped before an answer could be completed. Please try again.",
    "unknown": "Sorry, something went wrong while processing your message. Please try again.",
}


class ChatError(Exception):
    """Base class for failures that end (or annotate) a chat turn."""

    kind: ErrorKind = "unknown"

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message or USER_MESSAGES.get(self.kind, USER_MESSAGES["unknown"]))
        self.reason = reason

    def user_message(self) -> str:
        base = USER_MESSAGES.get(self.kind, USER_MESSAGES["unknown"])
        # Only policy reasons are safe to show; backend text stays in the logs.
        if self.kind in ("rate_limited", "unsafe_content") and self.reason:
            return f"{base} ({self.reason})"
        return base


class RateLimitedError(ChatError):
    kind = "rate_limited"


class UnsafeContentError(ChatError):
    kind = "unsafe_content"


class BackendError(ChatError):
    """Language-model backend failure, classified into one of the backend_* kinds."""

    def __init__(self, kind: ErrorKind, message: str = "", *, status_code: Optional[int] = None):
        self.kind = kind
        super().__init__(message)
        self.status_code = status_code


class ToolInvocationError(ChatError):
    kind = "tool_invocation_error"


class ToolValidationError(ToolInvocationError):
    """Tool call rejected before any network call (unknown name, bad args)."""


class StreamStalledError(ChatError):
    kind = "stream_stalled"


def error_payload(kind: str, message: Optional[str] = None) -> str:
    """Serialize an outbound error chunk."""
    k = kind if kind in USER_MESSAGES else "unknown"
    return json.dumps({"type": k, "message": message or USER_MESSAGES[k]}, ensure_ascii=False)


def payload_for_exception(e: BaseException) -> str:
    if isinstance(e, ChatError):
        return error_payload(e.kind, e.user_message())
    return error_payload("unknown")
