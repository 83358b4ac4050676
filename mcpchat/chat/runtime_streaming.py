"""
Streaming primitives for the chat runtime.

- StreamAttempt: per-call buffers (display vs full text), watchdog clock, terminal flag
- consume_with_watchdog: drains a backend stream while an inactivity deadline is checked
  between chunks (soft threshold logs, hard threshold aborts the attempt as stalled)
- select_followup: picks the best follow-up text across retried attempts and decides
  whether it needs truncating to a sentence boundary or a "continuing" marker

Only follow-up streams are retried. The initial stream runs once.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence

from mcpchat.chat.types import ChatToolCall

logger = logging.getLogger(__name__)

MIN_COMPLETE_CHARS = 20
CONTINUE_COVERAGE = 0.7
CONTINUE_MARKER = "\n\n[…]\n\n"

_TERMINAL = r"[.!?。！？…]"
_CLOSERS = r"[\"'”’)\]*_`]*"
_ENDS_SENTENCE = re.compile(_TERMINAL + _CLOSERS + r"\s*$")
_SENTENCE_BOUNDARY = re.compile(_TERMINAL + _CLOSERS + r"(?=\s|$)")


def looks_complete(text: str) -> bool:
    """Heuristic completeness: non-trivial length ending in sentence-terminal punctuation."""
    t = (text or "").strip()
    return len(t) >= MIN_COMPLETE_CHARS and _ENDS_SENTENCE.search(t) is not None


def truncate_to_sentence(text: str) -> str:
    """Cut `text` back to its last complete sentence; "" when there is none."""
    last = None
    for m in _SENTENCE_BOUNDARY.finditer(text or ""):
        last = m.end()
    return text[:last].rstrip() if last else ""


@dataclass
class StreamAttempt:
    number: int
    display_buffer: str = ""
    full_buffer: str = ""
    last_activity_at: float = field(default_factory=time.monotonic)
    completed: bool = False
    # Terminal signal said the model ran out of output budget.
    truncated: bool = False
    stalled: bool = False
    error: Optional[BaseException] = None
    tool_calls: Dict[str, ChatToolCall] = field(default_factory=dict)
    # Characters of full_buffer already forwarded to the caller.
    flushed_chars: int = 0

    @property
    def clean(self) -> bool:
        if self.stalled or self.error is not None:
            return looks_complete(self.full_buffer)
        if self.completed and not self.truncated:
            return True
        return looks_complete(self.full_buffer)

    @property
    def flushed_text(self) -> str:
        return self.full_buffer[: self.flushed_chars]

    def append(self, text: str) -> None:
        self.full_buffer += text
        self.display_buffer += text

    def take_flushable(self, threshold: int) -> str:
        """Return the display buffer once it is over `threshold` chars or holds a newline."""
        if len(self.display_buffer) > threshold or "\n" in self.display_buffer:
            return self.drain()
        return ""

    def drain(self) -> str:
        out, self.display_buffer = self.display_buffer, ""
        self.flushed_chars += len(out)
        return out


@dataclass
class FollowupSelection:
    text: str = ""
    complete: bool = False
    # Send the continuing marker before the text.
    continued: bool = False
    attempt: Optional[int] = None


def is_better(candidate: StreamAttempt, best: Optional[StreamAttempt]) -> bool:
    """Clean beats unclean; within the same class the longer (or equal) buffer wins."""
    if best is None:
        return True
    if candidate.clean != best.clean:
        return candidate.clean
    return len(candidate.full_buffer.strip()) >= len(best.full_buffer.strip())


def select_followup(attempts: Sequence[StreamAttempt]) -> FollowupSelection:
    best: Optional[StreamAttempt] = None
    for a in attempts:
        if not a.full_buffer.strip():
            continue
        if is_better(a, best):
            best = a
    if best is None:
        return FollowupSelection()
    if best.clean:
        return FollowupSelection(text=best.full_buffer, complete=True, attempt=best.number)

    raw = best.full_buffer.rstrip()
    cut = truncate_to_sentence(raw)
    continued = bool(cut) and len(cut) >= CONTINUE_COVERAGE * len(raw)
    return FollowupSelection(text=cut, complete=False, continued=continued, attempt=best.number)


async def consume_with_watchdog(
    stream: AsyncIterator[Any],
    attempt: StreamAttempt,
    on_chunk: Callable[[Any], Awaitable[bool]],
    *,
    soft_idle_seconds: float,
    hard_idle_seconds: float,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Feed every chunk of `stream` to `on_chunk` until the stream ends, `on_chunk` returns
    False, or no chunk arrives for `hard_idle_seconds`.

    The pending `__anext__` is never cancelled by the soft threshold; the deadline is
    re-checked on a short tick while it is outstanding.

    Returns False only when `on_chunk` asked to stop.
    """
    it = stream.__aiter__()
    tick = max(0.01, min(1.0, soft_idle_seconds / 2))
    warned = False
    attempt.last_activity_at = clock()
    pending: Optional[asyncio.Future] = None
    try:
        while True:
            pending = asyncio.ensure_future(it.__anext__())
            while not pending.done():
                await asyncio.wait({pending}, timeout=tick)
                if pending.done():
                    break
                idle = clock() - attempt.last_activity_at
                if idle >= hard_idle_seconds:
                    logger.warning("Stream attempt %d stalled after %.1fs without data", attempt.number, idle)
                    attempt.stalled = True
                    return True
                if idle >= soft_idle_seconds and not warned:
                    warned = True
                    logger.warning("Stream attempt %d idle for %.1fs", attempt.number, idle)

            done, pending = pending, None
            try:
                chunk = done.result()
            except StopAsyncIteration:
                return True
            attempt.last_activity_at = clock()
            warned = False
            if not await on_chunk(chunk):
                return False
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
