from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: Optional[str] = None
    # Which scope rejected the request ("caller" or "global").
    scope: Optional[str] = None


class RateLimiter:
    """
    Sliding-window admission control for chat turns.

    Every request is checked against two scopes at once: the caller's own window and
    a shared global window. A timestamp is recorded in both only when both have
    capacity, so a rejected request never consumes quota.
    """

    def __init__(
        self,
        max_per_caller: int = 6,
        max_global: int = 15,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_per_caller: Maximum admitted requests per caller within the window (default: 6)
            max_global: Maximum admitted requests across all callers within the window (default: 15)
            window_seconds: Window size in seconds (default: 60)
            clock: Monotonic time source (overridable in tests)
        """
        self._callers: Dict[str, Deque[float]] = {}
        self._global: Deque[float] = deque()
        self._max_per_caller = int(max_per_caller)
        self._max_global = int(max_global)
        self._window = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sweep = float("-inf")

    @property
    def window_seconds(self) -> float:
        return self._window

    def _prune(self, q: Deque[float], now: float) -> None:
        while q and now - q[0] >= self._window:
            q.popleft()

    def _sweep(self, now: float) -> None:
        # Drop callers with nothing left in their window, at most once per window.
        if now - self._last_sweep < self._window:
            return
        self._last_sweep = now
        for k in [k for k, q in self._callers.items() if not q or now - q[-1] >= self._window]:
            del self._callers[k]

    @property
    def tracked_callers(self) -> int:
        return len(self._callers)

    def check_and_admit(self, scope_key: str) -> RateDecision:
        """
        Check both scopes for `scope_key` and record the request if admitted.

        The whole check-and-record runs under one lock with no suspension point, so
        concurrent turns (threads or asyncio tasks) can never over-admit.
        """
        key = str(scope_key or "anonymous")
        with self._lock:
            now = self._clock()
            self._sweep(now)
            caller_q = self._callers.get(key) or deque()
            self._prune(caller_q, now)
            self._prune(self._global, now)
            if not caller_q:
                self._callers.pop(key, None)

            if len(caller_q) >= self._max_per_caller:
                return RateDecision(
                    allowed=False,
                    reason=f"caller limit of {self._max_per_caller} requests per {int(self._window)}s reached",
                    scope="caller",
                )
            if len(self._global) >= self._max_global:
                return RateDecision(
                    allowed=False,
                    reason=f"global limit of {self._max_global} requests per {int(self._window)}s reached",
                    scope="global",
                )

            caller_q.append(now)
            self._callers[key] = caller_q
            self._global.append(now)
            return RateDecision(allowed=True)

    def remaining(self, scope_key: str) -> int:
        """Requests still admissible for `scope_key` right now."""
        key = str(scope_key or "anonymous")
        with self._lock:
            now = self._clock()
            caller_q = self._callers.get(key) or deque()
            self._prune(caller_q, now)
            self._prune(self._global, now)
            if not caller_q:
                self._callers.pop(key, None)
            return max(0, min(self._max_per_caller - len(caller_q), self._max_global - len(self._global)))

    def reset(self, scope_key: Optional[str] = None) -> None:
        """
        Reset one caller's window, or every window when `scope_key` is None.
        """
        with self._lock:
            if scope_key is None:
                self._callers.clear()
                self._global.clear()
                return
            self._callers.pop(str(scope_key), None)


# Process-wide rate limiter instance (shared by every session)
_shared_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the shared rate limiter instance."""
    global _shared_rate_limiter
    if _shared_rate_limiter is None:
        from mcpchat.authz.policy import load_chat_policy

        p = load_chat_policy()
        _shared_rate_limiter = RateLimiter(
            max_per_caller=p.rate_limit_per_caller,
            max_global=p.rate_limit_global,
            window_seconds=p.rate_limit_window_seconds,
        )
    return _shared_rate_limiter
