from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


@dataclass(frozen=True)
class ChatPolicy:
    # Admission
    rate_limit_per_caller: int = 6
    rate_limit_global: int = 15
    rate_limit_window_seconds: int = 60
    max_message_chars: int = 2000

    # Tool caps
    tool_limit_cap: int = 6
    tool_result_max_bytes: int = 1_000_000
    max_tool_rounds: int = 3
    tool_pacing_seconds: float = 2.0

    # Follow-up stream recovery
    followup_max_attempts: int = 3
    followup_max_tokens: int = 2000
    stream_soft_idle_seconds: float = 10.0
    stream_hard_idle_seconds: float = 30.0
    flush_threshold_chars: int = 40

    # Safety
    safety_classifier_enabled: bool = True


def load_chat_policy() -> ChatPolicy:
    """
    Load chat policy from env (ConfigMap/Secret friendly).

    Recommended vars:
    - CHAT_RATE_LIMIT_PER_CALLER=6
    - CHAT_RATE_LIMIT_GLOBAL=15
    - CHAT_RATE_LIMIT_WINDOW_SECONDS=60
    - CHAT_MAX_MESSAGE_CHARS=2000
    - CHAT_TOOL_LIMIT_CAP=6
    - CHAT_TOOL_RESULT_MAX_BYTES=1000000
    - CHAT_MAX_TOOL_ROUNDS=3
    - CHAT_TOOL_PACING_SECONDS=2
    - CHAT_FOLLOWUP_MAX_ATTEMPTS=3
    - CHAT_STREAM_SOFT_IDLE_SECONDS=10
    - CHAT_STREAM_HARD_IDLE_SECONDS=30
    - SAFETY_CLASSIFIER_ENABLED=1
    """
    soft = max(1.0, min(_env_float("CHAT_STREAM_SOFT_IDLE_SECONDS", 10.0), 120.0))
    hard = max(2.0, min(_env_float("CHAT_STREAM_HARD_IDLE_SECONDS", 30.0), 300.0))
    # The warning threshold must precede the abort.
    soft = min(soft, hard)

    return ChatPolicy(
        rate_limit_per_caller=max(1, min(_env_int("CHAT_RATE_LIMIT_PER_CALLER", 6), 1000)),
        rate_limit_global=max(1, min(_env_int("CHAT_RATE_LIMIT_GLOBAL", 15), 10000)),
        rate_limit_window_seconds=max(1, min(_env_int("CHAT_RATE_LIMIT_WINDOW_SECONDS", 60), 3600)),
        max_message_chars=max(100, min(_env_int("CHAT_MAX_MESSAGE_CHARS", 2000), 100_000)),
        tool_limit_cap=max(1, min(_env_int("CHAT_TOOL_LIMIT_CAP", 6), 100)),
        tool_result_max_bytes=max(1024, min(_env_int("CHAT_TOOL_RESULT_MAX_BYTES", 1_000_000), 10_000_000)),
        max_tool_rounds=max(1, min(_env_int("CHAT_MAX_TOOL_ROUNDS", 3), 10)),
        tool_pacing_seconds=max(0.0, min(_env_float("CHAT_TOOL_PACING_SECONDS", 2.0), 30.0)),
        followup_max_attempts=max(1, min(_env_int("CHAT_FOLLOWUP_MAX_ATTEMPTS", 3), 6)),
        followup_max_tokens=max(64, min(_env_int("CHAT_FOLLOWUP_MAX_TOKENS", 2000), 8192)),
        stream_soft_idle_seconds=soft,
        stream_hard_idle_seconds=hard,
        flush_threshold_chars=max(1, min(_env_int("CHAT_FLUSH_THRESHOLD_CHARS", 40), 4000)),
        safety_classifier_enabled=_env_bool("SAFETY_CLASSIFIER_ENABLED", True),
    )
