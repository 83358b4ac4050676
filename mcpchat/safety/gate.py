"""
Content-safety gate.

Two checks run per turn: the raw user request before any backend call, and every tool
result before it is shown or replayed. Requests go through a pattern prefilter (prompt
injection, context-overflow repetition) and then a policy classifier; tool results go
through the moderation classifier.

Classifier output is parsed strictly first, then by extracting an embedded JSON object.
When neither works (or the classifier call fails), requests are let through and tool
results are blocked.
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from mcpchat.authz.policy import ChatPolicy
from mcpchat.chat import prompts
from mcpchat.llm.client import extract_json_object

logger = logging.getLogger(__name__)

CheckKind = Literal["request", "tool_result"]

# (rule name, patterns)
_INJECTION_RULES: List[Tuple[str, List[str]]] = [
    (
        "template_literal",
        [
            r"\$\{.*\}",
            r"\{\{.*\}\}",
            r"ignore previous instructions",
            r"disregard (all )?previous instructions",
            r"you (are|must) now (act as|be) (a different|an unrestricted) ai",
            r"switch to system mode",
            r"forget your (previous )?training",
            r"system:\s*override",
        ],
    ),
    ("environment_variable", [r"process\.env\.", r"os\.environ", r"\$[A-Z_]{2,}\b"]),
    (
        "system_prompt_leak",
        [
            r"system prompt",
            r"system instructions",
            r"system message",
            r"assistant (instructions|guidelines|rules|role|behavior|configuration|settings)",
        ],
    ),
    (
        "function_leak",
        [
            r"available functions",
            r"function (description|parameters|schema|list)",
            r"tool (description|parameters|schema|list)",
        ],
    ),
    (
        "conversation_leak",
        [
            r"(conversation|chat|message) history",
            r"(previous|earlier|past) messages",
        ],
    ),
]

_COMPILED_RULES = [
    (name, [re.compile(p, re.IGNORECASE if "A-Z" not in p else 0) for p in pats]) for name, pats in _INJECTION_RULES
]

# C1 controls, invisible/zero-width spaces, line separators, BOM.
_SUSPICIOUS_UNICODE = re.compile("[\u0080-\u00a0\u2000-\u200f\u2028-\u202f\u205f-\u206f\ufeff]")
_HTML_TAG = re.compile(r"<[^>]*>")
_SCRIPT = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_WS = re.compile(r"\s+")


class SafetyVerdict(BaseModel):
    safe: bool
    reason: Optional[str] = None
    categories: List[str] = Field(default_factory=list)


def sanitize(text: str) -> str:
    """
    Normalize user input before screening: NFKC, strip suspicious Unicode, drop
    markup, collapse whitespace.
    """
    t = unicodedata.normalize("NFKC", str(text or ""))
    t = _SUSPICIOUS_UNICODE.sub("", t)
    t = _SCRIPT.sub("", t)
    t = _HTML_TAG.sub("", t)
    t = _WS.sub(" ", t)
    return t.strip()


def check_prompt_injection(text: str) -> Optional[SafetyVerdict]:
    """Pattern prefilter. Returns an unsafe verdict on a hit, else None."""
    for name, pats in _COMPILED_RULES:
        for p in pats:
            if p.search(text or ""):
                return SafetyVerdict(
                    safe=False,
                    reason=f"Potential prompt injection detected: {name}",
                    categories=["prompt_injection"],
                )

    flat = _WS.sub(" ", text or "").strip()
    if len(flat) > 50:
        segments = flat.split(" ")
        if len(segments) > 20 and len(set(segments)) / len(segments) < 0.3:
            return SafetyVerdict(
                safe=False,
                reason="Suspicious repetitive content detected",
                categories=["repetitive_content"],
            )
    return None


def _truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("true", "1", "yes")


def parse_classifier_output(raw: str) -> Optional[Dict[str, Any]]:
    """Strict JSON first, then an embedded object. None when both fail."""
    try:
        obj = json.loads((raw or "").strip())
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass
    return extract_json_object(raw or "")


def verdict_from_classifier(obj: Dict[str, Any]) -> SafetyVerdict:
    raw_safe = obj.get("isSafe", obj.get("is_safe", obj.get("safe")))
    cats: List[str] = []
    c = obj.get("categories")
    if isinstance(c, dict):
        cats = [str(k) for k, v in c.items() if _truthy(v)]
    elif isinstance(c, list):
        cats = [str(x) for x in c]
    if obj.get("category"):
        cats.append(str(obj["category"]))
    if raw_safe is None:
        # No explicit flag: any flagged category means unsafe.
        safe = not cats
    else:
        safe = _truthy(raw_safe)
    reason = obj.get("reason")
    return SafetyVerdict(safe=safe, reason=str(reason) if reason and not safe else None, categories=cats)


class ContentSafetyGate:
    def __init__(self, backend: Any, policy: ChatPolicy):
        self._backend = backend
        self._policy = policy

    def sanitize(self, text: str) -> str:
        return sanitize(text)

    @property
    def classifier_enabled(self) -> bool:
        return bool(self._policy.safety_classifier_enabled) and not bool(getattr(self._backend, "mock", False))

    async def classify(self, text: str, *, kind: CheckKind = "request") -> SafetyVerdict:
        if kind == "request":
            if len(text or "") > self._policy.max_message_chars:
                return SafetyVerdict(
                    safe=False,
                    reason=f"message longer than {self._policy.max_message_chars} characters",
                    categories=["message_too_long"],
                )
            hit = check_prompt_injection(text)
            if hit is not None:
                logger.info("Request blocked by prefilter: %s", hit.reason)
                return hit

        if not self.classifier_enabled:
            return SafetyVerdict(safe=True)

        system = prompts.REQUEST_POLICY if kind == "request" else prompts.MODERATION
        raw, err = await self._backend.generate_text(system=system, text=text, max_tokens=500, fast=True)
        obj = parse_classifier_output(raw) if raw else None
        if obj is None:
            return self._unparseable(kind, err or "unparseable classifier output")

        verdict = verdict_from_classifier(obj)
        if not verdict.safe:
            logger.info("Content flagged (%s): categories=%s", kind, verdict.categories)
        return verdict

    def _unparseable(self, kind: CheckKind, detail: str) -> SafetyVerdict:
        if kind == "tool_result":
            logger.warning("Safety classifier unusable for tool result (%s); blocking", detail)
            return SafetyVerdict(safe=False, reason="Content safety check could not be completed")
        logger.warning("Safety classifier unusable for request (%s); allowing", detail)
        return SafetyVerdict(safe=True)
