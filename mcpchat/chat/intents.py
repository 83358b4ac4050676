"""
Search intent resolution (query refinement + domain routing).

Every turn gets a search context before the first backend call:
- a refined search query from a small extraction call (verbatim text on failure)
- a domain list: pinned by non-default personas, inferred for the default persona with a
  three-tier fallback (model → keyword table → static defaults)
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, List, Optional

from mcpchat.chat import prompts
from mcpchat.chat.personas import AVAILABLE_DOMAINS, DEFAULT_DOMAINS, DOMAIN_KEYWORDS, Persona
from mcpchat.chat.types import SearchContext

logger = logging.getLogger(__name__)

MAX_DOMAINS = 3
EXTRACTION_MAX_TOKENS = 150
CLASSIFICATION_MAX_TOKENS = 50


def _norm(s: str) -> str:
    return re.sub(r"\s+", " ", str(s or "").strip().lower())


def _contains_phrase(text: str, phrase: str) -> bool:
    # Word-boundary match so short keywords ("khí") don't fire inside longer words.
    return re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text) is not None


def keyword_domains(text: str, *, limit: int = MAX_DOMAINS) -> List[str]:
    """Domains whose keyword list matches `text`, in table order, at most `limit`."""
    t = _norm(text)
    if not t:
        return []
    out: List[str] = []
    for domain, keywords in DOMAIN_KEYWORDS.items():
        if any(_contains_phrase(t, _norm(k)) for k in keywords):
            out.append(domain)
            if len(out) >= limit:
                break
    return out


def fallback_domains(text: str) -> List[str]:
    return keyword_domains(text) or list(DEFAULT_DOMAINS)


def parse_domain_reply(raw: str, vocabulary: Iterable[str] = AVAILABLE_DOMAINS) -> List[str]:
    """Keep only vocabulary domains from a comma/newline separated reply, deduped, capped."""
    allowed = {_norm(d): d for d in vocabulary}
    out: List[str] = []
    for part in re.split(r"[,\n;]", raw or ""):
        key = _norm(part.strip(" .\"'`-*"))
        d = allowed.get(key)
        if d and d not in out:
            out.append(d)
        if len(out) >= MAX_DOMAINS:
            break
    return out


class SearchIntentResolver:
    def __init__(self, backend: Any):
        self._backend = backend

    async def resolve(self, user_text: str, persona: Persona) -> SearchContext:
        query = await self._extract_query(user_text)
        if persona.infers_domains:
            domains = await self._infer_domains(user_text)
        else:
            domains = list(persona.domains) or fallback_domains(user_text)
        return SearchContext(search_query=query, domains=domains, original_query=str(user_text or ""))

    async def _extract_query(self, user_text: str) -> str:
        text, err = await self._backend.generate_text(
            system=prompts.SEARCH_EXTRACTION, text=user_text, max_tokens=EXTRACTION_MAX_TOKENS, fast=True
        )
        query = (text or "").strip().strip('"').strip()
        if err or not query:
            logger.debug("Search extraction fell back to user text (%s)", err or "empty")
            return str(user_text or "")
        return query

    async def _infer_domains(self, user_text: str) -> List[str]:
        raw, err = await self._backend.generate_text(
            system=prompts.domain_classification(AVAILABLE_DOMAINS),
            text=user_text,
            max_tokens=CLASSIFICATION_MAX_TOKENS,
            fast=True,
        )
        domains: Optional[List[str]] = parse_domain_reply(raw) if raw else None
        if domains:
            return domains
        logger.debug("Domain classification fell back to keywords (%s)", err or "no valid domains")
        return fallback_domains(user_text)
