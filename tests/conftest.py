"""
Pytest config.

Local imports like `import mcpchat` rely on the repo root being on sys.path. When
invoking a global `pytest` entrypoint that doesn't happen reliably during collection,
so we pin the behavior here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _no_external_services(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep unit tests hermetic: no LangSmith traces, no tool server at app startup, and
    no real LLM credentials picked up from the developer's shell.
    """
    for name in ("LANGSMITH_TRACING", "LANGCHAIN_TRACING_V2", "MCP_SERVER", "ANTHROPIC_API_KEY", "LLM_MOCK"):
        monkeypatch.delenv(name, raising=False)
