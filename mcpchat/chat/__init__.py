"""Tool-using chat (streaming-first).

This package provides a policy-gated chat runtime that can:
- admit or reject a turn (rate limits, content safety)
- stream a model answer and run the tools it asks for on an MCP server
- recover from stalled or truncated follow-up streams
"""
