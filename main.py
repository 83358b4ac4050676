#!/usr/bin/env python3
"""
MCP Chat - tool-using chat assistant over a Model Context Protocol server.
Serves the chat API or answers a single question from the command line.
"""

import argparse
import logging
import os
import sys
from typing import Optional

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "info").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep mcpchat imports lazy (inside functions) so `--help` and `--list-personas`
# don't pull in the LLM and MCP client stacks.
#


def list_personas() -> None:
    from mcpchat.chat.personas import DEFAULT_PERSONA_ID
    from mcpchat.chat.personas import list_personas as _list

    for p in _list():
        marker = " (default)" if p.id == DEFAULT_PERSONA_ID else ""
        print(f"{p.id:<12} {p.display_name}{marker}")
        print(f"             domains: {', '.join(p.domains)}")


async def ask_once(text: str, *, tool_server: Optional[str] = None, persona_id: Optional[str] = None) -> int:
    """
    Run one streaming turn and write chunks to stdout as they arrive.

    Returns a process exit code (0 when the turn finished without an error).
    """
    from mcpchat.authz.policy import load_chat_policy
    from mcpchat.chat.runtime import build_orchestrator
    from mcpchat.chat.tools import ToolRegistry
    from mcpchat.chat.types import InboundTurn
    from mcpchat.providers.mcp_provider import ToolBackendClient

    policy = load_chat_policy()
    registry = ToolRegistry(limit_cap=policy.tool_limit_cap, result_max_bytes=policy.tool_result_max_bytes)
    backend = ToolBackendClient()
    if tool_server:
        conn = await backend.connect(tool_server)
        registry.register(conn.tools)
        print(f"Connected to {tool_server}: {', '.join(t.name for t in conn.tools) or 'no tools'}", file=sys.stderr)

    orch = build_orchestrator(registry=registry, tool_backend=backend, policy=policy, persona_id=persona_id)

    def sink(chunk: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    try:
        outcome = await orch.process_streaming(
            InboundTurn(text=text, persona_id=persona_id, caller_id="cli"),
            sink,
        )
    finally:
        if backend.is_connected:
            await backend.close()
    print()
    if outcome.state == "error":
        print(f"Chat turn failed: {outcome.error_kind}", file=sys.stderr)
        return 1
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Chat with an LLM that can call tools on an MCP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the chat API, tools from a local stdio server
  python main.py --serve --tool-server ./server/build/index.js

  # Serve the chat API, tools from a network SSE server
  python main.py --serve --tool-server http://localhost:8000/sse

  # Ask one question in a persona's voice
  python main.py --ask "Tác dụng của cây ngải cứu?" --persona lan-ong --tool-server server.py
        """,
    )

    parser.add_argument("--serve", action="store_true", help="Run the chat HTTP server (FastAPI + uvicorn)")
    parser.add_argument("--host", default="0.0.0.0", help="Chat server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Chat server listen port (default: 8080)")
    parser.add_argument(
        "--tool-server",
        metavar="PATH_OR_URL",
        help="MCP server: a local script path (stdio) or an http(s) SSE URL. Overrides MCP_SERVER.",
    )
    parser.add_argument("--ask", metavar="TEXT", help="Ask a single question and stream the answer to stdout")
    parser.add_argument("--persona", metavar="ID", help="Persona id for --ask (default: yitam)")
    parser.add_argument("--list-personas", action="store_true", help="List available personas")

    args = parser.parse_args()

    try:
        if args.list_personas:
            list_personas()
            return

        if args.serve:
            from mcpchat.api.server import run as run_server

            if args.tool_server:
                os.environ["MCP_SERVER"] = args.tool_server
            run_server(host=args.host, port=args.port)
            return

        if args.ask:
            import asyncio

            tool_server = args.tool_server or (os.getenv("MCP_SERVER") or "").strip() or None
            sys.exit(asyncio.run(ask_once(args.ask, tool_server=tool_server, persona_id=args.persona)))

        # No arguments provided
        parser.print_help()
        print("\nTip: Use `--ask \"...\"` for a one-off question or `--serve` to run the API")

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
