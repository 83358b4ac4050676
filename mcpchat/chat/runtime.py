"""
Chat turn orchestration.

One QueryOrchestrator owns one session's transcript. A turn moves through:

    NEW -> INITIAL_STREAM -> {TOOL_EXECUTION -> FOLLOWUP_STREAM}* -> DONE

with ERROR absorbing from any state. Admission (rate limit, content safety) happens
before any backend call. Tool calls announced by the model are executed one at a time,
in the order they were announced, and every call is recorded in the transcript as a
tool-use/tool-result pair whatever its outcome.

Streaming callers pass a sink: `sink(chunk)` may return a value or an awaitable, and an
explicit False stops the turn.
"""

from __future__ import annotations

import asyncio
import html
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from mcpchat.authz.policy import ChatPolicy, load_chat_policy
from mcpchat.authz.rate_limit import RateLimiter, get_rate_limiter
from mcpchat.chat import prompts
from mcpchat.chat.conversation import ConversationState
from mcpchat.chat.errors import (
    BackendError,
    ChatError,
    RateLimitedError,
    StreamStalledError,
    ToolInvocationError,
    UnsafeContentError,
    error_payload,
    payload_for_exception,
)
from mcpchat.chat.intents import SearchIntentResolver
from mcpchat.chat.personas import Persona, persona_system_prompt
from mcpchat.chat.runtime_streaming import (
    CONTINUE_MARKER,
    FollowupSelection,
    StreamAttempt,
    consume_with_watchdog,
    select_followup,
    truncate_to_sentence,
)
from mcpchat.chat.tools import ToolCallDisplay, ToolRegistry, serialize
from mcpchat.chat.types import ChatToolCall, InboundTurn, SearchContext, TurnOutcome
from mcpchat.llm.backend import get_llm_backend
from mcpchat.safety.gate import ContentSafetyGate

logger = logging.getLogger(__name__)

Sink = Callable[[str], Any]

ANONYMOUS_CALLER = "anonymous"


def escape_chunk(text: str) -> str:
    return html.escape(text, quote=False)


def persona_prefix(persona: Persona) -> str:
    return "" if persona.is_default else f"{persona.display_name}: "


class _Emitter:
    """Forwards chunks to the caller's sink and remembers when it asked to stop."""

    def __init__(self, sink: Sink):
        self._sink = sink
        self._prefix = ""
        self.stopped = False

    def set_prefix(self, prefix: str) -> None:
        self._prefix = prefix

    async def send(self, chunk: str) -> bool:
        if self.stopped:
            return False
        if not chunk:
            return True
        try:
            r = self._sink(chunk)
            if inspect.isawaitable(r):
                r = await r
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Chat sink failed; stopping turn")
            self.stopped = True
            return False
        if r is False:
            logger.info("Chat sink requested stop")
            self.stopped = True
        return not self.stopped

    async def send_text(self, text: str) -> bool:
        if not text:
            return not self.stopped
        if self._prefix:
            if not text.startswith(self._prefix):
                text = self._prefix + text
            self._prefix = ""
        return await self.send(escape_chunk(text))


@dataclass
class _TurnRun:
    texts: List[str] = field(default_factory=list)
    blocks: List[str] = field(default_factory=list)
    tool_calls: int = 0


class QueryOrchestrator:
    def __init__(
        self,
        *,
        conversation: ConversationState,
        rate_limiter: RateLimiter,
        safety: ContentSafetyGate,
        resolver: SearchIntentResolver,
        registry: ToolRegistry,
        tool_backend: Any,
        llm: Any,
        policy: ChatPolicy,
    ):
        self.conversation = conversation
        self.rate_limiter = rate_limiter
        self.safety = safety
        self.resolver = resolver
        self.registry = registry
        self.tool_backend = tool_backend
        self.llm = llm
        self.policy = policy
        self._lock = asyncio.Lock()

    # ---- admission ----

    def _bind_chat(self, turn: InboundTurn) -> None:
        conv = self.conversation
        if conv.is_current_chat(turn.chat_id):
            if turn.persona_id and turn.persona_id != conv.persona.id:
                conv.set_persona(turn.persona_id)
            return
        if turn.chat_id:
            logger.info("Chat %s is not the current chat; starting a new one", turn.chat_id)
        conv.start_new_chat(turn.persona_id or conv.persona.id)

    async def _admit(self, turn: InboundTurn) -> Tuple[str, Persona]:
        decision = self.rate_limiter.check_and_admit(str(turn.caller_id or ANONYMOUS_CALLER))
        if not decision.allowed:
            logger.info("Turn rejected by rate limiter (%s)", decision.scope)
            raise RateLimitedError(reason=decision.reason)

        self._bind_chat(turn)
        text = self.safety.sanitize(turn.text)
        if not text:
            raise UnsafeContentError(reason="message is empty")

        verdict = await self.safety.classify(text, kind="request")
        self.conversation.add_user_message(text)
        if not verdict.safe:
            raise UnsafeContentError(reason=verdict.reason)
        return text, self.conversation.persona

    # ---- tools ----

    async def _execute_tool_call(self, call: ChatToolCall, ctx: SearchContext) -> ToolCallDisplay:
        args: Dict[str, Any] = dict(call.args or {})
        content: Any = None
        is_error = False
        # Only locally built error strings skip moderation; server content never does.
        from_server = False
        try:
            args = self.registry.enrich(call.name, call.args, ctx)
            result = await self.tool_backend.invoke(call.name, args)
            content, is_error = result.content, bool(result.is_error)
            from_server = True
        except ToolInvocationError as e:
            logger.warning("Tool %s failed: %s", call.name, e)
            content, is_error = f"Error: {e}", True
        except Exception as e:
            logger.exception("Tool %s raised", call.name)
            content, is_error = f"Error: {type(e).__name__}: {e}", True

        if from_server and content is not None and serialize(content).strip():
            verdict = await self.safety.classify(serialize(content), kind="tool_result")
            if not verdict.safe:
                logger.warning("Tool %s result blocked by safety check", call.name)
                content = f"[Content safety check failed: {verdict.reason or 'unsafe content'}]"

        self.conversation.add_tool_use_message(call.id, call.name, args)
        self.conversation.add_tool_result_message(call.id, serialize(content) if content is not None else "")
        return self.registry.format(call.name, args, content, is_error)

    def _tools_for_llm(self) -> Optional[List[Dict[str, Any]]]:
        return self.registry.to_llm_tools() or None

    async def _pace(self) -> None:
        if self.policy.tool_pacing_seconds > 0:
            await asyncio.sleep(self.policy.tool_pacing_seconds)

    # ---- streaming mode ----

    async def process_streaming(self, turn: InboundTurn, sink: Sink) -> TurnOutcome:
        async with self._lock:
            return await self._stream_turn(turn, sink)

    async def _stream_turn(self, turn: InboundTurn, sink: Sink) -> TurnOutcome:
        em = _Emitter(sink)
        run = _TurnRun()
        try:
            text, persona = await self._admit(turn)
            em.set_prefix(persona_prefix(persona))
            await self._stream_rounds(text, persona, em, run)
        except asyncio.CancelledError:
            raise
        except ChatError as e:
            logger.info("Chat turn ended with %s: %s", e.kind, e)
            await em.send(payload_for_exception(e))
            return self._outcome(run, "error", e.kind)
        except Exception:
            logger.exception("Chat turn failed")
            await em.send(error_payload("unknown"))
            return self._outcome(run, "error", "unknown")
        return self._outcome(run, "cancelled" if em.stopped else "done")

    def _outcome(self, run: _TurnRun, state: str, error_kind: Optional[str] = None) -> TurnOutcome:
        return TurnOutcome(
            chat_id=self.conversation.chat_id or "",
            state=state,  # type: ignore[arg-type]
            error_kind=error_kind,
            text="\n\n".join(run.texts),
            tool_calls=run.tool_calls,
        )

    async def _stream_rounds(self, text: str, persona: Persona, em: _Emitter, run: _TurnRun) -> None:
        ctx = await self.resolver.resolve(text, persona)
        tools = self._tools_for_llm()
        calls = await self._initial_stream(persona_system_prompt(prompts.INITIAL, persona), tools, em, run)

        rounds = 0
        while calls and not em.stopped:
            if rounds >= self.policy.max_tool_rounds:
                logger.warning("Dropping %d tool call(s) after %d tool rounds", len(calls), rounds)
                return
            rounds += 1
            for call in calls:
                display = await self._execute_tool_call(call, ctx)
                run.tool_calls += 1
                if not await em.send(display.render()):
                    return
            await self._pace()
            calls = await self._followup_stream(persona, tools, em, run)

    async def _consume(self, stream: AsyncIterator[Any], attempt: StreamAttempt, on_chunk: Any) -> bool:
        async with aclosing(stream) as s:
            return await consume_with_watchdog(
                s,
                attempt,
                on_chunk,
                soft_idle_seconds=self.policy.stream_soft_idle_seconds,
                hard_idle_seconds=self.policy.stream_hard_idle_seconds,
            )

    async def _initial_stream(
        self, system: str, tools: Optional[List[Dict[str, Any]]], em: _Emitter, run: _TurnRun
    ) -> List[ChatToolCall]:
        attempt = StreamAttempt(number=1)

        async def on_chunk(chunk: Any) -> bool:
            if chunk.kind == "text" and chunk.content:
                attempt.append(chunk.content)
                attempt.drain()
                return await em.send_text(chunk.content)
            if chunk.kind == "tool_call" and chunk.tool_call is not None:
                attempt.tool_calls.setdefault(chunk.tool_call.id, chunk.tool_call)
            elif chunk.kind == "done":
                attempt.completed = True
            return True

        stream = self.llm.stream(system=system, turns=self.conversation.get_history(), tools=tools)
        if not await self._consume(stream, attempt, on_chunk):
            return []

        if attempt.stalled:
            partial = truncate_to_sentence(attempt.full_buffer)
            if partial:
                self.conversation.add_assistant_message(partial)
                run.texts.append(partial)
            raise StreamStalledError()

        if attempt.full_buffer.strip():
            self.conversation.add_assistant_message(attempt.full_buffer)
            run.texts.append(attempt.full_buffer)
        return list(attempt.tool_calls.values())

    async def _followup_attempt(
        self,
        attempt: StreamAttempt,
        system: str,
        tools: Optional[List[Dict[str, Any]]],
        live: Optional[_Emitter],
    ) -> bool:
        threshold = self.policy.flush_threshold_chars

        async def on_chunk(chunk: Any) -> bool:
            if chunk.kind == "text" and chunk.content:
                attempt.append(chunk.content)
                if live is not None:
                    out = attempt.take_flushable(threshold)
                    if out:
                        return await live.send_text(out)
            elif chunk.kind == "tool_call" and chunk.tool_call is not None:
                attempt.tool_calls.setdefault(chunk.tool_call.id, chunk.tool_call)
            elif chunk.kind == "done":
                attempt.completed = True
                attempt.truncated = bool((chunk.metadata or {}).get("truncated"))
            return True

        stream = self.llm.stream(
            system=system,
            turns=self.conversation.get_history(),
            tools=tools,
            max_tokens=self.policy.followup_max_tokens,
        )
        try:
            return await self._consume(stream, attempt, on_chunk)
        except BackendError as e:
            # Classified provider failures end the turn; only transport noise is retried.
            if e.kind != "unknown":
                raise
            logger.warning("Follow-up attempt %d failed: %s", attempt.number, e)
            attempt.error = e
            return True

    async def _followup_stream(
        self, persona: Persona, tools: Optional[List[Dict[str, Any]]], em: _Emitter, run: _TurnRun
    ) -> List[ChatToolCall]:
        system = persona_system_prompt(prompts.FOLLOW_UP, persona)
        attempts: List[StreamAttempt] = []
        for n in range(1, max(1, self.policy.followup_max_attempts) + 1):
            attempt = StreamAttempt(number=n)
            attempts.append(attempt)
            if not await self._followup_attempt(attempt, system, tools, em if n == 1 else None):
                return []
            if attempt.clean:
                break
            logger.warning(
                "Follow-up attempt %d incomplete (stalled=%s, truncated=%s, chars=%d)",
                n,
                attempt.stalled,
                attempt.truncated,
                len(attempt.full_buffer),
            )

        selection = select_followup(attempts)
        chosen = next((a for a in attempts if a.number == selection.attempt), None)
        if chosen is None:
            # No text at all: fine only when the model cleanly answered with tool calls alone.
            finished = [a for a in attempts if a.completed and not a.truncated and not a.stalled and a.error is None]
            if not finished:
                raise StreamStalledError()
            return list(finished[-1].tool_calls.values())
        if not selection.text.strip():
            raise StreamStalledError()

        if not await self._deliver_followup(selection, attempts[0], em):
            return []
        self.conversation.add_assistant_message(selection.text)
        run.texts.append(selection.text)
        if selection.complete and chosen.completed and not chosen.stalled:
            return list(chosen.tool_calls.values())
        return []

    async def _deliver_followup(self, selection: FollowupSelection, first: StreamAttempt, em: _Emitter) -> bool:
        """Send whatever part of the chosen follow-up text the caller has not seen yet."""
        delivered = first.flushed_text
        text = selection.text
        if delivered and text.startswith(delivered):
            return await em.send_text(text[len(delivered) :])
        if delivered and delivered.startswith(text):
            return not em.stopped
        if selection.continued:
            lead = CONTINUE_MARKER
        else:
            lead = "\n\n" if delivered else ""
        return await em.send_text(lead + text)

    # ---- blocking mode ----

    async def process(self, turn: InboundTurn) -> str:
        return (await self.run_blocking(turn)).text

    async def run_blocking(self, turn: InboundTurn) -> TurnOutcome:
        async with self._lock:
            run = _TurnRun()
            try:
                await self._blocking_rounds(turn, run)
            except asyncio.CancelledError:
                raise
            except ChatError as e:
                logger.info("Chat turn ended with %s: %s", e.kind, e)
                return TurnOutcome(
                    chat_id=self.conversation.chat_id or "",
                    state="error",
                    error_kind=e.kind,
                    text=e.user_message(),
                    tool_calls=run.tool_calls,
                )
            except Exception:
                logger.exception("Chat turn failed")
                return TurnOutcome(
                    chat_id=self.conversation.chat_id or "",
                    state="error",
                    error_kind="unknown",
                    text=ChatError().user_message(),
                    tool_calls=run.tool_calls,
                )
            return TurnOutcome(
                chat_id=self.conversation.chat_id or "",
                text="\n\n".join(run.blocks),
                tool_calls=run.tool_calls,
            )

    def _record_reply(self, text: str, persona: Persona, run: _TurnRun) -> None:
        if not text.strip():
            return
        self.conversation.add_assistant_message(text)
        prefix = persona_prefix(persona) if not run.texts else ""
        run.texts.append(text)
        run.blocks.append(escape_chunk(prefix + text))

    async def _blocking_rounds(self, turn: InboundTurn, run: _TurnRun) -> None:
        text, persona = await self._admit(turn)
        ctx = await self.resolver.resolve(text, persona)
        tools = self._tools_for_llm()

        reply = await self.llm.complete(
            system=persona_system_prompt(prompts.INITIAL, persona),
            turns=self.conversation.get_history(),
            tools=tools,
        )
        self._record_reply(reply.text, persona, run)
        calls = reply.tool_calls

        followup_system = persona_system_prompt(prompts.FOLLOW_UP, persona)
        rounds = 0
        while calls:
            if rounds >= self.policy.max_tool_rounds:
                logger.warning("Dropping %d tool call(s) after %d tool rounds", len(calls), rounds)
                return
            rounds += 1
            for call in calls:
                display = await self._execute_tool_call(call, ctx)
                run.tool_calls += 1
                run.blocks.append(display.render())
            await self._pace()
            reply = await self.llm.complete(
                system=followup_system,
                turns=self.conversation.get_history(),
                tools=tools,
                max_tokens=self.policy.followup_max_tokens,
            )
            self._record_reply(reply.text, persona, run)
            calls = reply.tool_calls


def build_orchestrator(
    *,
    registry: ToolRegistry,
    tool_backend: Any,
    llm: Any = None,
    policy: Optional[ChatPolicy] = None,
    rate_limiter: Optional[RateLimiter] = None,
    conversation: Optional[ConversationState] = None,
    persona_id: Optional[str] = None,
) -> QueryOrchestrator:
    """Wire an orchestrator for one session from env config and process-wide services."""
    policy = policy or load_chat_policy()
    llm = llm if llm is not None else get_llm_backend()
    return QueryOrchestrator(
        conversation=conversation if conversation is not None else ConversationState(persona_id),
        rate_limiter=rate_limiter if rate_limiter is not None else get_rate_limiter(),
        safety=ContentSafetyGate(llm, policy),
        resolver=SearchIntentResolver(llm),
        registry=registry,
        tool_backend=tool_backend,
        llm=llm,
        policy=policy,
    )
