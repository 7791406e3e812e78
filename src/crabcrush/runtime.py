"""
Agent Runtime - sessions, context windowing and the tool-calling loop.

This module implements the conversation loop that:
1. Receives a user message for a session
2. Sends a windowed slice of history (plus a fresh system prompt) to the router
3. Streams text deltas back to the caller as they arrive
4. Executes any requested tool calls through the tool registry
5. Feeds the results back and asks the model again
6. Stops on a plain reply, a declined confirmation, cancellation, or the round cap

Everything the caller sees comes out of a single async generator, chat(),
so a channel can render "thinking -> tool ran -> final text" as it happens.
"""

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from crabcrush import tool_blocks
from crabcrush.audit import AuditSink, emit_audit
from crabcrush.builtin_tools import get_builtin_tools
from crabcrush.cancellation import CancellationToken
from crabcrush.config import Settings
from crabcrush.provider import ChatOptions, GenerationCancelled
from crabcrush.router import ModelRouter, build_router
from crabcrush.session import Session
from crabcrush.store import ConversationStore, to_messages
from crabcrush.tool_blocks import ToolRecord
from crabcrush.tools import ConfirmHandler, ToolContext, ToolRegistry
from crabcrush.types import (
    AgentEvent,
    ChatDone,
    Message,
    Role,
    TextDelta,
    ToolCall,
    ToolCallEvent,
    Usage,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 40
DEFAULT_MAX_TOOL_ROUNDS = 5

DECLINED_NOTICE = "Stopped: the requested action was not confirmed, so it was not carried out."
SKIPPED_TOOL_RESULT = "[Tool execution skipped - an earlier action in this round was not confirmed]"
CANCELLED_TOOL_RESULT = "[Tool execution cancelled - generation was interrupted]"

ContextProvider = Callable[[], str]


@dataclass
class TurnState:
    """Bookkeeping for one call to chat()."""
    reply: str = ""
    model: str = ""
    usage: Usage | None = None
    rounds: int = 0
    cancelled: bool = False
    declined: bool = False

    def add_usage(self, usage: Usage | None) -> None:
        if usage is None:
            return
        self.usage = usage if self.usage is None else self.usage + usage


class AgentRuntime:
    """
    Owns the session table and drives the chat loop.

    The session table belongs to this instance and lives until aclose().
    Concurrent chat() calls for different sessions are independent. Calls
    for the same session are not serialized here: the gateway cancels the
    previous generation before starting a new one.
    """

    def __init__(
        self,
        router: ModelRouter,
        registry: ToolRegistry | None = None,
        *,
        system_prompt: str = "",
        max_tokens: int = 4096,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        owner_ids: frozenset[str] | set[str] | None = None,
        store: ConversationStore | None = None,
        audit: AuditSink | None = None,
        context_provider: ContextProvider | None = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            router: Model router used for every generation
            registry: Tools offered to the model (none if omitted)
            system_prompt: Base system prompt
            max_tokens: Completion token limit per request
            context_window: History messages sent upstream per round
            max_tool_rounds: Cap on tool rounds per user message
            owner_ids: Senders treated as owner; empty means everyone
            store: Conversation store; None keeps sessions in memory only
            audit: Fire-and-forget audit sink
            context_provider: Returns extra system-prompt text (persona etc.),
                called fresh for every round
        """
        self.router = router
        self.registry = registry or ToolRegistry()
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.context_window = context_window
        self.max_tool_rounds = max_tool_rounds
        self.owner_ids = frozenset(owner_ids or ())
        self.store = store
        self.audit = audit
        self.context_provider = context_provider
        self._sessions: dict[str, Session] = {}

    # ---------------------------------------------------------------------
    # Sessions
    # ---------------------------------------------------------------------

    def get_or_create_session(self, session_id: str, channel: str = "webchat", sender_id: str = "") -> Session:
        """
        Get a session, creating it on first use.

        With a store, a new session is seeded with the most recent window
        of stored history.
        """
        session = self._sessions.get(session_id)
        if session is None:
            messages: list[Message] = []
            if self.store is not None:
                self.store.ensure_conversation(session_id, channel, sender_id)
                rows = self.store.get_recent_messages(session_id, self.context_window)
                messages = to_messages(rows)
                if messages:
                    logger.info(f"Loaded {len(messages)} stored messages for session {session_id}")
            session = Session(id=session_id, messages=messages)
            self._sessions[session_id] = session
        session.touch()
        return session

    def is_owner(self, sender_id: str) -> bool:
        """Everyone is owner unless an owner id set is configured."""
        if not self.owner_ids:
            return True
        return sender_id in self.owner_ids

    @property
    def session_count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    def get_history(self, session_id: str, limit: int | None = None, offset: int = 0) -> list[Message]:
        """
        History for display, oldest first.

        offset skips that many of the newest messages, for paging back.
        """
        limit = limit or self.context_window
        if self.store is not None:
            return to_messages(self.store.get_recent_messages(session_id, limit, offset))

        session = self._sessions.get(session_id)
        if session is None:
            return []
        end = len(session.messages) - offset
        if end <= 0:
            return []
        return list(session.messages[max(0, end - limit):end])

    # ---------------------------------------------------------------------
    # Prompt assembly
    # ---------------------------------------------------------------------

    def resolve_system_prompt(self) -> str:
        """Base prompt plus whatever the context provider injects right now."""
        prompt = self.system_prompt
        if self.context_provider is not None:
            try:
                extra = self.context_provider()
            except Exception as e:
                logger.warning(f"Context provider failed, using base prompt only: {e}")
                extra = ""
            if extra:
                prompt = f"{prompt}\n\n{extra}" if prompt else extra
        return prompt

    def build_request_messages(self, session: Session) -> list[Message]:
        """System prompt followed by the last context_window messages."""
        messages: list[Message] = []
        system_prompt = self.resolve_system_prompt()
        if system_prompt:
            messages.append(Message(role=Role.SYSTEM, content=system_prompt))
        messages.extend(session.window(self.context_window))
        return messages

    # ---------------------------------------------------------------------
    # The chat loop
    # ---------------------------------------------------------------------

    async def chat(
        self,
        session_id: str,
        text: str,
        cancel_token: CancellationToken | None = None,
        sender_id: str = "",
        confirm: ConfirmHandler | None = None,
        channel: str = "webchat",
    ) -> AsyncIterator[AgentEvent]:
        """
        Process one user message and stream the turn.

        Yields TextDelta and ToolCallEvent in the order they happen and ends
        with a ChatDone carrying the model, accumulated usage and whether the
        turn was cancelled. Provider errors propagate after any partial
        reply has been saved; cancellation never raises.
        """
        sender = sender_id or session_id
        session = self.get_or_create_session(session_id, channel, sender)
        is_owner = self.is_owner(sender)

        self._emit("user_input", sessionId=session_id, senderId=sender, channel=channel, content=text)
        session.add_user_message(text)
        self._save(session_id, Role.USER, text)

        context = ToolContext(
            sender_id=sender,
            is_owner=is_owner,
            session_id=session_id,
            confirm=confirm,
            audit=self.audit,
        )
        tools = self.registry.definitions_for(is_owner)
        options = ChatOptions(
            max_tokens=self.max_tokens,
            tools=tools or None,
            cancel_token=cancel_token,
        )

        turn = TurnState()
        try:
            async for event in self._run_rounds(session, context, options, turn):
                yield event
        except GenerationCancelled:
            logger.info(f"Generation for session {session_id} cancelled")
            turn.cancelled = True
        finally:
            self._commit_reply(session, turn)

        dropped = session.compact(self.context_window) if session.message_count > self.context_window * 2 else 0
        if dropped:
            logger.debug(f"Compacted session {session_id}: dropped {dropped} in-memory messages")

        yield ChatDone(model=turn.model, usage=turn.usage, cancelled=turn.cancelled)

    async def _run_rounds(
        self,
        session: Session,
        context: ToolContext,
        options: ChatOptions,
        turn: TurnState,
    ) -> AsyncIterator[AgentEvent]:
        while turn.rounds < self.max_tool_rounds:
            turn.reply = ""
            done: ChatDone | None = None

            async for event in self.router.chat(self.build_request_messages(session), options):
                if isinstance(event, TextDelta):
                    turn.reply += event.text
                    yield event
                elif isinstance(event, ChatDone):
                    done = event

            if done is None:
                return
            turn.model = done.model or turn.model
            turn.add_usage(done.usage)

            if done.cancelled:
                turn.cancelled = True
                return
            if not done.tool_calls:
                return

            turn.rounds += 1
            logger.info(
                f"Session {session.id} round {turn.rounds}: model requested "
                f"{len(done.tool_calls)} tool call(s)"
            )
            async for event in self._execute_tool_round(session, done.tool_calls, context, options, turn):
                yield event

            if turn.declined:
                turn.reply = DECLINED_NOTICE
                yield TextDelta(text=DECLINED_NOTICE)
                return
            if turn.cancelled:
                return

        logger.warning(
            f"Session {session.id} reached the tool round limit ({self.max_tool_rounds}); "
            "ending the turn without another model call"
        )

    async def _execute_tool_round(
        self,
        session: Session,
        tool_calls: list[ToolCall],
        context: ToolContext,
        options: ChatOptions,
        turn: TurnState,
    ) -> AsyncIterator[AgentEvent]:
        """Run the calls in request order, recording every one in history."""
        prose, turn.reply = turn.reply, ""
        session.add_assistant_message(prose, tool_calls=tool_calls)
        token = options.cancel_token
        records: list[ToolRecord] = []

        for call in tool_calls:
            if turn.declined or (token is not None and token.cancelled):
                if token is not None and token.cancelled:
                    turn.cancelled = True
                content = SKIPPED_TOOL_RESULT if turn.declined else CANCELLED_TOOL_RESULT
                session.add_tool_message(call.id, content)
                records.append(ToolRecord(call.id, call.name, call.arguments, content, False))
                continue

            args = call.parsed_arguments()
            self._emit("tool_call", sessionId=session.id, senderId=context.sender_id, name=call.name, args=args)
            result = await self.registry.execute(call.name, args, context)
            self._emit(
                "tool_result",
                sessionId=session.id,
                senderId=context.sender_id,
                name=call.name,
                success=result.success,
            )

            session.add_tool_message(call.id, result.content)
            records.append(ToolRecord(call.id, call.name, call.arguments, result.content, result.success))
            if result.declined:
                turn.declined = True

            yield ToolCallEvent(
                tool_call_id=call.id,
                name=call.name,
                arguments=args,
                result=result.content,
                success=result.success,
            )

        self._save(session.id, Role.ASSISTANT, tool_blocks.encode(prose, records))

    # ---------------------------------------------------------------------
    # Persistence and audit
    # ---------------------------------------------------------------------

    def _commit_reply(self, session: Session, turn: TurnState) -> None:
        """Record the reply text received so far, even on failure."""
        if not turn.reply:
            return
        session.add_assistant_message(turn.reply)
        self._save(session.id, Role.ASSISTANT, turn.reply)
        turn.reply = ""

    def _save(self, session_id: str, role: Role, content: str) -> None:
        if self.store is None:
            return
        try:
            self.store.save_message(session_id, role.value, content)
        except Exception as e:
            logger.error(f"Failed to persist {role.value} message for session {session_id}: {e}")

    def _emit(self, event_type: str, **fields: Any) -> None:
        emit_audit(self.audit, event_type, **fields)

    async def aclose(self) -> None:
        """Drop every session and close the providers."""
        self._sessions.clear()
        await self.router.aclose()


def build_runtime(
    settings: Settings,
    *,
    store: ConversationStore | None = None,
    audit: AuditSink | None = None,
    context_provider: ContextProvider | None = None,
) -> AgentRuntime:
    """Wire router, built-in tools and runtime from loaded settings."""
    router = build_router(settings)
    registry = ToolRegistry()
    for tool in get_builtin_tools(settings.tools.file_base):
        registry.register(tool)

    agent = settings.agent
    return AgentRuntime(
        router,
        registry,
        system_prompt=agent.system_prompt,
        max_tokens=agent.max_tokens,
        context_window=agent.context_window,
        max_tool_rounds=agent.max_tool_rounds,
        owner_ids=agent.owner_ids,
        store=store,
        audit=audit,
        context_provider=context_provider,
    )
