"""
Tests for the AgentRuntime chat loop.

The model router is replaced with a scripted fake so each test controls
exactly what every model round returns.
"""

import pytest
from conftest import FakeStore

from crabcrush import tool_blocks
from crabcrush.cancellation import CancellationToken
from crabcrush.config import AgentConfig, ProviderConfig, Settings, ToolsConfig
from crabcrush.provider import GenerationCancelled, ServerError
from crabcrush.runtime import (
    DECLINED_NOTICE,
    SKIPPED_TOOL_RESULT,
    AgentRuntime,
    build_runtime,
)
from crabcrush.store import StoredMessage
from crabcrush.tools import ToolPermission, ToolRegistry
from crabcrush.types import (
    ChatDone,
    Role,
    TextDelta,
    ToolCall,
    ToolCallEvent,
    Usage,
)


def text_round(*texts: str, usage: Usage | None = None) -> list:
    return [TextDelta(text=t) for t in texts] + [ChatDone(model="fake-model", usage=usage)]


def tool_round(*calls: ToolCall, text: str = "", usage: Usage | None = None) -> list:
    events = [TextDelta(text=text)] if text else []
    return events + [ChatDone(model="fake-model", usage=usage, tool_calls=list(calls))]


class ScriptedRouter:
    """Router fake: each chat() call replays the next scripted round."""

    def __init__(self, rounds: list[list] | None = None, default: list | None = None):
        self.rounds = list(rounds or [])
        self.default = default if default is not None else text_round("Default response")
        self.calls: list[dict] = []
        self.closed = False

    async def chat(self, messages, options=None):
        self.calls.append({"messages": list(messages), "options": options})
        script = self.rounds.pop(0) if self.rounds else self.default
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item

    async def aclose(self):
        self.closed = True


def make_registry(confirm_required: bool = False) -> tuple[ToolRegistry, list]:
    executed: list = []

    def lookup(args, context):
        executed.append(("lookup", args))
        return f"value for {args.get('key', '?')}"

    def danger(args, context):
        executed.append(("danger", args))
        return "done"

    registry = ToolRegistry()
    registry.register_function(
        "lookup", "Look a key up", {"type": "object", "properties": {"key": {"type": "string"}}}, lookup
    )
    registry.register_function(
        "danger", "Owner-only side effect", {"type": "object", "properties": {}}, danger,
        permission=ToolPermission.OWNER, confirm_required=confirm_required,
    )
    return registry, executed


async def run(runtime: AgentRuntime, session_id: str = "s1", text: str = "Hello", **kwargs) -> list:
    return [event async for event in runtime.chat(session_id, text, **kwargs)]


class TestPlainChat:
    """Tests for turns without tools."""

    @pytest.mark.asyncio
    async def test_streams_text_and_done(self):
        router = ScriptedRouter([text_round("Hi", " there")])
        runtime = AgentRuntime(router, system_prompt="Be nice.")

        events = await run(runtime)

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hi", " there"]
        done = events[-1]
        assert isinstance(done, ChatDone)
        assert done.model == "fake-model"
        assert done.cancelled is False
        assert sum(isinstance(e, ChatDone) for e in events) == 1

    @pytest.mark.asyncio
    async def test_request_has_system_prompt_then_history(self):
        router = ScriptedRouter()
        runtime = AgentRuntime(router, system_prompt="Be nice.")

        await run(runtime, text="first")
        await run(runtime, text="second")

        messages = router.calls[1]["messages"]
        assert messages[0].role == Role.SYSTEM
        assert messages[0].content == "Be nice."
        assert [m.content for m in messages[1:]] == ["first", "Default response", "second"]

    @pytest.mark.asyncio
    async def test_context_provider_is_read_every_round(self):
        persona = ["Persona v1"]
        router = ScriptedRouter()
        runtime = AgentRuntime(router, system_prompt="Base.", context_provider=lambda: persona[0])

        await run(runtime)
        persona[0] = "Persona v2"
        await run(runtime)

        assert router.calls[0]["messages"][0].content == "Base.\n\nPersona v1"
        assert router.calls[1]["messages"][0].content == "Base.\n\nPersona v2"

    @pytest.mark.asyncio
    async def test_window_is_exact(self):
        """Only the last context_window messages are sent, never more."""
        router = ScriptedRouter()
        runtime = AgentRuntime(router, system_prompt="sys", context_window=4)
        session = runtime.get_or_create_session("s1")
        for i in range(10):
            session.add_user_message(f"old {i}")

        await run(runtime, text="newest")

        messages = router.calls[0]["messages"]
        assert len(messages) == 5
        assert messages[0].role == Role.SYSTEM
        assert [m.content for m in messages[1:]] == ["old 7", "old 8", "old 9", "newest"]

    @pytest.mark.asyncio
    async def test_history_is_compacted_past_twice_the_window(self):
        runtime = AgentRuntime(ScriptedRouter(), context_window=2)

        await run(runtime)
        await run(runtime)
        assert runtime.get_or_create_session("s1").message_count == 4
        await run(runtime)
        assert runtime.get_or_create_session("s1").message_count == 2

    @pytest.mark.asyncio
    async def test_usage_is_reported(self):
        usage = Usage(prompt_tokens=5, completion_tokens=2, total_tokens=7)
        runtime = AgentRuntime(ScriptedRouter([text_round("ok", usage=usage)]))
        done = (await run(runtime))[-1]
        assert done.usage == usage

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self):
        router = ScriptedRouter()
        runtime = AgentRuntime(router)

        await run(runtime, session_id="a", text="for a")
        await run(runtime, session_id="b", text="for b")

        assert runtime.session_count == 2
        assert [m.content for m in router.calls[1]["messages"]] == ["for b"]


class TestToolLoop:
    """Tests for the tool-calling rounds."""

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self):
        call = ToolCall(id="call_1", name="lookup", arguments='{"key": "weather"}')
        router = ScriptedRouter([tool_round(call, text="Checking."), text_round("It is sunny.")])
        registry, executed = make_registry()
        runtime = AgentRuntime(router, registry)

        events = await run(runtime)

        kinds = [type(e).__name__ for e in events]
        assert kinds == ["TextDelta", "ToolCallEvent", "TextDelta", "ChatDone"]
        tool_event = events[1]
        assert tool_event == ToolCallEvent(
            tool_call_id="call_1",
            name="lookup",
            arguments={"key": "weather"},
            result="value for weather",
            success=True,
        )
        assert executed == [("lookup", {"key": "weather"})]

        second = router.calls[1]["messages"]
        assert second[-2].role == Role.ASSISTANT
        assert second[-2].tool_calls == [call]
        assert second[-2].content == "Checking."
        assert second[-1].role == Role.TOOL
        assert second[-1].tool_call_id == "call_1"
        assert second[-1].content == "value for weather"

    @pytest.mark.asyncio
    async def test_multiple_calls_run_in_order(self):
        calls = [
            ToolCall(id="c1", name="lookup", arguments='{"key": "a"}'),
            ToolCall(id="c2", name="lookup", arguments='{"key": "b"}'),
        ]
        router = ScriptedRouter([tool_round(*calls), text_round("done")])
        registry, executed = make_registry()
        runtime = AgentRuntime(router, registry)

        events = await run(runtime)

        assert [e.tool_call_id for e in events if isinstance(e, ToolCallEvent)] == ["c1", "c2"]
        assert executed == [("lookup", {"key": "a"}), ("lookup", {"key": "b"})]

    @pytest.mark.asyncio
    async def test_malformed_arguments_become_empty(self):
        call = ToolCall(id="c1", name="lookup", arguments='{"key": ')
        router = ScriptedRouter([tool_round(call), text_round("ok")])
        registry, executed = make_registry()
        runtime = AgentRuntime(router, registry)

        await run(runtime)
        assert executed == [("lookup", {})]

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self):
        call = ToolCall(id="c1", name="teleport", arguments="{}")
        router = ScriptedRouter([tool_round(call), text_round("Sorry.")])
        runtime = AgentRuntime(router, ToolRegistry())

        events = await run(runtime)

        tool_event = next(e for e in events if isinstance(e, ToolCallEvent))
        assert tool_event.success is False
        assert "does not exist" in router.calls[1]["messages"][-1].content

    @pytest.mark.asyncio
    async def test_round_cap(self):
        """A model that keeps asking for tools is called max_tool_rounds times."""
        call = ToolCall(id="loop", name="lookup", arguments="{}")
        router = ScriptedRouter(default=tool_round(call))
        registry, executed = make_registry()
        runtime = AgentRuntime(router, registry, max_tool_rounds=5)

        events = await run(runtime)

        assert len(router.calls) == 5
        assert len(executed) == 5
        assert isinstance(events[-1], ChatDone)
        assert events[-1].cancelled is False

    @pytest.mark.asyncio
    async def test_compaction_keeps_tool_replies_paired(self):
        """Every tool message left after compaction answers an earlier assistant tool call."""
        calls = [ToolCall(id=f"c{i}", name="lookup", arguments="{}") for i in range(3)]
        router = ScriptedRouter([
            text_round("one"),
            text_round("two"),
            tool_round(*calls),
            text_round("three"),
        ])
        registry, _ = make_registry()
        runtime = AgentRuntime(router, registry, context_window=4)

        await run(runtime, text="1")
        await run(runtime, text="2")
        await run(runtime, text="3")

        messages = runtime.get_or_create_session("s1").messages
        assert len(messages) <= 4
        issued: set[str] = set()
        for message in messages:
            for call in message.tool_calls or []:
                issued.add(call.id)
            if message.role == Role.TOOL:
                assert message.tool_call_id in issued
        assert messages[0].role != Role.TOOL

    @pytest.mark.asyncio
    async def test_usage_accumulates_across_rounds(self):
        call = ToolCall(id="c1", name="lookup", arguments="{}")
        router = ScriptedRouter([
            tool_round(call, usage=Usage(10, 2, 12)),
            text_round("ok", usage=Usage(20, 3, 23)),
        ])
        registry, _ = make_registry()
        runtime = AgentRuntime(router, registry)

        done = (await run(runtime))[-1]
        assert done.usage == Usage(30, 5, 35)


class TestPermissions:
    """Tests for owner gating in the loop."""

    @pytest.mark.asyncio
    async def test_non_owner_sees_only_public_tools(self):
        router = ScriptedRouter()
        registry, _ = make_registry()
        runtime = AgentRuntime(router, registry, owner_ids={"alice"})

        await run(runtime, sender_id="bob")

        tools = router.calls[0]["options"].tools
        assert [t.name for t in tools] == ["lookup"]

    @pytest.mark.asyncio
    async def test_owner_sees_all_tools(self):
        router = ScriptedRouter()
        registry, _ = make_registry()
        runtime = AgentRuntime(router, registry, owner_ids={"alice"})

        await run(runtime, sender_id="alice")

        assert [t.name for t in router.calls[0]["options"].tools] == ["lookup", "danger"]

    def test_everyone_is_owner_without_owner_ids(self):
        runtime = AgentRuntime(ScriptedRouter())
        assert runtime.is_owner("anyone") is True

    @pytest.mark.asyncio
    async def test_non_owner_call_is_denied(self):
        call = ToolCall(id="c1", name="danger", arguments="{}")
        router = ScriptedRouter([tool_round(call), text_round("Cannot do that.")])
        registry, executed = make_registry()
        runtime = AgentRuntime(router, registry, owner_ids={"alice"})

        events = await run(runtime, sender_id="bob")

        assert executed == []
        tool_event = next(e for e in events if isinstance(e, ToolCallEvent))
        assert tool_event.success is False
        assert len(router.calls) == 2


class TestConfirmation:
    """Tests for confirmation-gated tools in the loop."""

    @pytest.mark.asyncio
    async def test_missing_handler_stops_the_turn(self):
        calls = [
            ToolCall(id="c1", name="danger", arguments="{}"),
            ToolCall(id="c2", name="lookup", arguments='{"key": "x"}'),
        ]
        router = ScriptedRouter([tool_round(*calls)])
        registry, executed = make_registry(confirm_required=True)
        audit: list[dict] = []
        runtime = AgentRuntime(router, registry, audit=audit.append)

        events = await run(runtime)

        assert len(router.calls) == 1
        assert executed == []
        assert [type(e).__name__ for e in events] == ["ToolCallEvent", "TextDelta", "ChatDone"]
        assert events[1].text == DECLINED_NOTICE
        assert "tool_confirm_missing" in [e["type"] for e in audit]

        messages = runtime.get_or_create_session("s1").messages
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.ASSISTANT]
        assert messages[3].tool_call_id == "c2"
        assert messages[3].content == SKIPPED_TOOL_RESULT
        assert messages[4].content == DECLINED_NOTICE

    @pytest.mark.asyncio
    async def test_declined_stops_without_another_model_call(self):
        call = ToolCall(id="c1", name="danger", arguments="{}")
        router = ScriptedRouter([tool_round(call), text_round("should not be reached")])
        registry, executed = make_registry(confirm_required=True)
        runtime = AgentRuntime(router, registry)

        async def confirm(request):
            return False

        events = await run(runtime, confirm=confirm)

        assert len(router.calls) == 1
        assert executed == []
        assert not any(isinstance(e, TextDelta) and "reached" in e.text for e in events)

    @pytest.mark.asyncio
    async def test_allowed_continues(self):
        call = ToolCall(id="c1", name="danger", arguments="{}")
        router = ScriptedRouter([tool_round(call), text_round("Done it.")])
        registry, executed = make_registry(confirm_required=True)
        runtime = AgentRuntime(router, registry)
        asked = []

        async def confirm(request):
            asked.append(request)
            return True

        await run(runtime, session_id="s9", sender_id="owner", confirm=confirm)

        assert executed == [("danger", {})]
        assert asked[0].session_id == "s9"
        assert asked[0].sender_id == "owner"
        assert len(router.calls) == 2


class TestFailures:
    """Tests for cancellation and provider errors."""

    @pytest.mark.asyncio
    async def test_cancelled_stream_persists_partial_reply(self, store):
        router = ScriptedRouter([[TextDelta(text="Half an ans"), ChatDone(cancelled=True)]])
        runtime = AgentRuntime(router, store=store)

        events = await run(runtime, cancel_token=CancellationToken())

        assert events[-1].cancelled is True
        assert [(r.role, r.content) for r in store.rows] == [("user", "Hello"), ("assistant", "Half an ans")]

    @pytest.mark.asyncio
    async def test_cancellation_error_ends_turn_quietly(self, store):
        router = ScriptedRouter([[GenerationCancelled("interrupted")]])
        runtime = AgentRuntime(router, store=store)

        events = await run(runtime)

        assert len(events) == 1
        assert events[0].cancelled is True
        assert [r.role for r in store.rows] == ["user"]

    @pytest.mark.asyncio
    async def test_cancel_skips_remaining_tools(self):
        token = CancellationToken()
        calls = [
            ToolCall(id="c1", name="stop", arguments="{}"),
            ToolCall(id="c2", name="lookup", arguments="{}"),
        ]
        registry, executed = make_registry()
        registry.register_function("stop", "cancels", {}, lambda args, context: token.cancel() or "stopped")
        router = ScriptedRouter([tool_round(*calls), text_round("unreachable")])
        runtime = AgentRuntime(router, registry)

        events = await run(runtime, cancel_token=token)

        assert executed == []
        assert len(router.calls) == 1
        assert events[-1].cancelled is True

    @pytest.mark.asyncio
    async def test_provider_error_propagates_after_saving_partial(self, store):
        router = ScriptedRouter([[TextDelta(text="Part"), ServerError("stream broke", "deepseek")]])
        runtime = AgentRuntime(router, store=store)

        received = []
        with pytest.raises(ServerError):
            async for event in runtime.chat("s1", "Hello"):
                received.append(event)

        assert [e.text for e in received] == ["Part"]
        assert store.rows[-1].role == "assistant"
        assert store.rows[-1].content == "Part"
        assert runtime.get_or_create_session("s1").messages[-1].content == "Part"


class TestPersistence:
    """Tests for the conversation store integration."""

    @pytest.mark.asyncio
    async def test_turn_is_saved(self, store):
        call = ToolCall(id="c1", name="lookup", arguments='{"key": "k"}')
        router = ScriptedRouter([tool_round(call, text="Looking."), text_round("Found it.")])
        registry, _ = make_registry()
        audit: list[dict] = []
        runtime = AgentRuntime(router, registry, store=store, audit=audit.append)

        await run(runtime, channel="dingtalk", sender_id="u1")

        assert store.conversations["s1"] == ("dingtalk", "u1")
        roles = [r.role for r in store.rows]
        assert roles == ["user", "assistant", "assistant"]
        prose, records = tool_blocks.decode(store.rows[1].content)
        assert prose == "Looking."
        assert records[0].name == "lookup"
        assert records[0].result == "value for k"
        assert store.rows[2].content == "Found it."
        assert [e["type"] for e in audit] == ["user_input", "tool_call", "tool_result"]

    @pytest.mark.asyncio
    async def test_reload_restores_tool_history(self, store):
        """A fresh runtime rebuilds the assistant/tool pairing from stored rows."""
        store.save_message("s1", "user", "time?")
        store.save_message("s1", "assistant", tool_blocks.encode("", [
            tool_blocks.ToolRecord(id="c1", name="lookup", arguments="{}", result="noon", success=True),
        ]))
        store.save_message("s1", "assistant", "It is noon.")
        router = ScriptedRouter()
        runtime = AgentRuntime(router, store=store)

        await run(runtime, text="thanks")

        messages = router.calls[0]["messages"]
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT, Role.USER]
        assert messages[1].tool_calls[0].id == "c1"
        assert messages[2].tool_call_id == "c1"

    @pytest.mark.asyncio
    async def test_get_history_from_store(self, store):
        runtime = AgentRuntime(ScriptedRouter(), store=store)
        await run(runtime, text="one")
        await run(runtime, text="two")

        history = runtime.get_history("s1", limit=2)
        assert [m.content for m in history] == ["two", "Default response"]
        older = runtime.get_history("s1", limit=2, offset=2)
        assert [m.content for m in older] == ["one", "Default response"]

    @pytest.mark.asyncio
    async def test_get_history_in_memory(self):
        runtime = AgentRuntime(ScriptedRouter())
        await run(runtime, text="one")
        await run(runtime, text="two")

        assert [m.content for m in runtime.get_history("s1", limit=3)] == ["Default response", "two", "Default response"]
        assert [m.content for m in runtime.get_history("s1", limit=2, offset=3)] == ["one"]
        assert runtime.get_history("missing") == []

    @pytest.mark.asyncio
    async def test_store_failure_does_not_break_chat(self):
        class BrokenStore(FakeStore):
            def save_message(self, conversation_id, role, content):
                raise OSError("database is locked")

        runtime = AgentRuntime(ScriptedRouter(), store=BrokenStore())
        events = await run(runtime)
        assert isinstance(events[-1], ChatDone)

    @pytest.mark.asyncio
    async def test_stored_rows_only_feed_new_sessions(self, store):
        store.rows.append(StoredMessage("s1", "user", "remembered"))
        router = ScriptedRouter()
        runtime = AgentRuntime(router, store=store)

        await run(runtime, text="hi")
        assert [m.content for m in router.calls[0]["messages"]] == ["remembered", "hi"]


class TestLifecycle:
    """Tests for construction from settings and shutdown."""

    @pytest.mark.asyncio
    async def test_build_runtime(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CRABCRUSH_FILE_BASE", raising=False)
        settings = Settings(
            providers=[ProviderConfig(id="deepseek", api_key="sk-1")],
            agent=AgentConfig(context_window=10, max_tool_rounds=3, owner_ids=frozenset({"alice"})),
            tools=ToolsConfig(file_base=str(tmp_path)),
        )
        runtime = build_runtime(settings)

        assert runtime.context_window == 10
        assert runtime.max_tool_rounds == 3
        assert set(runtime.registry.names) == {"get_current_time", "read_file", "list_files", "write_file"}
        assert runtime.is_owner("alice") and not runtime.is_owner("bob")
        await runtime.aclose()

    @pytest.mark.asyncio
    async def test_aclose(self):
        router = ScriptedRouter()
        runtime = AgentRuntime(router)
        await run(runtime)

        await runtime.aclose()
        assert router.closed is True
        assert runtime.session_count == 0
