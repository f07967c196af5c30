"""Tests for the agent turn engine."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any, Sequence

import pytest

from mcplink.orchestration.config import EngineConfig
from mcplink.orchestration.engine import AgentEngine, TurnCallbacks, TurnState
from mcplink.orchestration.errors import ModelInvocationError
from mcplink.orchestration.mode_selector import ToolCallingMode
from mcplink.orchestration.model_types import ModelChunk
from mcplink.orchestration.strategies import strategy_for
from mcplink.orchestration.types import AgentEvent, EventType, Message, ToolCall, ToolDescriptor, Usage
from mcplink.orchestration.tools import ToolRegistry
from mcplink.prompts import INTERNAL_NOTE_PREFIX

from tests.helpers import ScriptedModelClient, collect, event_types, make_registry, native_call_chunks, of_type, text_chunks

E = EventType

WEATHER_CALL = '<tool_call>{"name": "weather", "arguments": {"city": "Oslo"}}</tool_call>'
TEXT_MODEL = "gpt-4o"
NATIVE_MODEL = "claude-3-5-sonnet"


def _engine(
    client: ScriptedModelClient,
    tools: ToolRegistry,
    **config: Any,
) -> AgentEngine:
    return AgentEngine(client, tools, config=EngineConfig(**config))


def _assert_tool_event_order(events: Sequence[AgentEvent]) -> None:
    started: dict[str, int] = {}
    for event in events:
        if event.type is E.TOOL_CALL_START:
            started[event.tool_call_id] = started.get(event.tool_call_id, 0) + 1
        elif event.type is E.TOOL_RESULT:
            assert started.get(event.tool_call_id) == 1, f"result for {event.tool_call_id} without one start"


class TestTextConventionMode:
    @pytest.mark.asyncio
    async def test_plain_answer(self) -> None:
        client = ScriptedModelClient([text_chunks("<think>plan</think>", "Hello!")], model=TEXT_MODEL)
        engine = _engine(client, ToolRegistry())

        events = await collect(engine.run_turn("Hi"))

        assert engine.tool_calling_mode is ToolCallingMode.TEXT_CONVENTION
        assert event_types(events) == [
            E.ITERATION_START,
            E.REASONING_START,
            E.REASONING_DELTA,
            E.REASONING_END,
            E.TEXT_START,
            E.TEXT_DELTA,
            E.TEXT_END,
            E.ITERATION_END,
            E.COMPLETE,
        ]
        assert events[0].iteration == 1
        assert events[0].max_iterations == 10
        assert events[-1].total_iterations == 1
        assert client.calls[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient(
            [text_chunks("Let me check. ", WEATHER_CALL), text_chunks("It is 21 degrees.")],
            model=TEXT_MODEL,
        )
        engine = _engine(client, weather_registry)

        events = await collect(engine.run_turn("Weather in Oslo?"))

        assert event_types(events) == [
            E.ITERATION_START,
            E.TEXT_START,
            E.TEXT_DELTA,
            E.TEXT_END,
            E.TOOL_CALL_START,
            E.TOOL_EXECUTING,
            E.TOOL_RESULT,
            E.ITERATION_END,
            E.ITERATION_START,
            E.TEXT_START,
            E.TEXT_DELTA,
            E.TEXT_END,
            E.ITERATION_END,
            E.COMPLETE,
        ]
        start = of_type(events, E.TOOL_CALL_START)[0]
        assert (start.tool_call_id, start.tool_name, dict(start.tool_args)) == ("call_1", "weather", {"city": "Oslo"})
        result = of_type(events, E.TOOL_RESULT)[0]
        assert result.result == {"city": "Oslo", "temp": 21}
        assert result.is_error is False
        assert "".join(event.content for event in of_type(events, E.TEXT_DELTA)) == "Let me check. It is 21 degrees."

        first_messages = client.calls[0]["messages"]
        assert first_messages[0].role == "system"
        assert "### weather" in first_messages[0].text
        assert "<tool_call>" in first_messages[0].text
        follow_up = client.calls[1]["messages"]
        assert follow_up[-2].role == "assistant"
        assert follow_up[-2].text == "Let me check. " + WEATHER_CALL
        assert follow_up[-1].role == "user"
        assert follow_up[-1].text.startswith('<tool_result name="weather" success="true">')

    @pytest.mark.asyncio
    async def test_bare_json_call_produces_no_text(self) -> None:
        seen: list[dict] = []
        registry = make_registry(search=lambda args: seen.append(dict(args)) or ["hit"])
        client = ScriptedModelClient(
            [text_chunks('{"name":', '"search","arguments":{"q":"x"}}'), text_chunks("Found it.")],
            model=TEXT_MODEL,
        )

        events = await collect(_engine(client, registry).run_turn("find x"))

        first_iteration = events[: event_types(events).index(E.ITERATION_END)]
        assert E.TEXT_DELTA not in event_types(first_iteration)
        assert seen == [{"q": "x"}]

    @pytest.mark.asyncio
    async def test_undecodable_span_is_suppressed(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient([text_chunks("Sure.", "<tool_call>{oops</tool_call>")], model=TEXT_MODEL)

        events = await collect(_engine(client, weather_registry).run_turn("hi"))

        assert "".join(event.content for event in of_type(events, E.TEXT_DELTA)) == "Sure."
        assert E.TOOL_EXECUTING not in event_types(events)
        assert events[-1].type is E.COMPLETE

    @pytest.mark.asyncio
    async def test_call_ids_are_turn_scoped(self, weather_registry: ToolRegistry) -> None:
        scripts = [text_chunks(WEATHER_CALL), text_chunks(WEATHER_CALL), text_chunks("done")]
        engine = _engine(ScriptedModelClient(scripts, model=TEXT_MODEL), weather_registry)

        first = await collect(engine.run_turn("a"))
        engine.client.calls.clear()
        second = await collect(engine.run_turn("b"))

        assert [event.tool_call_id for event in of_type(first, E.TOOL_RESULT)] == ["call_1", "call_2"]
        assert [event.tool_call_id for event in of_type(second, E.TOOL_RESULT)] == ["call_1", "call_2"]


class TestNativeMode:
    @pytest.mark.asyncio
    async def test_parallel_results_follow_call_order(self) -> None:
        async def slow(args):
            await asyncio.sleep(0.05)
            return "slow"

        async def fast(args):
            return "fast"

        async def medium(args):
            await asyncio.sleep(0.02)
            return "medium"

        registry = make_registry(slow=slow, fast=fast, medium=medium)
        client = ScriptedModelClient(
            [
                native_call_chunks(("c1", "slow", {}), ("c2", "fast", {}), ("c3", "medium", {})),
                text_chunks("done"),
            ],
            model=NATIVE_MODEL,
        )
        engine = _engine(client, registry, enable_reasoning_phase=False)

        events = await collect(engine.run_turn("go"))

        assert engine.tool_calling_mode is ToolCallingMode.NATIVE
        _assert_tool_event_order(events)
        assert [event.tool_call_id for event in of_type(events, E.TOOL_RESULT)] == ["c1", "c2", "c3"]
        assert [event.result for event in of_type(events, E.TOOL_RESULT)] == ["slow", "fast", "medium"]
        assert [tool["function"]["name"] for tool in client.calls[0]["tools"]] == ["slow", "fast", "medium"]

        follow_up = client.calls[1]["messages"]
        assert [call.call_id for call in follow_up[-2].tool_calls] == ["c1", "c2", "c3"]
        assert follow_up[-1].role == "tool"
        assert [params["tool_call_id"] for params in follow_up[-1].to_chat_params()] == ["c1", "c2", "c3"]

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self) -> None:
        def broken(args):
            raise RuntimeError("backend down")

        registry = make_registry(ok=lambda args: "fine", broken=broken)
        client = ScriptedModelClient(
            [
                native_call_chunks(("a", "ok", {}), ("b", "broken", {}), ("c", "ok", {})),
                text_chunks("partial answer"),
            ],
            model=NATIVE_MODEL,
        )

        events = await collect(_engine(client, registry, enable_reasoning_phase=False).run_turn("go"))

        results = of_type(events, E.TOOL_RESULT)
        assert len(results) == 3
        assert [event.is_error for event in results] == [False, True, False]
        assert results[1].result == "backend down"
        assert events[-1].type is E.COMPLETE

    @pytest.mark.asyncio
    async def test_streamed_call_deltas(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient(
            [
                [
                    ModelChunk(type="tool-call-delta", tool_call_id="w1", tool_name="weather", args_delta='{"city": '),
                    ModelChunk(type="tool-call-delta", tool_call_id="w1", tool_name="weather", args_delta='"Oslo"}'),
                    ModelChunk(type="tool-call", tool_call_id="w1", tool_name="weather", arguments={"city": "Oslo"}),
                    ModelChunk(type="tool-call", tool_call_id="w1", tool_name="weather", arguments={"city": "Oslo"}),
                    ModelChunk(type="finish"),
                ],
                text_chunks("21 degrees"),
            ],
            model=NATIVE_MODEL,
        )

        events = await collect(_engine(client, weather_registry, enable_reasoning_phase=False).run_turn("?"))

        assert len(of_type(events, E.TOOL_CALL_START)) == 1
        assert [event.args_delta for event in of_type(events, E.TOOL_CALL_DELTA)] == ['{"city": ', '"Oslo"}']
        assert len(of_type(events, E.TOOL_EXECUTING)) == 1
        _assert_tool_event_order(events)

    @pytest.mark.asyncio
    async def test_provider_reasoning_chunks_are_bracketed(self) -> None:
        client = ScriptedModelClient(
            [
                [
                    ModelChunk(type="reasoning-delta", text="think "),
                    ModelChunk(type="reasoning-delta", text="more"),
                    ModelChunk(type="text-delta", text="Answer"),
                    ModelChunk(type="finish"),
                ]
            ],
            model=NATIVE_MODEL,
        )

        events = await collect(_engine(client, ToolRegistry()).run_turn("?"))

        assert event_types(events) == [
            E.ITERATION_START,
            E.REASONING_START,
            E.REASONING_DELTA,
            E.REASONING_DELTA,
            E.REASONING_END,
            E.TEXT_START,
            E.TEXT_DELTA,
            E.TEXT_END,
            E.ITERATION_END,
            E.COMPLETE,
        ]

    @pytest.mark.asyncio
    async def test_no_hidden_reasoning_call_by_default(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient([text_chunks("Nothing to look up.")], model=NATIVE_MODEL)

        events = await collect(_engine(client, weather_registry).run_turn("Hello"))

        assert len(client.calls) == 1
        assert client.calls[0]["tools"] is not None
        assert E.REASONING_START not in event_types(events)

    @pytest.mark.asyncio
    async def test_reasoning_phase_runs_before_each_step(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient(
            [
                text_chunks("I should check the weather."),
                native_call_chunks(("w1", "weather", {"city": "Oslo"})),
                text_chunks("I have the data; answer now."),
                text_chunks("It is 21 degrees."),
            ],
            model=NATIVE_MODEL,
        )

        events = await collect(_engine(client, weather_registry, enable_reasoning_phase=True).run_turn("Weather?"))

        assert len(client.calls) == 4
        assert len(of_type(events, E.REASONING_START)) == 2
        assert events[1].type is E.REASONING_START
        assert client.calls[0]["tools"] is None
        assert client.calls[0]["options"] == {"max_tokens": 1000}
        assert client.calls[1]["tools"] is not None

        note = client.calls[1]["messages"][-1]
        assert note.role == "assistant"
        assert note.text == f"{INTERNAL_NOTE_PREFIX}\nI should check the weather."

        summarized = client.calls[2]["messages"]
        assert summarized[0].text.startswith("## Your role")
        assert any(message.text == "[tool weather returned data]" for message in summarized)
        assert all(message.role != "tool" for message in summarized)

        text = "".join(event.content for event in of_type(events, E.TEXT_DELTA))
        assert text == "It is 21 degrees."

    @pytest.mark.asyncio
    async def test_allowed_tool_names_filter_visible_tools(self) -> None:
        registry = make_registry(weather=lambda args: "sunny", secret=lambda args: "classified")
        client = ScriptedModelClient(
            [native_call_chunks(("s1", "secret", {})), text_chunks("sorry")],
            model=NATIVE_MODEL,
        )
        engine = _engine(client, registry, enable_reasoning_phase=False)

        events = await collect(engine.run_turn("tell me", allowed_tool_names=["weather"]))

        assert [tool["function"]["name"] for tool in client.calls[0]["tools"]] == ["weather"]
        [result] = of_type(events, E.TOOL_RESULT)
        assert result.is_error is True
        assert result.result == "Tool 'secret' is not available in this turn"


class TestTermination:
    @pytest.mark.asyncio
    async def test_short_circuit_on_matching_result(self) -> None:
        registry = make_registry(show_card=lambda args: {"type": "card", "id": 7})
        client = ScriptedModelClient(
            [text_chunks('<tool_call>{"name": "show_card", "arguments": {}}</tool_call>')],
            model=TEXT_MODEL,
        )
        engine = _engine(client, registry, immediate_result_matchers=[{"type": "card"}])

        turn = engine.start_turn("show me")
        events = await collect(turn.events())

        kinds = event_types(events)
        immediate = kinds.index(E.IMMEDIATE_RESULT)
        assert E.ITERATION_START not in kinds[immediate:]
        assert kinds[-2:] == [E.ITERATION_END, E.COMPLETE]
        assert of_type(events, E.IMMEDIATE_RESULT)[0].result == {"type": "card", "id": 7}
        assert len(client.calls) == 1
        assert turn.state is TurnState.SHORT_CIRCUITED
        assert turn.immediate_result == {"type": "card", "id": 7}

    @pytest.mark.asyncio
    async def test_error_results_do_not_short_circuit(self) -> None:
        def failing(args):
            raise RuntimeError('{"type": "card"}')

        registry = make_registry(show_card=failing)
        client = ScriptedModelClient(
            [text_chunks('<tool_call>{"name": "show_card", "arguments": {}}</tool_call>'), text_chunks("no card")],
            model=TEXT_MODEL,
        )
        engine = _engine(client, registry, immediate_result_matchers=[{"type": "card"}])

        events = await collect(engine.run_turn("show me"))

        assert E.IMMEDIATE_RESULT not in event_types(events)
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_max_iterations_exhausts(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient([text_chunks(WEATHER_CALL)], model=TEXT_MODEL)
        engine = _engine(client, weather_registry, max_iterations=3)

        turn = engine.start_turn("loop forever")
        events = await collect(turn.events())

        kinds = event_types(events)
        assert kinds.count(E.ITERATION_START) == 3
        assert kinds.count(E.ITERATION_END) == 3
        assert kinds[-1] is E.COMPLETE
        assert events[-1].total_iterations == 3
        assert len(client.calls) == 3
        assert turn.state is TurnState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_usage_accumulates_across_iterations(self, weather_registry: ToolRegistry) -> None:
        usage = Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
        client = ScriptedModelClient(
            [text_chunks(WEATHER_CALL, usage=usage), text_chunks("ok", usage=usage)],
            model=TEXT_MODEL,
        )

        events = await collect(_engine(client, weather_registry).run_turn("?"))

        assert events[-1].usage == Usage(prompt_tokens=20, completion_tokens=10, total_tokens=30)


class TestModelFailures:
    @pytest.mark.asyncio
    async def test_invocation_failure_ends_with_error(self) -> None:
        client = ScriptedModelClient([RuntimeError("connection reset")], model=TEXT_MODEL)
        engine = _engine(client, ToolRegistry())

        turn = engine.start_turn("hi")
        events = await collect(turn.events())

        assert event_types(events) == [E.ITERATION_START, E.ERROR]
        assert events[-1].error == "connection reset"
        assert turn.state is TurnState.ERROR

    @pytest.mark.asyncio
    async def test_failing_tool_listing_ends_with_error(self) -> None:
        class BrokenProvider:
            def list_tools(self) -> list[ToolDescriptor]:
                raise ConnectionError("tool server unreachable")

            async def invoke(self, name: str, arguments: dict) -> Any:
                raise AssertionError("never invoked")

        client = ScriptedModelClient([text_chunks("unused")], model=TEXT_MODEL)
        turn = AgentEngine(client, BrokenProvider()).start_turn("hi")

        events = await collect(turn.events())

        assert event_types(events) == [E.ERROR]
        assert events[0].error == "Failed to list tools: tool server unreachable"
        assert turn.state is TurnState.ERROR
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_error_chunk_after_partial_text(self) -> None:
        client = ScriptedModelClient(
            [[ModelChunk(type="text-delta", text="Partial "), ModelChunk(type="error", error="quota exceeded")]],
            model=TEXT_MODEL,
        )

        events = await collect(_engine(client, ToolRegistry()).run_turn("hi"))

        assert events[-1].type is E.ERROR
        assert events[-1].error == "quota exceeded"
        assert E.COMPLETE not in event_types(events)

    @pytest.mark.asyncio
    async def test_blocking_raises(self) -> None:
        client = ScriptedModelClient([RuntimeError("boom")], model=TEXT_MODEL)
        errors: list[AgentEvent] = []

        with pytest.raises(ModelInvocationError, match="boom"):
            await _engine(client, ToolRegistry()).run_turn_blocking(
                "hi", TurnCallbacks(on_error=errors.append)
            )

        assert [event.error for event in errors] == ["boom"]


class TestChecklistFlow:
    @pytest.mark.asyncio
    async def test_checklist_created_once_and_updated(self, weather_registry: ToolRegistry) -> None:
        plan = '<todo title="Plan">\n- get weather\n- answer\n</todo>\n'
        client = ScriptedModelClient(
            [
                text_chunks(plan, WEATHER_CALL),
                text_chunks(plan, '<todo_update id="1" status="completed" result="21C"/>', "It is 21."),
            ],
            model=TEXT_MODEL,
        )
        turn = AgentEngine(client, weather_registry).start_turn("Weather?")

        events = await collect(turn.events())

        kinds = event_types(events)
        assert kinds.count(E.CHECKLIST_START) == 1
        assert kinds.count(E.CHECKLIST_ITEM_ADD) == 2
        [update] = of_type(events, E.CHECKLIST_ITEM_UPDATE)
        assert (update.item.id, update.item.status, update.item.result) == ("1", "completed", "21C")
        assert kinds[-2:] == [E.CHECKLIST_END, E.COMPLETE]
        assert turn.checklist is not None
        assert [item.status for item in turn.checklist.items] == ["completed", "pending"]


class TestBlockingAndHistory:
    @pytest.mark.asyncio
    async def test_blocking_result_and_callbacks(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient([text_chunks(WEATHER_CALL), text_chunks("It is ", "21.")], model=TEXT_MODEL)
        deltas: list[str] = []
        tool_results: list[AgentEvent] = []

        def explode(event: AgentEvent) -> None:
            raise ValueError("callback bug")

        callbacks = TurnCallbacks(
            on_text_delta=lambda event: deltas.append(event.content),
            on_tool_result=tool_results.append,
            on_iteration_start=explode,
        )

        result = await AgentEngine(client, weather_registry).run_turn_blocking("Weather?", callbacks)

        assert result.content == "It is 21."
        assert deltas == ["It is ", "21."]
        assert len(tool_results) == 1
        assert result.iterations == 2
        assert result.state == "done"
        assert [(record.name, dict(record.arguments)) for record in result.tool_calls] == [
            ("weather", {"city": "Oslo"})
        ]
        assert [message.role for message in result.messages] == ["user", "assistant", "user", "assistant"]
        assert result.messages[0].text == "Weather?"
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_history_mappings_are_accepted(self) -> None:
        client = ScriptedModelClient([text_chunks("Sure")], model=TEXT_MODEL)

        await collect(
            _engine(client, ToolRegistry()).run_turn(
                "And now?",
                history=[{"role": "user", "content": "hi"}, Message.assistant("hello")],
            )
        )

        messages = client.calls[0]["messages"]
        assert [(message.role, message.text) for message in messages[1:]] == [
            ("user", "hi"),
            ("assistant", "hello"),
            ("user", "And now?"),
        ]

    @pytest.mark.asyncio
    async def test_history_content_parts_reach_the_model(self) -> None:
        client = ScriptedModelClient([text_chunks("Your name is Ada.")], model=TEXT_MODEL)
        history = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "My name is Ada"},
                    {"type": "image_url", "image_url": {"url": "https://example.com/ada.png"}},
                ],
            },
            {"role": "assistant", "content": [{"type": "text", "text": "Hi Ada"}]},
        ]

        await collect(_engine(client, ToolRegistry()).run_turn("What's my name?", history=history))

        user, assistant = client.calls[0]["messages"][1:3]
        assert user.to_chat_params() == [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "My name is Ada"},
                    {"type": "image_url", "image_url": {"url": "https://example.com/ada.png"}},
                ],
            }
        ]
        assert assistant.to_chat_params() == [{"role": "assistant", "content": "Hi Ada"}]

    @pytest.mark.asyncio
    async def test_history_tool_exchange_mappings(self) -> None:
        client = ScriptedModelClient([text_chunks("Still 21 degrees.")], model=NATIVE_MODEL)
        history = [
            {"role": "user", "content": "Weather in Oslo?"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "w1", "type": "function", "function": {"name": "weather", "arguments": '{"city": "Oslo"}'}}
                ],
            },
            {"role": "tool", "tool_call_id": "w1", "content": '{"temp": 21}'},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Checking again."},
                    {"type": "tool-call", "toolCallId": "w2", "toolName": "weather", "args": {"city": "Oslo"}},
                ],
            },
            {
                "role": "tool",
                "content": [{"type": "tool-result", "toolCallId": "w2", "toolName": "weather", "result": {"temp": 21}}],
            },
        ]

        await collect(_engine(client, ToolRegistry()).run_turn("And now?", history=history))

        sent = [params for message in client.calls[0]["messages"][1:6] for params in message.to_chat_params()]
        assert sent[1]["tool_calls"][0]["function"] == {"name": "weather", "arguments": '{"city": "Oslo"}'}
        assert sent[2] == {"role": "tool", "tool_call_id": "w1", "content": '{"temp": 21}'}
        assert sent[3]["content"] == "Checking again."
        assert sent[3]["tool_calls"][0]["id"] == "w2"
        assert sent[4] == {"role": "tool", "tool_call_id": "w2", "content": '{"temp": 21}'}

    def test_unrecognized_history_part_is_rejected(self) -> None:
        engine = _engine(ScriptedModelClient([text_chunks("x")], model=TEXT_MODEL), ToolRegistry())

        with pytest.raises(ValueError, match="Unsupported content part"):
            engine.start_turn("hi", history=[{"role": "user", "content": [{"type": "audio", "data": "..."}]}])

    @pytest.mark.asyncio
    async def test_async_tool_listing_is_supported(self) -> None:
        class AsyncProvider:
            async def list_tools(self) -> list[ToolDescriptor]:
                return [ToolDescriptor(name="ping")]

            async def invoke(self, name: str, arguments: dict) -> Any:
                return "pong"

        client = ScriptedModelClient(
            [native_call_chunks(("p1", "ping", {})), text_chunks("pong received")],
            model=NATIVE_MODEL,
        )
        engine = AgentEngine(client, AsyncProvider(), config=EngineConfig(enable_reasoning_phase=False))

        events = await collect(engine.run_turn("ping"))

        assert of_type(events, E.TOOL_RESULT)[0].result == "pong"

    @pytest.mark.asyncio
    async def test_events_can_only_be_consumed_once(self) -> None:
        client = ScriptedModelClient([text_chunks("hi")], model=TEXT_MODEL)
        turn = _engine(client, ToolRegistry()).start_turn("hi")
        await collect(turn.events())

        with pytest.raises(RuntimeError):
            await collect(turn.events())


class TestCancellation:
    @pytest.mark.asyncio
    async def test_stopping_early_closes_model_stream(self) -> None:
        client = ScriptedModelClient([text_chunks("one ", "two ", "three")], model=TEXT_MODEL)
        engine = _engine(client, ToolRegistry())

        async with aclosing(engine.run_turn("count")) as stream:
            async for event in stream:
                if event.type is E.TEXT_DELTA:
                    break

        assert len(client.calls) == 1
        assert client.closed == 1

    @pytest.mark.asyncio
    async def test_no_iteration_starts_after_consumer_stops(self, weather_registry: ToolRegistry) -> None:
        client = ScriptedModelClient([text_chunks(WEATHER_CALL)], model=TEXT_MODEL)
        engine = _engine(client, weather_registry, max_iterations=5)

        async with aclosing(engine.run_turn("go")) as stream:
            async for event in stream:
                if event.type is E.TOOL_RESULT:
                    break

        assert len(client.calls) == 1


def test_configure_re_resolves_mode() -> None:
    engine = AgentEngine(ScriptedModelClient([text_chunks("x")], model=NATIVE_MODEL), ToolRegistry())
    assert engine.tool_calling_mode is ToolCallingMode.NATIVE

    engine.configure(tool_calling_mode="text-convention")

    assert engine.tool_calling_mode is ToolCallingMode.TEXT_CONVENTION
    assert engine.config.tool_calling_mode is ToolCallingMode.TEXT_CONVENTION


def test_only_text_convention_announces_calls_after_the_stream() -> None:
    calls = [ToolCall(id="call_1", name="weather", arguments={"city": "Oslo"})]

    assert strategy_for(ToolCallingMode.NATIVE).announce_calls(calls) == []
    [event] = strategy_for(ToolCallingMode.TEXT_CONVENTION).announce_calls(calls)
    assert (event.type, event.tool_call_id, event.tool_name) == (E.TOOL_CALL_START, "call_1", "weather")
    assert dict(event.tool_args) == {"city": "Oslo"}
