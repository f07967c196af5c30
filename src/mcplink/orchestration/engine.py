"""Agent turn engine.

:class:`AgentEngine` drives one turn: it invokes the model collaborator
repeatedly, pumps every streamed fragment through the tag parser, executes the
tool calls each response asks for and reports progress as one ordered stream of
:class:`~mcplink.orchestration.types.AgentEvent` values.

Example:
    engine = AgentEngine(AIClient(ClientSettings.from_env()), registry)
    async for event in engine.run_turn("What's the weather in Oslo?"):
        if event.type is EventType.TEXT_DELTA:
            print(event.content, end="")
"""

from __future__ import annotations

import inspect
import itertools
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Collection, Mapping, Sequence

from ..prompts import INTERNAL_NOTE_PREFIX, reasoning_phase_system_prompt
from .checklist import ChecklistTracker
from .config import EngineConfig
from .errors import ModelInvocationError
from .event_log import TurnEventLogger
from .mode_selector import ModeSelector, ToolCallingMode
from .model_types import ModelChunk, ModelClient
from .strategies import LoopStrategy, StepOutcome, strategy_for
from .tag_parser import ParserEvent, ParserEventKind, TagStreamParser
from .tools.executor import ExecutorConfig, ToolOrchestrator
from .tools.types import ToolProvider
from .types import (
    AgentEvent,
    Checklist,
    EventType,
    Message,
    ToolCall,
    ToolCallRecord,
    ToolDescriptor,
    ToolResult,
    TurnResult,
    Usage,
    UserContent,
)

__all__ = [
    "TurnState",
    "TurnCallbacks",
    "AgentTurn",
    "AgentEngine",
]

LOGGER = logging.getLogger(__name__)

HistoryInput = Sequence[Message | Mapping[str, Any]]
EventCallback = Callable[[AgentEvent], Any]


class TurnState(str, Enum):
    ITERATING = "iterating"
    SHORT_CIRCUITED = "short_circuited"
    EXHAUSTED = "exhausted"
    DONE = "done"
    ERROR = "error"


_PARSER_EVENT_TYPES: Mapping[ParserEventKind, EventType] = {
    ParserEventKind.TEXT_START: EventType.TEXT_START,
    ParserEventKind.TEXT_DELTA: EventType.TEXT_DELTA,
    ParserEventKind.TEXT_END: EventType.TEXT_END,
    ParserEventKind.REASONING_START: EventType.REASONING_START,
    ParserEventKind.REASONING_DELTA: EventType.REASONING_DELTA,
    ParserEventKind.REASONING_END: EventType.REASONING_END,
}


# -----------------------------------------------------------------------------
# Callbacks
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TurnCallbacks:
    """Per-stage callbacks for :meth:`AgentEngine.run_turn_blocking`.

    Every callback receives the triggering :class:`AgentEvent` and is invoked
    synchronously, in event order. A callback that raises is logged and
    skipped.
    """

    on_iteration_start: EventCallback | None = None
    on_iteration_end: EventCallback | None = None
    on_reasoning: EventCallback | None = None
    on_text_delta: EventCallback | None = None
    on_tool_call_start: EventCallback | None = None
    on_tool_result: EventCallback | None = None
    on_immediate_result: EventCallback | None = None
    on_checklist_start: EventCallback | None = None
    on_checklist_item_add: EventCallback | None = None
    on_checklist_item_update: EventCallback | None = None
    on_checklist_end: EventCallback | None = None
    on_error: EventCallback | None = None

    def dispatch(self, event: AgentEvent) -> None:
        name = _CALLBACK_NAMES.get(event.type)
        if name is None:
            return
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            LOGGER.exception("Turn callback %s failed", name)


_CALLBACK_NAMES: Mapping[EventType, str] = {
    EventType.ITERATION_START: "on_iteration_start",
    EventType.ITERATION_END: "on_iteration_end",
    EventType.REASONING_DELTA: "on_reasoning",
    EventType.TEXT_DELTA: "on_text_delta",
    EventType.TOOL_CALL_START: "on_tool_call_start",
    EventType.TOOL_RESULT: "on_tool_result",
    EventType.IMMEDIATE_RESULT: "on_immediate_result",
    EventType.CHECKLIST_START: "on_checklist_start",
    EventType.CHECKLIST_ITEM_ADD: "on_checklist_item_add",
    EventType.CHECKLIST_ITEM_UPDATE: "on_checklist_item_update",
    EventType.CHECKLIST_END: "on_checklist_end",
    EventType.ERROR: "on_error",
}


# -----------------------------------------------------------------------------
# Turn
# -----------------------------------------------------------------------------


class AgentTurn:
    """State of a single turn; owns the running message list and turn counters.

    Instances come from :meth:`AgentEngine.start_turn`. The event stream of a
    turn can be consumed once; stopping iteration early cancels the turn after
    the in-flight step.
    """

    def __init__(
        self,
        engine: AgentEngine,
        user_message: UserContent,
        *,
        history: HistoryInput | None = None,
        allowed_tool_names: Collection[str] | None = None,
    ) -> None:
        self.turn_id = uuid.uuid4().hex[:12]
        self._engine = engine
        self._config = engine.config
        self._strategy: LoopStrategy = strategy_for(engine.tool_calling_mode)
        self._user_message = Message.user(user_message)
        self._history = [_coerce_message(item) for item in history or ()]
        self._allowed_tool_names = frozenset(allowed_tool_names) if allowed_tool_names is not None else None
        self._call_ids = itertools.count(1)
        self._tracker = ChecklistTracker()
        self._messages: list[Message] = []
        self._tools: list[ToolDescriptor] = []
        self._records: list[ToolCallRecord] = []
        self._usage = Usage()
        self._started = False
        self.state = TurnState.ITERATING
        self.iterations = 0
        self.final_text = ""
        self.immediate_result: Any = None
        self.error: str | None = None
        self.duration_ms = 0.0

    # -- public state ---------------------------------------------------------

    @property
    def mode(self) -> ToolCallingMode:
        return self._strategy.mode

    @property
    def messages(self) -> tuple[Message, ...]:
        """Running message list, system prompt included."""
        return tuple(self._messages)

    @property
    def conversation(self) -> tuple[Message, ...]:
        """Messages suitable as history for a later turn.

        Drops the system prompt and the internal reasoning-phase notes.
        """
        return tuple(
            message
            for message in self._messages
            if message.role != "system" and not message.metadata.get("internal")
        )

    @property
    def tools(self) -> tuple[ToolDescriptor, ...]:
        return tuple(self._tools)

    @property
    def tool_calls(self) -> tuple[ToolCallRecord, ...]:
        return tuple(self._records)

    @property
    def usage(self) -> Usage:
        return self._usage

    @property
    def checklist(self) -> Checklist | None:
        return self._tracker.checklist

    def to_result(self) -> TurnResult:
        return TurnResult(
            content=self.final_text,
            tool_calls=self.tool_calls,
            messages=self.conversation,
            usage=self._usage,
            iterations=self.iterations,
            duration_ms=self.duration_ms,
            state=self.state.value,
            immediate_result=self.immediate_result,
            checklist=self._tracker.checklist,
        )

    # -- event stream ---------------------------------------------------------

    async def events(self) -> AsyncIterator[AgentEvent]:
        """Run the turn, yielding events in emission order."""
        if self._started:
            raise RuntimeError("AgentTurn events can only be consumed once")
        self._started = True
        started_at = time.perf_counter()
        try:
            self._tools = await self._resolve_tools()
        except Exception as exc:
            self.state = TurnState.ERROR
            self.error = f"Failed to list tools: {exc}"
            self.duration_ms = (time.perf_counter() - started_at) * 1000
            LOGGER.error("Turn %s could not list tools: %s", self.turn_id, exc, exc_info=True)
            yield AgentEvent(type=EventType.ERROR, error=self.error)
            return
        event_log = self._engine.event_logger.start_run(
            turn_id=self.turn_id,
            user_message=self._user_message.text,
            mode=self.mode.value,
            model=self._engine.model_name,
            tools=[tool.name for tool in self._tools],
        )
        with event_log:
            try:
                async with aclosing(self._run(started_at)) as stream:
                    async for event in stream:
                        event_log.log_event(event)
                        yield event
            finally:
                self.duration_ms = (time.perf_counter() - started_at) * 1000
            if self.state is TurnState.ERROR:
                event_log.log_failure(message=self.error or "model invocation failed")
            else:
                event_log.log_completion(
                    state=self.state.value,
                    content=self.final_text,
                    tool_call_count=len(self._records),
                )

    async def _run(self, started_at: float) -> AsyncIterator[AgentEvent]:
        config = self._config
        system_prompt = self._strategy.system_prompt(config.system_prompt, self._tools)
        self._messages = [Message.system(system_prompt), *self._history, self._user_message]
        orchestrator = ToolOrchestrator(
            self._engine.tools,
            matchers=config.immediate_result_matchers,
            allowed_names=[tool.name for tool in self._tools],
            config=ExecutorConfig(parallel=config.parallel_tool_calls, timeout=config.tool_timeout),
        )
        LOGGER.info(
            "Turn %s started (mode=%s, tools=%d, max_iterations=%d)",
            self.turn_id,
            self.mode.value,
            len(self._tools),
            config.max_iterations,
        )

        try:
            while self.state is TurnState.ITERATING:
                self.iterations += 1
                iteration = self.iterations
                LOGGER.debug("Turn %s iteration %d/%d", self.turn_id, iteration, config.max_iterations)
                yield AgentEvent(
                    type=EventType.ITERATION_START,
                    iteration=iteration,
                    max_iterations=config.max_iterations,
                )

                if self._tools and config.enable_reasoning_phase:
                    async with aclosing(self._reasoning_phase(iteration)) as phase:
                        async for event in phase:
                            yield event

                outcome = StepOutcome()
                async with aclosing(self._model_step(iteration, outcome)) as step:
                    async for event in step:
                        yield event

                calls = self._strategy.collect_calls(outcome, self._next_call_id)
                if not calls:
                    self.final_text = outcome.text
                    self._messages.append(Message.assistant(outcome.text))
                    yield AgentEvent(type=EventType.ITERATION_END, iteration=iteration)
                    self.state = TurnState.DONE
                    break

                short_circuited = False
                results: list[ToolResult] = []
                for event in self._strategy.announce_calls(calls):
                    yield event
                for call in calls:
                    yield AgentEvent(
                        type=EventType.TOOL_EXECUTING,
                        tool_call_id=call.id,
                        tool_name=call.name,
                        tool_args=call.arguments,
                    )
                arguments = {call.id: call.arguments for call in calls}
                async with aclosing(orchestrator.stream(calls)) as executed:
                    async for result in executed:
                        results.append(result)
                        self._records.append(
                            ToolCallRecord(
                                call_id=result.call_id,
                                name=result.name,
                                arguments=arguments.get(result.call_id, {}),
                                result=result.result,
                                is_error=result.is_error,
                                duration_ms=result.duration_ms,
                            )
                        )
                        yield AgentEvent(
                            type=EventType.TOOL_RESULT,
                            tool_call_id=result.call_id,
                            tool_name=result.name,
                            result=result.result,
                            is_error=result.is_error,
                            duration_ms=result.duration_ms,
                        )
                        if not short_circuited and orchestrator.match_immediate(result) is not None:
                            short_circuited = True
                            self.immediate_result = result.result
                            LOGGER.info("Turn %s short-circuited by tool %s", self.turn_id, result.name)
                            yield AgentEvent(
                                type=EventType.IMMEDIATE_RESULT,
                                tool_call_id=result.call_id,
                                tool_name=result.name,
                                result=result.result,
                            )

                if outcome.text:
                    self.final_text = outcome.text
                self._strategy.append_exchange(self._messages, outcome, calls, results)
                yield AgentEvent(type=EventType.ITERATION_END, iteration=iteration)

                if short_circuited:
                    self.state = TurnState.SHORT_CIRCUITED
                elif iteration >= config.max_iterations:
                    LOGGER.info("Turn %s exhausted %d iteration(s)", self.turn_id, iteration)
                    self.state = TurnState.EXHAUSTED
        except ModelInvocationError as exc:
            self.state = TurnState.ERROR
            self.error = str(exc)
            LOGGER.error("Turn %s failed during iteration %s: %s", self.turn_id, exc.iteration, exc, exc_info=True)
            yield AgentEvent(type=EventType.ERROR, iteration=exc.iteration, error=self.error)
            return

        for event in self._tracker.finish():
            yield event
        total_ms = (time.perf_counter() - started_at) * 1000
        LOGGER.info(
            "Turn %s finished: state=%s iterations=%d tool_calls=%d",
            self.turn_id,
            self.state.value,
            self.iterations,
            len(self._records),
        )
        yield AgentEvent(
            type=EventType.COMPLETE,
            total_iterations=self.iterations,
            total_duration_ms=total_ms,
            usage=self._usage,
        )

    # -- steps ----------------------------------------------------------------

    async def _model_step(self, iteration: int, outcome: StepOutcome) -> AsyncIterator[AgentEvent]:
        """Stream one model response, routing fragments through the tag parser."""
        parser = TagStreamParser(self._strategy.markers)
        declarations = self._strategy.tool_declarations(self._tools)
        raw_parts: list[str] = []
        started_ids: set[str] = set()
        seen_calls: set[str] = set()

        async with aclosing(self._stream_model(iteration, self._messages, declarations)) as stream:
            async for chunk in stream:
                if chunk.type == "reasoning-delta":
                    for event in self._parser_events(parser.feed_reasoning(chunk.text), outcome):
                        yield event
                elif chunk.type == "text-delta":
                    raw_parts.append(chunk.text)
                    for event in self._parser_events(parser.feed(chunk.text), outcome):
                        yield event
                elif chunk.type == "tool-call-delta":
                    call_id = chunk.tool_call_id or ""
                    if call_id not in started_ids:
                        started_ids.add(call_id)
                        yield AgentEvent(type=EventType.TOOL_CALL_START, tool_call_id=call_id, tool_name=chunk.tool_name)
                    if chunk.args_delta:
                        yield AgentEvent(
                            type=EventType.TOOL_CALL_DELTA,
                            tool_call_id=call_id,
                            tool_name=chunk.tool_name,
                            args_delta=chunk.args_delta,
                        )
                elif chunk.type == "tool-call":
                    call_id = chunk.tool_call_id or self._next_call_id()
                    if call_id in seen_calls:
                        LOGGER.debug("Ignoring duplicate tool call %s", call_id)
                        continue
                    seen_calls.add(call_id)
                    call = ToolCall(id=call_id, name=chunk.tool_name or "", arguments=dict(chunk.arguments))
                    outcome.native_calls.append(call)
                    if call_id not in started_ids:
                        started_ids.add(call_id)
                        yield AgentEvent(
                            type=EventType.TOOL_CALL_START,
                            tool_call_id=call_id,
                            tool_name=call.name,
                            tool_args=call.arguments,
                        )

        for event in self._parser_events(parser.flush(), outcome):
            yield event
        outcome.text = parser.content
        outcome.raw_text = "".join(raw_parts)

    async def _reasoning_phase(self, iteration: int) -> AsyncIterator[AgentEvent]:
        """Hidden pre-step deciding what to do next over a summarized view."""
        config = self._config
        prompt = reasoning_phase_system_prompt(config.system_prompt, self._tools, config.reasoning_phase_prompt)
        messages = [Message.system(prompt), *_summarized(self._messages[1:])]
        parts: list[str] = []
        opened = False
        chunks = self._stream_model(iteration, messages, None, max_tokens=config.reasoning_max_tokens)
        async with aclosing(chunks) as stream:
            async for chunk in stream:
                if chunk.type not in ("reasoning-delta", "text-delta") or not chunk.text:
                    continue
                if not opened:
                    opened = True
                    yield AgentEvent(type=EventType.REASONING_START, iteration=iteration)
                parts.append(chunk.text)
                yield AgentEvent(type=EventType.REASONING_DELTA, content=chunk.text)
        if opened:
            yield AgentEvent(type=EventType.REASONING_END, iteration=iteration)
        note = "".join(parts).strip()
        if note:
            self._messages.append(Message.assistant(f"{INTERNAL_NOTE_PREFIX}\n{note}", internal=True))
        LOGGER.debug("Reasoning phase for iteration %d produced %d chars", iteration, len(note))

    async def _stream_model(
        self,
        iteration: int,
        messages: Sequence[Message],
        declarations: Sequence[Mapping[str, Any]] | None,
        **options: Any,
    ) -> AsyncIterator[ModelChunk]:
        """Pull chunks from the model collaborator, converting failures.

        ``finish`` chunks are consumed here (usage is accumulated) and are not
        passed on; an ``error`` chunk raises :class:`ModelInvocationError`.
        """
        try:
            stream = self._engine.client.stream_respond(list(messages), declarations, **options)
            iterator = aiter(stream)
        except Exception as exc:
            raise ModelInvocationError(_describe(exc), iteration=iteration, cause=exc) from exc
        try:
            while True:
                try:
                    chunk = await anext(iterator)
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    raise ModelInvocationError(_describe(exc), iteration=iteration, cause=exc) from exc
                if chunk.type == "error":
                    cause = chunk.error if isinstance(chunk.error, BaseException) else None
                    raise ModelInvocationError(
                        _describe(chunk.error) if chunk.error is not None else "model stream reported an error",
                        iteration=iteration,
                        cause=cause,
                    )
                if chunk.type == "finish":
                    if chunk.usage is not None:
                        self._usage = self._usage + chunk.usage
                    continue
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _parser_events(self, parsed: Sequence[ParserEvent], outcome: StepOutcome) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for item in parsed:
            kind = item.kind
            if kind in _PARSER_EVENT_TYPES:
                content = item.text if kind in (ParserEventKind.TEXT_DELTA, ParserEventKind.REASONING_DELTA) else None
                events.append(AgentEvent(type=_PARSER_EVENT_TYPES[kind], content=content))
            elif kind is ParserEventKind.TOOL_CALL_SPAN:
                outcome.spans.append(item.text)
            elif kind is ParserEventKind.CHECKLIST_BLOCK:
                events.extend(self._tracker.on_block(item.title or "", item.items))
            elif kind is ParserEventKind.CHECKLIST_UPDATE and item.item_id and item.status:
                events.extend(self._tracker.on_update(item.item_id, item.status, item.result))
        return events

    async def _resolve_tools(self) -> list[ToolDescriptor]:
        tools = self._engine.tools.list_tools()
        if inspect.isawaitable(tools):
            tools = await tools
        tools = list(tools)
        if self._allowed_tool_names is not None:
            tools = [tool for tool in tools if tool.name in self._allowed_tool_names]
        return tools

    def _next_call_id(self) -> str:
        return f"call_{next(self._call_ids)}"


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------


class AgentEngine:
    """Runs agent turns against a model collaborator and a tool collaborator.

    The tool-calling mode is resolved once, when the engine is created or its
    configuration changes, and shared by every turn.
    """

    def __init__(
        self,
        client: ModelClient,
        tools: ToolProvider,
        *,
        config: EngineConfig | None = None,
        mode_selector: ModeSelector | None = None,
    ) -> None:
        self._client = client
        self._tools = tools
        self._custom_selector = mode_selector
        self._config = config or EngineConfig()
        self._resolve_mode()

    @property
    def client(self) -> ModelClient:
        return self._client

    @property
    def tools(self) -> ToolProvider:
        return self._tools

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def tool_calling_mode(self) -> ToolCallingMode:
        """Resolved mode: ``native`` or ``text-convention``."""
        return self._mode

    @property
    def model_name(self) -> str | None:
        return self._model_name

    @property
    def event_logger(self) -> TurnEventLogger:
        return self._event_logger

    def configure(self, config: EngineConfig | None = None, **changes: Any) -> EngineConfig:
        """Replace the configuration (or update fields of it) and re-resolve the mode."""
        updated = config or self._config
        if changes:
            updated = updated.with_updates(**changes)
        self._config = updated
        self._resolve_mode()
        return updated

    def start_turn(
        self,
        user_message: UserContent,
        *,
        history: HistoryInput | None = None,
        allowed_tool_names: Collection[str] | None = None,
    ) -> AgentTurn:
        """Create a turn without starting it; iterate ``turn.events()`` to run it."""
        return AgentTurn(self, user_message, history=history, allowed_tool_names=allowed_tool_names)

    def run_turn(
        self,
        user_message: UserContent,
        *,
        history: HistoryInput | None = None,
        allowed_tool_names: Collection[str] | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run one turn and stream its events.

        Args:
            user_message: Text or multimodal content parts.
            history: Prior conversation as messages or ``{role, content}`` mappings.
            allowed_tool_names: Restricts the tools visible to the model for this turn.

        Returns:
            An async iterator of events ending with ``complete`` or ``error``. A tool collaborator
            whose ``list_tools`` raises ends the turn with a lone ``error`` event.
        """
        turn = self.start_turn(user_message, history=history, allowed_tool_names=allowed_tool_names)
        return turn.events()

    async def run_turn_blocking(
        self,
        user_message: UserContent,
        callbacks: TurnCallbacks | None = None,
        *,
        history: HistoryInput | None = None,
        allowed_tool_names: Collection[str] | None = None,
    ) -> TurnResult:
        """Drive a turn to completion and aggregate its outcome.

        Raises:
            ModelInvocationError: When the turn ends with an ``error`` event. This includes a
                failing ``list_tools`` call.
        """
        turn = self.start_turn(user_message, history=history, allowed_tool_names=allowed_tool_names)
        async for event in turn.events():
            if callbacks is not None:
                callbacks.dispatch(event)
        if turn.state is TurnState.ERROR:
            raise ModelInvocationError(turn.error or "model invocation failed", iteration=turn.iterations)
        return turn.to_result()

    def _resolve_mode(self) -> None:
        config = self._config
        selector = self._custom_selector or ModeSelector(
            text_convention_patterns=config.text_convention_patterns,
            native_patterns=config.native_patterns,
        )
        self._model_name = config.model_name or _client_model(self._client)
        self._mode = selector.select(self._model_name, config.tool_calling_mode)
        self._event_logger = TurnEventLogger(
            enabled=config.event_log_dir is not None,
            base_dir=config.event_log_dir,
        )
        LOGGER.debug("Engine resolved tool calling mode %s for model %r", self._mode.value, self._model_name)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _coerce_message(item: Message | Mapping[str, Any]) -> Message:
    if isinstance(item, Message):
        return item
    if isinstance(item, Mapping):
        return Message.from_mapping(item)
    raise TypeError(f"History entries must be Message instances or mappings, got {type(item).__name__}")


def _client_model(client: Any) -> str | None:
    model = getattr(client, "model", None)
    if isinstance(model, str) and model:
        return model
    settings = getattr(client, "settings", None)
    model = getattr(settings, "model", None)
    return model if isinstance(model, str) and model else None


def _summarized(messages: Sequence[Message]) -> list[Message]:
    """Replace tool payloads with their record-count summaries."""
    view: list[Message] = []
    for message in messages:
        summary = message.metadata.get("summary")
        if summary is not None:
            view.append(Message.user(str(summary)))
        elif message.role == "assistant" and message.tool_calls:
            names = ", ".join(call.name for call in message.tool_calls)
            text = message.text
            view.append(Message.assistant(f"{text}\n[called tools: {names}]" if text else f"[called tools: {names}]"))
        else:
            view.append(message)
    return view


def _describe(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)
