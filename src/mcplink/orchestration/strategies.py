"""Tool-calling strategies plugged into the agent loop.

The engine runs one loop body for both modes; everything mode-specific
(parser markers, system prompt, tool declarations, how calls are recovered and
how an exchange is written back to the running message list) lives behind the
:class:`LoopStrategy` interface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from ..prompts import format_tool_results_message, summarize_tool_result, text_convention_system_prompt
from .mode_selector import ToolCallingMode
from .tag_parser import NATIVE_MARKERS, TEXT_CONVENTION_MARKERS, Marker
from .tool_call_parser import decode_tool_call, extract_tool_calls
from .types import AgentEvent, EventType, Message, ToolCall, ToolDescriptor, ToolResult

__all__ = [
    "StepOutcome",
    "LoopStrategy",
    "NativeStrategy",
    "TextConventionStrategy",
    "strategy_for",
]

LOGGER = logging.getLogger(__name__)

CallIdFactory = Callable[[], str]


@dataclass(slots=True)
class StepOutcome:
    """What one model invocation produced.

    Attributes:
        text: Visible assistant text (tags and tool-call spans removed).
        raw_text: Every text fragment exactly as streamed.
        native_calls: Structured calls delivered by the model collaborator.
        spans: Raw tool-call spans captured by the tag parser.
    """

    text: str = ""
    raw_text: str = ""
    native_calls: list[ToolCall] = field(default_factory=list)
    spans: list[str] = field(default_factory=list)


class LoopStrategy(Protocol):
    mode: ToolCallingMode

    @property
    def markers(self) -> tuple[Marker, ...]:
        ...

    def system_prompt(self, base_prompt: str, tools: Sequence[ToolDescriptor]) -> str:
        ...

    def tool_declarations(self, tools: Sequence[ToolDescriptor]) -> list[dict[str, Any]] | None:
        ...

    def collect_calls(self, outcome: StepOutcome, next_call_id: CallIdFactory) -> list[ToolCall]:
        ...

    def announce_calls(self, calls: Sequence[ToolCall]) -> list[AgentEvent]:
        ...

    def append_exchange(
        self,
        messages: list[Message],
        outcome: StepOutcome,
        calls: Sequence[ToolCall],
        results: Sequence[ToolResult],
    ) -> None:
        ...


def _summary(results: Sequence[ToolResult]) -> str:
    return "\n".join(summarize_tool_result(result.name, result.result) for result in results)


class NativeStrategy:
    """Structured function calling: declarations go out, calls come back as chunks."""

    mode = ToolCallingMode.NATIVE

    @property
    def markers(self) -> tuple[Marker, ...]:
        return NATIVE_MARKERS

    def system_prompt(self, base_prompt: str, tools: Sequence[ToolDescriptor]) -> str:
        return base_prompt

    def tool_declarations(self, tools: Sequence[ToolDescriptor]) -> list[dict[str, Any]] | None:
        if not tools:
            return None
        return [tool.to_openai_tool() for tool in tools]

    def collect_calls(self, outcome: StepOutcome, next_call_id: CallIdFactory) -> list[ToolCall]:
        return list(outcome.native_calls)

    def announce_calls(self, calls: Sequence[ToolCall]) -> list[AgentEvent]:
        """Nothing to add; ``tool_call_start`` was emitted while the calls streamed in."""
        return []

    def append_exchange(
        self,
        messages: list[Message],
        outcome: StepOutcome,
        calls: Sequence[ToolCall],
        results: Sequence[ToolResult],
    ) -> None:
        messages.append(Message.assistant(outcome.text, calls))
        messages.append(Message.tool(results, summary=_summary(results)))


class TextConventionStrategy:
    """Tool calls written into the text stream and recovered by the parser."""

    mode = ToolCallingMode.TEXT_CONVENTION

    @property
    def markers(self) -> tuple[Marker, ...]:
        return TEXT_CONVENTION_MARKERS

    def system_prompt(self, base_prompt: str, tools: Sequence[ToolDescriptor]) -> str:
        return text_convention_system_prompt(base_prompt, tools)

    def tool_declarations(self, tools: Sequence[ToolDescriptor]) -> list[dict[str, Any]] | None:
        return None

    def collect_calls(self, outcome: StepOutcome, next_call_id: CallIdFactory) -> list[ToolCall]:
        """Decode captured spans; without any span, scan the full response instead."""
        calls: list[ToolCall] = []
        if outcome.spans:
            for span in outcome.spans:
                call = decode_tool_call(span, call_id=next_call_id())
                if call is None:
                    LOGGER.debug("Discarding undecodable tool call span (%d chars)", len(span))
                    continue
                calls.append(call)
            return calls
        for recovered in extract_tool_calls(outcome.raw_text):
            calls.append(ToolCall(id=next_call_id(), name=recovered.name, arguments=recovered.arguments))
        return calls

    def announce_calls(self, calls: Sequence[ToolCall]) -> list[AgentEvent]:
        """Calls only exist once the response is complete, so they are announced afterwards."""
        return [
            AgentEvent(
                type=EventType.TOOL_CALL_START,
                tool_call_id=call.id,
                tool_name=call.name,
                tool_args=call.arguments,
            )
            for call in calls
        ]

    def append_exchange(
        self,
        messages: list[Message],
        outcome: StepOutcome,
        calls: Sequence[ToolCall],
        results: Sequence[ToolResult],
    ) -> None:
        messages.append(Message.assistant(outcome.raw_text))
        messages.append(Message.user(format_tool_results_message(results), summary=_summary(results)))


_STRATEGIES: dict[ToolCallingMode, LoopStrategy] = {
    ToolCallingMode.NATIVE: NativeStrategy(),
    ToolCallingMode.TEXT_CONVENTION: TextConventionStrategy(),
}


def strategy_for(mode: ToolCallingMode) -> LoopStrategy:
    """Return the strategy implementing a resolved (non-auto) mode."""
    try:
        return _STRATEGIES[mode]
    except KeyError:
        raise ValueError(f"No strategy for tool calling mode {mode!r}; resolve 'auto' first") from None
