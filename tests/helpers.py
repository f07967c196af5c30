"""Shared test helpers and stub classes.

Import from here instead of duplicating stubs in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Mapping, Sequence

from mcplink.orchestration.model_types import ModelChunk, ModelReply
from mcplink.orchestration.types import AgentEvent, EventType, ToolDescriptor, Usage
from mcplink.orchestration.tools import ToolRegistry

Script = Sequence[ModelChunk] | BaseException


class ScriptedModelClient:
    """Model collaborator replaying one scripted chunk list per invocation.

    When more invocations happen than scripts exist, the last script repeats.
    A script may also be an exception, raised when the stream is first pulled.

    Example:
        client = ScriptedModelClient([text_script("Hello")], model="test-model")
    """

    def __init__(self, scripts: Sequence[Script], *, model: str = "test-model") -> None:
        if not scripts:
            raise ValueError("at least one script is required")
        self.scripts = list(scripts)
        self.model = model
        self.calls: list[dict[str, Any]] = []
        self.closed = 0

    def stream_respond(
        self,
        messages: Sequence[Any],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **options: Any,
    ) -> AsyncIterator[ModelChunk]:
        index = min(len(self.calls), len(self.scripts) - 1)
        self.calls.append({"messages": list(messages), "tools": tools, "options": dict(options)})
        return self._replay(self.scripts[index])

    async def _replay(self, script: Script) -> AsyncIterator[ModelChunk]:
        try:
            if isinstance(script, BaseException):
                raise script
            for chunk in script:
                await asyncio.sleep(0)
                yield chunk
        finally:
            self.closed += 1

    async def respond(
        self,
        messages: Sequence[Any],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **options: Any,
    ) -> ModelReply:
        text = "".join(chunk.text for chunk in self.scripts[0] if chunk.type == "text-delta")  # type: ignore[union-attr]
        return ModelReply(text=text)


def text_chunks(*fragments: str, usage: Usage | None = None) -> list[ModelChunk]:
    chunks = [ModelChunk(type="text-delta", text=fragment) for fragment in fragments]
    chunks.append(ModelChunk(type="finish", usage=usage))
    return chunks


def native_call_chunks(
    *calls: tuple[str, str, Mapping[str, Any]],
    text: str = "",
    usage: Usage | None = None,
) -> list[ModelChunk]:
    """Chunks for a native response: optional text, then complete tool calls."""
    chunks: list[ModelChunk] = []
    if text:
        chunks.append(ModelChunk(type="text-delta", text=text))
    for call_id, name, arguments in calls:
        chunks.append(ModelChunk(type="tool-call", tool_call_id=call_id, tool_name=name, arguments=dict(arguments)))
    chunks.append(ModelChunk(type="finish", usage=usage))
    return chunks


def make_registry(**handlers: Any) -> ToolRegistry:
    """Registry with one tool per keyword argument (name -> handler)."""
    registry = ToolRegistry()
    for name, handler in handlers.items():
        registry.register_function(
            ToolDescriptor(
                name=name,
                description=f"The {name} tool",
                input_schema={"type": "object", "properties": {"q": {"type": "string"}}},
            ),
            handler,
        )
    return registry


def event_types(events: Sequence[AgentEvent]) -> list[EventType]:
    return [event.type for event in events]


def of_type(events: Sequence[AgentEvent], kind: EventType) -> list[AgentEvent]:
    return [event for event in events if event.type is kind]


async def collect(stream: AsyncIterator[AgentEvent]) -> list[AgentEvent]:
    return [event async for event in stream]
