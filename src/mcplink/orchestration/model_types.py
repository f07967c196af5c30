"""Model stream collaborator contract.

The engine never talks to a provider SDK directly; it consumes any object
implementing :class:`ModelClient`. :class:`~mcplink.client.AIClient` is the
OpenAI-compatible implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Mapping, Protocol, Sequence, runtime_checkable

from .types import Message, ToolCall, Usage

__all__ = [
    "ModelChunkType",
    "ModelChunk",
    "ModelReply",
    "ModelClient",
]

ModelChunkType = Literal["reasoning-delta", "text-delta", "tool-call", "tool-call-delta", "finish", "error"]


@dataclass(slots=True, frozen=True)
class ModelChunk:
    """One element of a model stream.

    ``reasoning-delta``/``text-delta`` carry ``text``; ``tool-call`` carries
    ``tool_call_id``, ``tool_name`` and parsed ``arguments``;
    ``tool-call-delta`` carries ``tool_call_id``, ``tool_name`` and
    ``args_delta``; ``finish`` may carry ``usage``; ``error`` carries ``error``.
    """

    type: ModelChunkType
    text: str = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments: Mapping[str, Any] = field(default_factory=dict)
    args_delta: str | None = None
    usage: Usage | None = None
    error: BaseException | str | None = None


@dataclass(slots=True, frozen=True)
class ModelReply:
    """Result of a non-streaming model call."""

    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage = field(default_factory=Usage)


@runtime_checkable
class ModelClient(Protocol):
    """Protocol for model stream collaborators."""

    def stream_respond(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **options: Any,
    ) -> AsyncIterator[ModelChunk]:
        ...

    async def respond(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **options: Any,
    ) -> ModelReply:
        ...
