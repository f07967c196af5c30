"""Core type definitions for the agent turn engine.

This module defines the immutable dataclasses that flow through a turn: the
conversation messages, tool descriptors/calls/results, the checklist model and
the ordered events handed to consumers.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Literal, Mapping, Sequence, Union

__all__ = [
    # Messages
    "Message",
    "MessageRole",
    "TextPart",
    "ImagePart",
    "FilePart",
    "ToolCallPart",
    "ToolResultPart",
    "ContentPart",
    "UserContent",
    # Tools
    "ToolDescriptor",
    "ToolCall",
    "ToolResult",
    # Checklist
    "ChecklistStatus",
    "ChecklistItem",
    "Checklist",
    # Events and results
    "EventType",
    "AgentEvent",
    "Usage",
    "ToolCallRecord",
    "TurnResult",
]


def _json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


# -----------------------------------------------------------------------------
# Content Parts
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(slots=True, frozen=True)
class ImagePart:
    """Image attachment given as a URL or a ``data:`` URI."""

    image: str
    mime_type: str | None = None
    type: Literal["image"] = "image"


@dataclass(slots=True, frozen=True)
class FilePart:
    """File attachment given as base64 data."""

    data: str
    mime_type: str
    filename: str | None = None
    type: Literal["file"] = "file"


@dataclass(slots=True, frozen=True)
class ToolCallPart:
    call_id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    type: Literal["tool-call"] = "tool-call"


@dataclass(slots=True, frozen=True)
class ToolResultPart:
    call_id: str
    name: str
    result: Any = None
    is_error: bool = False
    type: Literal["tool-result"] = "tool-result"


ContentPart = Union[TextPart, ImagePart, FilePart, ToolCallPart, ToolResultPart]
UserContent = Union[str, Sequence[Union[TextPart, ImagePart, FilePart]]]

_DATA_URI = re.compile(r"^data:(?P<mime>[^;,]+);base64,(?P<data>.*)$", re.DOTALL)


def _arguments(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
        raise ValueError(f"Tool call arguments must be a JSON object, got {raw!r}")
    return {}


def _content_part(raw: Any) -> ContentPart:
    """Convert one serialized content part into its dataclass."""
    if isinstance(raw, (TextPart, ImagePart, FilePart, ToolCallPart, ToolResultPart)):
        return raw
    if isinstance(raw, str):
        return TextPart(raw)
    if not isinstance(raw, Mapping):
        raise ValueError(f"Unsupported content part: {raw!r}")

    kind = raw.get("type")
    if kind == "text":
        return TextPart(str(raw.get("text", "")))
    if kind == "image" and raw.get("image"):
        return ImagePart(str(raw["image"]), mime_type=raw.get("mimeType") or raw.get("mime_type"))
    if kind == "image_url":
        image_url = raw.get("image_url")
        url = image_url.get("url") if isinstance(image_url, Mapping) else image_url
        if url:
            return ImagePart(str(url))
    if kind == "file":
        nested = raw.get("file")
        if isinstance(nested, Mapping):
            match = _DATA_URI.match(str(nested.get("file_data", "")))
            if match:
                return FilePart(match["data"], mime_type=match["mime"], filename=nested.get("filename"))
        elif raw.get("data") and (raw.get("mimeType") or raw.get("mime_type")):
            return FilePart(
                str(raw["data"]),
                mime_type=str(raw.get("mimeType") or raw.get("mime_type")),
                filename=raw.get("filename"),
            )
    if kind in ("tool-call", "tool_call"):
        return ToolCallPart(
            call_id=str(raw.get("toolCallId") or raw.get("call_id") or raw.get("id") or ""),
            name=str(raw.get("toolName") or raw.get("name") or ""),
            arguments=_arguments(raw.get("args", raw.get("arguments"))),
        )
    if kind in ("tool-result", "tool_result"):
        return ToolResultPart(
            call_id=str(raw.get("toolCallId") or raw.get("call_id") or ""),
            name=str(raw.get("toolName") or raw.get("name") or ""),
            result=raw.get("result", raw.get("output")),
            is_error=bool(raw.get("isError", raw.get("is_error", False))),
        )
    raise ValueError(f"Unsupported content part: {dict(raw)!r}")


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message appended to a turn's running conversation.

    Attributes:
        role: The role of the message sender.
        content: Plain text, or an ordered tuple of typed content parts.
        metadata: Additional metadata (not sent to the model).
    """

    role: MessageRole
    content: str | tuple[ContentPart, ...]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated text of the message (text parts only)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    @property
    def tool_calls(self) -> tuple[ToolCallPart, ...]:
        if isinstance(self.content, str):
            return ()
        return tuple(part for part in self.content if isinstance(part, ToolCallPart))

    def to_chat_params(self) -> list[dict[str, Any]]:
        """Convert to OpenAI chat message params.

        A tool message holding several results expands to one ``tool`` message
        per result, which is why a list is returned.
        """
        if isinstance(self.content, str):
            return [{"role": self.role, "content": self.content}]

        if self.role == "tool":
            return [
                {
                    "role": "tool",
                    "tool_call_id": part.call_id,
                    "content": _json_text(part.result),
                }
                for part in self.content
                if isinstance(part, ToolResultPart)
            ]

        if self.role == "assistant":
            payload: dict[str, Any] = {"role": "assistant", "content": self.text or None}
            calls = self.tool_calls
            if calls:
                payload["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(dict(call.arguments), ensure_ascii=False),
                        },
                    }
                    for call in calls
                ]
            return [payload]

        parts: list[dict[str, Any]] = []
        for part in self.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.image}})
            elif isinstance(part, FilePart):
                file_payload: dict[str, Any] = {
                    "file_data": f"data:{part.mime_type};base64,{part.data}",
                }
                if part.filename:
                    file_payload["filename"] = part.filename
                parts.append({"type": "file", "file": file_payload})
        return [{"role": self.role, "content": parts}]

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Message:
        """Create a Message from a ``{role, content}`` mapping.

        ``content`` may be a string or a list of typed parts, either in this
        package's shapes (``text``, ``image``, ``file``, ``tool-call``,
        ``tool-result``) or the OpenAI wire shapes (``image_url``, ``file``).
        OpenAI-style ``tool_calls`` on assistant messages and ``tool_call_id``
        on tool messages are folded into parts as well.

        Raises:
            ValueError: Unknown role or unrecognized content part.
        """
        role = payload.get("role", "user")
        if role not in ("system", "user", "assistant", "tool"):
            raise ValueError(f"Unsupported message role: {role!r}")
        content = payload.get("content") or ""
        if isinstance(content, str):
            parts: list[ContentPart] = [TextPart(content)] if content else []
        else:
            parts = [_content_part(raw) for raw in content]

        if role == "assistant":
            for raw_call in payload.get("tool_calls") or ():
                function = raw_call.get("function") or {}
                parts.append(
                    ToolCallPart(
                        call_id=str(raw_call.get("id", "")),
                        name=str(function.get("name", "")),
                        arguments=_arguments(function.get("arguments")),
                    )
                )
        elif role == "tool" and payload.get("tool_call_id"):
            text = "".join(part.text for part in parts if isinstance(part, TextPart))
            parts = [ToolResultPart(call_id=str(payload["tool_call_id"]), name=str(payload.get("name", "")), result=text)]

        if isinstance(content, str) and all(isinstance(part, TextPart) for part in parts):
            return cls(role=role, content=content)
        return cls(role=role, content=tuple(parts))

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        """Create a system message."""
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: UserContent, **metadata: Any) -> Message:
        """Create a user message (plain text or multimodal parts)."""
        if not isinstance(content, str):
            content = tuple(content)
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[ToolCall] | None = None,
        **metadata: Any,
    ) -> Message:
        """Create an assistant message, optionally carrying tool calls."""
        if not tool_calls:
            return cls(role="assistant", content=content, metadata=metadata)
        parts: list[ContentPart] = []
        if content:
            parts.append(TextPart(content))
        parts.extend(ToolCallPart(call.id, call.name, call.arguments) for call in tool_calls)
        return cls(role="assistant", content=tuple(parts), metadata=metadata)

    @classmethod
    def tool(cls, results: Sequence[ToolResult], **metadata: Any) -> Message:
        """Create a tool message holding one result part per call."""
        parts = tuple(
            ToolResultPart(result.call_id, result.name, result.result, result.is_error)
            for result in results
        )
        return cls(role="tool", content=parts, metadata=metadata)


# -----------------------------------------------------------------------------
# Tool Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """Description of a tool visible to the model.

    Attributes:
        name: Unique identifier for the tool within a turn.
        description: Human-readable description of what the tool does.
        input_schema: JSON Schema for the tool's arguments.
    """

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.input_schema) if self.input_schema else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


@dataclass(slots=True, frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolResult:
    call_id: str
    name: str
    result: Any = None
    is_error: bool = False
    duration_ms: float = 0.0


# -----------------------------------------------------------------------------
# Checklist
# -----------------------------------------------------------------------------

ChecklistStatus = Literal["pending", "in_progress", "completed", "failed"]


@dataclass(slots=True, frozen=True)
class ChecklistItem:
    id: str
    content: str
    status: ChecklistStatus = "pending"
    result: str | None = None


@dataclass(slots=True)
class Checklist:
    """The single in-turn task list; items are appended or updated, never removed."""

    id: str
    title: str
    items: list[ChecklistItem] = field(default_factory=list)

    def find(self, item_id: str) -> ChecklistItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


class EventType(str, Enum):
    """Discriminator for :class:`AgentEvent`."""

    ITERATION_START = "iteration_start"
    ITERATION_END = "iteration_end"
    REASONING_START = "reasoning_start"
    REASONING_DELTA = "reasoning_delta"
    REASONING_END = "reasoning_end"
    TEXT_START = "text_start"
    TEXT_DELTA = "text_delta"
    TEXT_END = "text_end"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_DELTA = "tool_call_delta"
    TOOL_EXECUTING = "tool_executing"
    TOOL_RESULT = "tool_result"
    IMMEDIATE_RESULT = "immediate_result"
    CHECKLIST_START = "checklist_start"
    CHECKLIST_ITEM_ADD = "checklist_item_add"
    CHECKLIST_ITEM_UPDATE = "checklist_item_update"
    CHECKLIST_END = "checklist_end"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(slots=True, frozen=True)
class AgentEvent:
    """One entry of the ordered event stream produced by a turn.

    Only the fields relevant to ``type`` are populated; the rest stay ``None``.
    """

    type: EventType
    timestamp: float = field(default_factory=time.time)
    content: str | None = None
    iteration: int | None = None
    max_iterations: int | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_args: Mapping[str, Any] | None = None
    args_delta: str | None = None
    result: Any = None
    is_error: bool | None = None
    duration_ms: float | None = None
    checklist_id: str | None = None
    checklist_title: str | None = None
    item: ChecklistItem | None = None
    total_iterations: int | None = None
    total_duration_ms: float | None = None
    usage: Usage | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict, omitting unset fields."""
        payload: dict[str, Any] = {}
        for spec in fields(self):
            value = getattr(self, spec.name)
            if value is None:
                continue
            if spec.name == "type":
                value = value.value
            elif spec.name == "tool_args":
                value = dict(value)
            elif isinstance(value, (ChecklistItem, Usage)):
                value = {f.name: getattr(value, f.name) for f in fields(value)}
            payload[spec.name] = value
        return payload


# -----------------------------------------------------------------------------
# Blocking Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Record of a single tool call for the blocking result."""

    call_id: str
    name: str
    arguments: Mapping[str, Any]
    result: Any
    is_error: bool
    duration_ms: float


@dataclass(slots=True, frozen=True)
class TurnResult:
    """Aggregated outcome of :meth:`AgentEngine.run_turn_blocking`."""

    content: str
    tool_calls: tuple[ToolCallRecord, ...]
    messages: tuple[Message, ...]
    usage: Usage
    iterations: int
    duration_ms: float
    state: str
    immediate_result: Any = None
    checklist: Checklist | None = None
