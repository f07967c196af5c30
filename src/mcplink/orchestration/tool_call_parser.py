"""Tool call decoding for text-convention model output.

Models without structured function calling write their calls as JSON inside
``<tool_call>`` tags, inside a fenced ``json`` block, or as a bare JSON object
on its own line. This module recovers ``{name, arguments}`` from such spans.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping

from .types import ToolCall

__all__ = [
    "TOOL_CALL_TRANSLATION",
    "decode_tool_call",
    "extract_tool_calls",
    "find_json_object_end",
    "normalize_tool_call_text",
    "parsed_tool_call_id",
    "try_parse_json_block",
]

LOGGER = logging.getLogger(__name__)

# Normalizes typographic quotes, full-width punctuation and exotic spaces that
# some models emit inside otherwise valid JSON.
TOOL_CALL_TRANSLATION = str.maketrans(
    {
        ord("“"): '"',
        ord("”"): '"',
        ord("„"): '"',
        ord("‟"): '"',
        ord("″"): '"',
        ord("＂"): '"',
        ord("‘"): "'",
        ord("’"): "'",
        ord("‚"): "'",
        ord("′"): "'",
        ord("＇"): "'",
        ord("｛"): "{",
        ord("｝"): "}",
        ord("［"): "[",
        ord("］"): "]",
        ord("："): ":",
        ord("，"): ",",
        ord("＜"): "<",
        ord("＞"): ">",
        ord("\u00a0"): " ",
        ord("\u2002"): " ",
        ord("\u2003"): " ",
        ord("\u2009"): " ",
        ord("\u200b"): " ",
        ord("\u202f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

_TAG_WRAPPER_RE = re.compile(r"^\s*<tool_call>\s*(?P<body>.*?)\s*(?:</tool_call>\s*)?$", re.IGNORECASE | re.DOTALL)
_FENCE_WRAPPER_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(?P<body>.*?)\s*(?:```\s*)?$", re.DOTALL)

_TAG_SPAN_RE = re.compile(r"<tool_call>(?P<body>.*?)</tool_call>", re.IGNORECASE | re.DOTALL)
_FENCE_SPAN_RE = re.compile(r"```(?:json)?\s*(?P<body>\{.*?)```", re.IGNORECASE | re.DOTALL)
_BARE_SPAN_RE = re.compile(r"(?:^|\n)[ \t]*(?P<open>\{)\s*\"name\"")


def normalize_tool_call_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_CALL_TRANSLATION)


def parsed_tool_call_id(index: int, prefix: str = "call") -> str:
    """Deterministic id for the *index*-th call recovered from text."""
    return f"{prefix}_{index}"


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass
    return None


def find_json_object_end(text: str, start: int = 0) -> int | None:
    """Index just past the balanced JSON object opening at ``text[start]``.

    Braces inside string literals are ignored. Returns ``None`` when the object
    is not closed within *text*.
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return None


def _unwrap(raw: str) -> str:
    text = raw.strip()
    tag = _TAG_WRAPPER_RE.match(text)
    if tag is not None:
        text = tag.group("body")
    if text.startswith("```"):
        fence = _FENCE_WRAPPER_RE.match(text)
        if fence is not None:
            text = fence.group("body")
    return text.strip()


def _parse_object(text: str) -> dict[str, Any] | None:
    parsed = try_parse_json_block(text)
    if parsed is not None:
        return parsed
    # Tolerate prose or a stray closing fence after the object.
    opening = text.find("{")
    if opening < 0:
        return None
    end = find_json_object_end(text, opening)
    if end is None:
        return None
    return try_parse_json_block(text[opening:end])


def _coerce_call(payload: Mapping[str, Any]) -> tuple[str, dict[str, Any]] | None:
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    arguments = payload.get("arguments", payload.get("parameters"))
    if arguments is None:
        arguments = {}
    elif isinstance(arguments, str):
        arguments = try_parse_json_block(arguments) if arguments.strip() else {}
    if not isinstance(arguments, Mapping):
        return None
    return name.strip(), dict(arguments)


def decode_tool_call(raw_span: str, *, call_id: str) -> ToolCall | None:
    """Recover a tool call from a captured span.

    Strategies, in order: parse the (unwrapped) span as a JSON object with
    ``name``/``arguments``; normalize typographic quotes and full-width
    punctuation then retry; finally swap single quotes for double quotes.

    Args:
        raw_span: Span text, with or without its tag/fence wrapper.
        call_id: Id assigned to the resulting call.

    Returns:
        The decoded call, or ``None`` when no strategy yields a valid call.
    """
    if not raw_span or not raw_span.strip():
        return None
    text = _unwrap(raw_span)
    normalized = normalize_tool_call_text(text)
    for candidate in (text, normalized, normalized.replace("'", '"')):
        payload = _parse_object(candidate)
        if payload is None:
            continue
        coerced = _coerce_call(payload)
        if coerced is None:
            continue
        name, arguments = coerced
        return ToolCall(id=call_id, name=name, arguments=arguments)
    LOGGER.debug("Tool call span could not be decoded: %.200s", raw_span)
    return None


def extract_tool_calls(text: str, *, start_index: int = 1, prefix: str = "call") -> list[ToolCall]:
    """Find and decode every tool call written anywhere in a full response.

    Spans are located in document order (``<tool_call>`` tags, fenced JSON,
    bare line-anchored JSON); overlapping spans keep the earliest.
    """
    if not text:
        return []
    spans: list[tuple[int, int, str]] = []
    for match in _TAG_SPAN_RE.finditer(text):
        spans.append((match.start(), match.end(), match.group("body")))
    for match in _FENCE_SPAN_RE.finditer(text):
        spans.append((match.start(), match.end(), match.group("body")))
    for match in _BARE_SPAN_RE.finditer(text):
        opening = match.start("open")
        end = find_json_object_end(text, opening)
        if end is not None:
            spans.append((opening, end, text[opening:end]))
    spans.sort(key=lambda span: span[0])

    calls: list[ToolCall] = []
    consumed = -1
    for begin, end, body in spans:
        if begin < consumed:
            continue
        call = decode_tool_call(body, call_id=parsed_tool_call_id(start_index + len(calls), prefix))
        if call is not None:
            calls.append(call)
            consumed = end
    return calls
