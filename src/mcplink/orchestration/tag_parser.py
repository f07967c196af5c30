"""Incremental parser for tags embedded in streamed model output.

Models running without structured function calling express reasoning, tool
calls and task checklists as text conventions (``<think>``, ``<tool_call>``,
fenced or bare JSON, ``<todo>``). This module turns a stream of arbitrarily
split text fragments into typed :class:`ParserEvent` values.

The parser is a single tagged-variant state (:class:`ParseState`) driven by a
priority-ordered marker table: when several markers occur in the buffer the
earliest position wins, ties go to the marker listed first, and any trailing
fragment that could still grow into a marker is withheld until the next
fragment (or the final :func:`flush`) disambiguates it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from .checklist import parse_checklist_block, parse_checklist_update
from .tool_call_parser import find_json_object_end

__all__ = [
    "ParseMode",
    "ParseState",
    "ParserEventKind",
    "ParserEvent",
    "FeedResult",
    "MarkerKind",
    "Marker",
    "REASONING_MARKERS",
    "CHECKLIST_MARKERS",
    "TOOL_CALL_MARKERS",
    "NATIVE_MARKERS",
    "TEXT_CONVENTION_MARKERS",
    "feed",
    "feed_reasoning",
    "flush",
    "TagStreamParser",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# State and Events
# -----------------------------------------------------------------------------


class ParseMode(str, Enum):
    NORMAL = "normal"
    IN_REASONING = "in_reasoning"
    IN_TOOL_CALL = "in_tool_call"
    IN_CHECKLIST = "in_checklist"


@dataclass(slots=True, frozen=True)
class ParseState:
    """Snapshot of the parser between two fragments.

    Attributes:
        mode: Which region of the stream is currently open.
        buffer: Text received but not yet emitted or consumed.
        container: How the open tool-call span terminates (``tag``, ``fence``
            or ``json``); only set while ``mode`` is ``IN_TOOL_CALL``.
        line_start: Whether the buffer begins at the start of a line.
        in_code_fence: Inside an ordinary (non tool-call) fenced code block.
        text_open: A ``text_start`` has been emitted without its ``text_end``.
        reasoning_open: A ``reasoning_start`` has been emitted without its end.
        native_reasoning: The open reasoning block came from provider reasoning
            chunks rather than a ``<think>`` tag.
    """

    mode: ParseMode = ParseMode.NORMAL
    buffer: str = ""
    container: str | None = None
    line_start: bool = True
    in_code_fence: bool = False
    text_open: bool = False
    reasoning_open: bool = False
    native_reasoning: bool = False


class ParserEventKind(str, Enum):
    TEXT_START = "text_start"
    TEXT_DELTA = "text_delta"
    TEXT_END = "text_end"
    REASONING_START = "reasoning_start"
    REASONING_DELTA = "reasoning_delta"
    REASONING_END = "reasoning_end"
    TOOL_CALL_SPAN = "tool_call_span"
    CHECKLIST_BLOCK = "checklist_block"
    CHECKLIST_UPDATE = "checklist_update"


@dataclass(slots=True, frozen=True)
class ParserEvent:
    """Sub-event produced by the parser.

    ``TOOL_CALL_SPAN`` carries the raw span in ``text`` and its ``container``;
    ``complete`` is False when the stream ended before the terminator.
    ``CHECKLIST_BLOCK`` carries ``title`` and ``items``; ``CHECKLIST_UPDATE``
    carries ``item_id``, ``status`` and ``result``.
    """

    kind: ParserEventKind
    text: str = ""
    container: str | None = None
    complete: bool = True
    title: str | None = None
    items: tuple[str, ...] = ()
    item_id: str | None = None
    status: str | None = None
    result: str | None = None


@dataclass(slots=True, frozen=True)
class FeedResult:
    events: tuple[ParserEvent, ...]
    content: str
    state: ParseState


# -----------------------------------------------------------------------------
# Marker Table
# -----------------------------------------------------------------------------


class MarkerKind(str, Enum):
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    CHECKLIST = "checklist"
    CHECKLIST_UPDATE = "checklist_update"
    FENCE = "fence"
    BARE_JSON = "bare_json"


@dataclass(slots=True, frozen=True)
class Marker:
    """One opener in the marker table.

    Attributes:
        kind: What the marker opens.
        pattern: Regex locating a complete opener. A named group ``open``
            marks where the region starts when it differs from the match start.
        prefixes: Literal openers; a buffer ending in a proper prefix of one of
            them is withheld.
        line_anchored: The pattern may use ``^`` to mean "start of a line",
            which only holds at buffer start when the state says so.
    """

    kind: MarkerKind
    pattern: re.Pattern[str]
    prefixes: tuple[str, ...] = ()
    line_anchored: bool = False

    def find(self, text: str, line_start: bool) -> re.Match[str] | None:
        for match in self.pattern.finditer(text):
            if self.line_anchored and match.start() == 0 and not line_start and not text.startswith("\n"):
                continue
            return match
        return None


REASONING_MARKERS: tuple[Marker, ...] = (
    Marker(MarkerKind.REASONING, re.compile(r"<think>", re.IGNORECASE), ("<think>",)),
)

CHECKLIST_MARKERS: tuple[Marker, ...] = (
    Marker(MarkerKind.CHECKLIST, re.compile(r"<todo(?=[\s>])", re.IGNORECASE), ("<todo ", "<todo>")),
    Marker(MarkerKind.CHECKLIST_UPDATE, re.compile(r"<todo_update\b", re.IGNORECASE), ("<todo_update",)),
)

TOOL_CALL_MARKERS: tuple[Marker, ...] = (
    Marker(MarkerKind.TOOL_CALL, re.compile(r"<tool_call>", re.IGNORECASE), ("<tool_call>",)),
    Marker(MarkerKind.FENCE, re.compile(r"```"), ("```",)),
    Marker(
        MarkerKind.BARE_JSON,
        re.compile(r"(?:^|\n)[ \t]*(?P<open>\{)\s*\"name\""),
        line_anchored=True,
    ),
)

NATIVE_MARKERS: tuple[Marker, ...] = REASONING_MARKERS + CHECKLIST_MARKERS
TEXT_CONVENTION_MARKERS: tuple[Marker, ...] = REASONING_MARKERS + TOOL_CALL_MARKERS + CHECKLIST_MARKERS

_REASONING_CLOSE = "</think>"
_TOOL_CALL_CLOSE = "</tool_call>"
_CHECKLIST_CLOSE = "</todo>"
_FENCE = "```"

# Models occasionally invent their own tool results; those spans never reach the output.
_FORGED_RESULT_RE = re.compile(r"<tool_result\b[^>]*>.*?</tool_result>", re.IGNORECASE | re.DOTALL)
_FORGED_OPEN_RE = re.compile(r"<tool_result\b", re.IGNORECASE)
_FORGED_PREFIX = "<tool_result"

_PARTIAL_BARE_JSON_RE = re.compile(r"(?:^|\n)[ \t]*(?:\{\s*(?:\"(?:n(?:a(?:m(?:e)?)?)?)?)?)?\Z")
_FENCE_JSON_RE = re.compile(r"json[ \t]*\r?\n", re.IGNORECASE)
_FENCE_BRACE_RE = re.compile(r"\s*\{")
_FENCE_JSON_PARTIAL_RE = re.compile(r"json[ \t]*\r?", re.IGNORECASE)
_UPDATE_TAG_RE = re.compile(r"""<todo_update\b(?:[^>"']|"[^"]*"|'[^']*')*>""", re.IGNORECASE)


def _suffix_overlap(text: str, literals: Sequence[str]) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of a literal."""
    longest = 0
    for literal in literals:
        for size in range(min(len(literal) - 1, len(text)), longest, -1):
            if text.endswith(literal[:size]):
                longest = size
                break
    return longest


def _fence_undecided(after: str) -> bool:
    if not after.strip():
        return True
    if "json".startswith(after.lower()):
        return True
    return _FENCE_JSON_PARTIAL_RE.fullmatch(after) is not None


# -----------------------------------------------------------------------------
# Scanner
# -----------------------------------------------------------------------------


class _Scanner:
    """Mutable working copy of a :class:`ParseState` for one feed call."""

    def __init__(self, state: ParseState, markers: Sequence[Marker]) -> None:
        self.mode = state.mode
        self.buffer = state.buffer
        self.container = state.container
        self.line_start = state.line_start
        self.in_code_fence = state.in_code_fence
        self.text_open = state.text_open
        self.reasoning_open = state.reasoning_open
        self.native_reasoning = state.native_reasoning
        self.markers = tuple(markers)
        self.prefixes = tuple(prefix for marker in self.markers for prefix in marker.prefixes) + (
            _FORGED_PREFIX,
        )
        self.watch_bare_json = any(marker.kind is MarkerKind.BARE_JSON for marker in self.markers)
        self.events: list[ParserEvent] = []
        self.content: list[str] = []

    def result(self) -> FeedResult:
        state = ParseState(
            mode=self.mode,
            buffer=self.buffer,
            container=self.container,
            line_start=self.line_start,
            in_code_fence=self.in_code_fence,
            text_open=self.text_open,
            reasoning_open=self.reasoning_open,
            native_reasoning=self.native_reasoning,
        )
        return FeedResult(tuple(self.events), "".join(self.content), state)

    # -- entry points ---------------------------------------------------------

    def push(self, delta: str) -> None:
        if not delta:
            return
        if self.native_reasoning:
            self._end_reasoning()
        self.buffer += delta
        self._drain()

    def push_reasoning(self, delta: str) -> None:
        if not delta:
            return
        if not self.reasoning_open:
            self.native_reasoning = True
            self._start_reasoning()
        self._emit(ParserEventKind.REASONING_DELTA, text=delta)

    def finish(self) -> FeedResult:
        self._drain()
        if self.mode is ParseMode.IN_REASONING:
            self._reasoning_delta(self.buffer)
        elif self.mode is ParseMode.IN_TOOL_CALL:
            if self.buffer.strip():
                self._emit(ParserEventKind.TOOL_CALL_SPAN, text=self.buffer, container=self.container, complete=False)
        elif self.mode is ParseMode.IN_CHECKLIST:
            self._checklist_block(self.buffer)
        else:
            forged = _FORGED_OPEN_RE.search(self.buffer)
            self._emit_text(self.buffer[: forged.start()] if forged else self.buffer)
        self.buffer = ""
        if self.reasoning_open:
            self._end_reasoning()
        if self.text_open:
            self._emit(ParserEventKind.TEXT_END)
        events, content = tuple(self.events), "".join(self.content)
        return FeedResult(events, content, ParseState())

    # -- dispatch -------------------------------------------------------------

    def _drain(self) -> None:
        while self._step():
            pass

    def _step(self) -> bool:
        if self.mode is ParseMode.IN_REASONING:
            return self._step_reasoning()
        if self.mode is ParseMode.IN_TOOL_CALL:
            return self._step_tool_call()
        if self.mode is ParseMode.IN_CHECKLIST:
            return self._step_checklist()
        return self._step_normal()

    def _step_normal(self) -> bool:
        if not self.buffer:
            return False
        stripped = _FORGED_RESULT_RE.sub("", self.buffer)
        if stripped != self.buffer:
            LOGGER.debug("Dropped a tool result span the model wrote into its own output")
            self.buffer = stripped
            return True
        if self.in_code_fence:
            return self._step_code_fence()

        forged = _FORGED_OPEN_RE.search(self.buffer)
        limit = forged.start() if forged else len(self.buffer)
        hit = self._earliest_marker(self.buffer[:limit])
        if hit is None:
            if forged is None:
                limit -= self._holdback(self.buffer)
            return self._emit_prefix(limit)
        marker, match = hit
        return self._open(marker, match)

    def _earliest_marker(self, text: str) -> tuple[Marker, re.Match[str]] | None:
        best: tuple[Marker, re.Match[str]] | None = None
        best_pos = len(text) + 1
        for marker in self.markers:
            match = marker.find(text, self.line_start)
            if match is None:
                continue
            pos = _marker_position(match)
            if pos < best_pos:
                best, best_pos = (marker, match), pos
        return best

    def _holdback(self, text: str) -> int:
        hold = _suffix_overlap(text.lower(), self.prefixes)
        if self.watch_bare_json:
            partial = _PARTIAL_BARE_JSON_RE.search(text)
            if partial is not None and (partial.start() > 0 or self.line_start or text.startswith("\n")):
                hold = max(hold, len(text) - partial.start())
        return hold

    def _open(self, marker: Marker, match: re.Match[str]) -> bool:
        pos = _marker_position(match)
        if marker.kind is MarkerKind.FENCE:
            return self._open_fence(pos, match.end())
        if marker.kind is MarkerKind.CHECKLIST_UPDATE:
            return self._take_update(pos)

        self._emit_text(self.buffer[:pos])
        if marker.kind is MarkerKind.REASONING:
            self.buffer = self.buffer[match.end():]
            self.mode = ParseMode.IN_REASONING
            self._start_reasoning()
        elif marker.kind is MarkerKind.TOOL_CALL:
            self.buffer = self.buffer[match.end():]
            self.mode = ParseMode.IN_TOOL_CALL
            self.container = "tag"
        elif marker.kind is MarkerKind.BARE_JSON:
            self.buffer = self.buffer[pos:]
            self.mode = ParseMode.IN_TOOL_CALL
            self.container = "json"
        else:
            self.buffer = self.buffer[pos:]
            self.mode = ParseMode.IN_CHECKLIST
        return True

    def _open_fence(self, pos: int, end: int) -> bool:
        after = self.buffer[end:]
        json_lang = _FENCE_JSON_RE.match(after)
        if json_lang is not None or _FENCE_BRACE_RE.match(after):
            self._emit_text(self.buffer[:pos])
            self.buffer = after[json_lang.end():] if json_lang is not None else after
            self.mode = ParseMode.IN_TOOL_CALL
            self.container = "fence"
            return True
        if _fence_undecided(after):
            return self._emit_prefix(pos)
        self._emit_text(self.buffer[:end])
        self.buffer = after
        self.in_code_fence = True
        return True

    def _take_update(self, pos: int) -> bool:
        tag = _UPDATE_TAG_RE.match(self.buffer, pos)
        if tag is None:
            return self._emit_prefix(pos)
        self._emit_text(self.buffer[:pos])
        self.buffer = self.buffer[tag.end():]
        self.line_start = True
        update = parse_checklist_update(tag.group(0))
        if update is None:
            LOGGER.debug("Ignoring checklist update without id/status: %s", tag.group(0))
            return True
        item_id, status, result = update
        self._emit(ParserEventKind.CHECKLIST_UPDATE, item_id=item_id, status=status, result=result)
        return True

    def _step_code_fence(self) -> bool:
        idx = self.buffer.find(_FENCE)
        if idx >= 0:
            end = idx + len(_FENCE)
            self._emit_text(self.buffer[:end])
            self.buffer = self.buffer[end:]
            self.in_code_fence = False
            return True
        return self._emit_prefix(len(self.buffer) - _suffix_overlap(self.buffer, (_FENCE, _FORGED_PREFIX)))

    def _step_reasoning(self) -> bool:
        lowered = self.buffer.lower()
        idx = lowered.find(_REASONING_CLOSE)
        if idx >= 0:
            self._reasoning_delta(self.buffer[:idx])
            self.buffer = self.buffer[idx + len(_REASONING_CLOSE):]
            self._end_reasoning()
            self.mode = ParseMode.NORMAL
            self.line_start = True
            return True
        safe = len(self.buffer) - _suffix_overlap(lowered, (_REASONING_CLOSE,))
        if safe <= 0:
            return False
        self._reasoning_delta(self.buffer[:safe])
        self.buffer = self.buffer[safe:]
        return True

    def _step_tool_call(self) -> bool:
        if self.container == "json":
            end = find_json_object_end(self.buffer)
            if end is None:
                return False
            span_end, resume = end, end
        else:
            terminator = _TOOL_CALL_CLOSE if self.container == "tag" else _FENCE
            idx = self.buffer.lower().find(terminator)
            if idx < 0:
                return False
            span_end, resume = idx, idx + len(terminator)
        self._emit(ParserEventKind.TOOL_CALL_SPAN, text=self.buffer[:span_end], container=self.container)
        self.buffer = self.buffer[resume:]
        self.mode = ParseMode.NORMAL
        self.container = None
        self.line_start = True
        return True

    def _step_checklist(self) -> bool:
        idx = self.buffer.lower().find(_CHECKLIST_CLOSE)
        if idx < 0:
            return False
        end = idx + len(_CHECKLIST_CLOSE)
        self._checklist_block(self.buffer[:end])
        self.buffer = self.buffer[end:]
        self.mode = ParseMode.NORMAL
        self.line_start = True
        return True

    # -- emission helpers -----------------------------------------------------

    def _emit(self, kind: ParserEventKind, **fields: object) -> None:
        self.events.append(ParserEvent(kind, **fields))  # type: ignore[arg-type]

    def _emit_prefix(self, size: int) -> bool:
        if size <= 0:
            return False
        self._emit_text(self.buffer[:size])
        self.buffer = self.buffer[size:]
        return True

    def _emit_text(self, segment: str) -> None:
        if not segment:
            return
        if not self.text_open:
            leading_newline = "\n" in segment[: len(segment) - len(segment.lstrip())]
            segment = segment.lstrip()
            if not segment:
                self.line_start = self.line_start or leading_newline
                return
            self.text_open = True
            self._emit(ParserEventKind.TEXT_START)
        self._emit(ParserEventKind.TEXT_DELTA, text=segment)
        self.content.append(segment)
        self.line_start = segment.endswith("\n")

    def _start_reasoning(self) -> None:
        self.reasoning_open = True
        self._emit(ParserEventKind.REASONING_START)

    def _reasoning_delta(self, text: str) -> None:
        if text:
            self._emit(ParserEventKind.REASONING_DELTA, text=text)

    def _end_reasoning(self) -> None:
        if self.reasoning_open:
            self._emit(ParserEventKind.REASONING_END)
        self.reasoning_open = False
        self.native_reasoning = False

    def _checklist_block(self, block: str) -> None:
        parsed = parse_checklist_block(block)
        if parsed is None:
            LOGGER.debug("Ignoring checklist block without items")
            return
        title, items = parsed
        self._emit(ParserEventKind.CHECKLIST_BLOCK, title=title, items=tuple(items))


def _marker_position(match: re.Match[str]) -> int:
    if "open" in match.re.groupindex:
        return match.start("open")
    return match.start()


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def feed(delta: str, state: ParseState, *, markers: Sequence[Marker] = TEXT_CONVENTION_MARKERS) -> FeedResult:
    """Consume one text fragment.

    Args:
        delta: The next fragment of model text (any size, may split tags).
        state: The state returned by the previous call (``ParseState()`` first).
        markers: Marker table to recognize.

    Returns:
        The emitted sub-events, the visible text they add and the next state.
    """
    scanner = _Scanner(state, markers)
    scanner.push(delta)
    return scanner.result()


def feed_reasoning(delta: str, state: ParseState, *, markers: Sequence[Marker] = TEXT_CONVENTION_MARKERS) -> FeedResult:
    """Consume a provider reasoning fragment, bracketing it as a reasoning block."""
    scanner = _Scanner(state, markers)
    scanner.push_reasoning(delta)
    return scanner.result()


def flush(state: ParseState, *, markers: Sequence[Marker] = TEXT_CONVENTION_MARKERS) -> FeedResult:
    """Flush everything still buffered at the end of a stream.

    Open reasoning is closed, withheld text is emitted, an unterminated tool
    call span is reported with ``complete=False`` and the returned state is
    fresh.
    """
    return _Scanner(state, markers).finish()


class TagStreamParser:
    """Stateful convenience wrapper around :func:`feed` and :func:`flush`.

    Example:
        parser = TagStreamParser()
        for fragment in ("<thi", "nk>plan</think>", "Answer"):
            events.extend(parser.feed(fragment))
        events.extend(parser.flush())
    """

    def __init__(self, markers: Sequence[Marker] = TEXT_CONVENTION_MARKERS) -> None:
        self._markers = tuple(markers)
        self._state = ParseState()
        self._content: list[str] = []

    @property
    def state(self) -> ParseState:
        return self._state

    @property
    def content(self) -> str:
        """Visible text emitted so far."""
        return "".join(self._content)

    def feed(self, delta: str) -> list[ParserEvent]:
        return self._apply(feed(delta, self._state, markers=self._markers))

    def feed_reasoning(self, delta: str) -> list[ParserEvent]:
        return self._apply(feed_reasoning(delta, self._state, markers=self._markers))

    def flush(self) -> list[ParserEvent]:
        return self._apply(flush(self._state, markers=self._markers))

    def _apply(self, outcome: FeedResult) -> list[ParserEvent]:
        self._state = outcome.state
        if outcome.content:
            self._content.append(outcome.content)
        return list(outcome.events)
