"""Checklist tracking for a single turn.

Models may publish a task list with a ``<todo title="...">`` block and later
update individual items with ``<todo_update id=".." status=".."/>`` directives.
The tracker turns those into checklist events, keeping at most one checklist
per turn.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Sequence, get_args

from .types import AgentEvent, Checklist, ChecklistItem, ChecklistStatus, EventType

__all__ = [
    "CHECKLIST_STATUSES",
    "ChecklistTracker",
    "parse_checklist_block",
    "parse_checklist_update",
]

LOGGER = logging.getLogger(__name__)

CHECKLIST_STATUSES: frozenset[str] = frozenset(get_args(ChecklistStatus))

_BLOCK_RE = re.compile(r"<todo\b(?P<attrs>[^>]*)>(?P<body>.*?)(?:</todo>|\Z)", re.IGNORECASE | re.DOTALL)
_ATTR_RE = re.compile(r"""(?P<key>[\w-]+)\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)')""")
_ITEM_RE = re.compile(r"^\s*(?:[-*]|\d+\.)\s*(?P<content>.*?)\s*$")


def _attributes(text: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in _ATTR_RE.finditer(text):
        value = match.group("dq") if match.group("dq") is not None else match.group("sq")
        attrs[match.group("key").lower()] = value
    return attrs


def parse_checklist_block(text: str) -> tuple[str, list[str]] | None:
    """Parse a ``<todo>`` block into its title and item lines.

    Item lines start with ``-``, ``*`` or ``N.``; the bullet is stripped.
    Returns ``None`` when no item is found.
    """
    match = _BLOCK_RE.search(text)
    if match is None:
        return None
    title = _attributes(match.group("attrs")).get("title", "").strip()
    items: list[str] = []
    for line in match.group("body").splitlines():
        item = _ITEM_RE.match(line)
        if item is not None and item.group("content"):
            items.append(item.group("content"))
    if not items:
        return None
    return title, items


def parse_checklist_update(text: str) -> tuple[str, str, str | None] | None:
    """Parse a ``<todo_update/>`` directive into ``(id, status, result)``."""
    attrs = _attributes(text)
    item_id = attrs.get("id", "").strip()
    status = attrs.get("status", "").strip().lower()
    if not item_id or not status:
        return None
    return item_id, status, attrs.get("result")


class ChecklistTracker:
    """Holds the turn's checklist and converts directives into events."""

    def __init__(self, *, checklist_id: str | None = None) -> None:
        self._checklist_id = checklist_id or f"checklist-{uuid.uuid4().hex[:8]}"
        self._checklist: Checklist | None = None
        self._ended = False

    @property
    def checklist(self) -> Checklist | None:
        return self._checklist

    def on_block(self, title: str, items: Sequence[str]) -> list[AgentEvent]:
        """Create the checklist from a parsed block; later blocks are ignored."""
        if self._checklist is not None:
            LOGGER.debug("Checklist %s already exists; ignoring block %r", self._checklist.id, title)
            return []
        checklist = Checklist(id=self._checklist_id, title=title)
        self._checklist = checklist
        events = [
            AgentEvent(
                type=EventType.CHECKLIST_START,
                checklist_id=checklist.id,
                checklist_title=title,
            )
        ]
        for index, content in enumerate(items, start=1):
            item = ChecklistItem(id=str(index), content=content)
            checklist.items.append(item)
            events.append(
                AgentEvent(type=EventType.CHECKLIST_ITEM_ADD, checklist_id=checklist.id, item=item)
            )
        LOGGER.debug("Checklist %s created with %d item(s)", checklist.id, len(checklist.items))
        return events

    def on_update(self, item_id: str, status: str, result: str | None = None) -> list[AgentEvent]:
        """Apply an item update. Any status transition is accepted."""
        checklist = self._checklist
        if checklist is None:
            LOGGER.debug("Ignoring checklist update for %s before creation", item_id)
            return []
        if status not in CHECKLIST_STATUSES:
            LOGGER.debug("Ignoring checklist update with unknown status %r", status)
            return []
        item = checklist.find(item_id)
        if item is None:
            LOGGER.debug("Ignoring checklist update for unknown item %s", item_id)
            return []
        updated = ChecklistItem(
            id=item.id,
            content=item.content,
            status=status,  # type: ignore[arg-type]
            result=result if result is not None else item.result,
        )
        checklist.items[checklist.items.index(item)] = updated
        return [AgentEvent(type=EventType.CHECKLIST_ITEM_UPDATE, checklist_id=checklist.id, item=updated)]

    def finish(self) -> list[AgentEvent]:
        """Close the checklist at the end of the turn (once)."""
        if self._checklist is None or self._ended:
            return []
        self._ended = True
        return [AgentEvent(type=EventType.CHECKLIST_END, checklist_id=self._checklist.id)]
