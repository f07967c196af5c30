"""Per-turn JSONL event logs for debugging agent runs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..utils import logging as logging_utils
from .types import AgentEvent

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".mcplink" / "logs" / "events"


@dataclass(slots=True)
class _NullTurnEventLogRun:
    """No-op run used when event logging is disabled."""

    path: Path | None = None

    def __enter__(self) -> "_NullTurnEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        return False

    def log_event(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class TurnEventLogRun:
    """JSONL writer for one turn.

    The file holds a ``start`` entry with the turn context, one ``event`` entry
    per emitted :class:`AgentEvent` and exactly one terminal entry
    (``completion`` or ``failure``), after which the file is closed and further
    calls are ignored. Leaving the ``with`` block without a terminal entry
    records a failure.
    """

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._closed = False
        self._write("start", context)

    def __enter__(self) -> "TurnEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        reason = (str(exc) or type(exc).__name__) if exc is not None else "turn ended without completion"
        self.log_failure(message=reason)
        return False

    def log_event(self, event: AgentEvent) -> None:
        if not self._closed:
            self._write("event", event.to_dict())

    def log_completion(self, *, state: str, content: str, tool_call_count: int) -> None:
        self._finish(
            "completion",
            {"status": "success", "state": state, "content": content, "tool_call_count": tool_call_count},
        )

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            payload["details"] = dict(details)
        self._finish("failure", payload)

    def _finish(self, kind: str, payload: Mapping[str, Any]) -> None:
        if self._closed:
            return
        self._write(kind, payload)
        self._closed = True
        try:
            self._file.close()
        except OSError:  # pragma: no cover
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def _write(self, kind: str, payload: Mapping[str, Any]) -> None:
        record: dict[str, Any] = {"entry": kind, "logged_at": time.time()}
        record.update((str(key), _jsonable(value)) for key, value in payload.items())
        self._file.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._file.flush()


def _jsonable(value: Any, depth: int = 0) -> Any:
    """Coerce *value* into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if depth > 6:
        return repr(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item, depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item, depth + 1) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return repr(value)


class TurnEventLogger:
    """Factory opening one event log file per turn when enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir).expanduser() if base_dir else _default_event_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_run(
        self,
        *,
        turn_id: str,
        user_message: str,
        mode: str,
        model: str | None,
        tools: Sequence[str],
    ) -> TurnEventLogRun | _NullTurnEventLogRun:
        if not self.enabled:
            return _NullTurnEventLogRun()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(turn_id)
            context = {
                "turn_id": turn_id,
                "user_message": user_message,
                "mode": mode,
                "model": model,
                "tools": list(tools),
            }
            log_run = TurnEventLogRun(path, context=context)
            LOGGER.debug("Turn event log started: %s", path)
            return log_run
        except OSError:
            LOGGER.debug("Failed to start turn event log in %s", self._base_dir, exc_info=True)
            return _NullTurnEventLogRun()

    def _allocate_path(self, turn_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_turn_id = "".join(ch for ch in turn_id if ch.isalnum())[:12] or "turn"
        return self._base_dir / f"turn-{timestamp}-{safe_turn_id}.jsonl"


__all__ = [
    "TurnEventLogger",
    "TurnEventLogRun",
]
