"""Tool orchestration for one engine iteration.

This module provides the ToolOrchestrator, which runs the tool calls decoded
in an iteration against the tool collaborator, isolates per-call failures and
detects immediate-result matches that end a turn early.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Collection, Mapping, Sequence

from ..types import ToolCall, ToolResult
from .types import ToolProvider

__all__ = [
    "ToolOrchestrator",
    "ExecutorConfig",
    "matches_pattern",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Executor Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool orchestrator.

    Attributes:
        parallel: Run the calls of one iteration concurrently.
        timeout: Per-call timeout in seconds (None disables it).
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
    """

    parallel: bool = True
    timeout: float | None = None
    log_arguments: bool = False
    log_results: bool = False


# -----------------------------------------------------------------------------
# Immediate Result Matching
# -----------------------------------------------------------------------------


def _exactly_equal(left: Any, right: Any) -> bool:
    # bool is an int subclass; True must not match 1.
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


def _as_object(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, Mapping):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if isinstance(parsed, Mapping):
            return parsed
    return None


def matches_pattern(value: Any, pattern: Mapping[str, Any]) -> bool:
    """Return True when *value* contains every key of *pattern* with an equal value.

    Strings are parsed as JSON first; anything that is not an object never matches.
    """
    candidate = _as_object(value)
    if candidate is None:
        return False
    for key, expected in pattern.items():
        if key not in candidate or not _exactly_equal(candidate[key], expected):
            return False
    return True


# -----------------------------------------------------------------------------
# Tool Orchestrator
# -----------------------------------------------------------------------------


class ToolOrchestrator:
    """Executes decoded tool calls against a :class:`ToolProvider`.

    Results always come back in call order, whatever the completion order, and
    a failing call becomes an error :class:`ToolResult` instead of raising.

    Example:
        orchestrator = ToolOrchestrator(registry, matchers=[{"type": "card"}])
        results = await orchestrator.execute(calls)
        hit = next((r for r in results if orchestrator.match_immediate(r)), None)
    """

    def __init__(
        self,
        provider: ToolProvider,
        *,
        matchers: Sequence[Mapping[str, Any]] = (),
        allowed_names: Collection[str] | None = None,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._provider = provider
        self._matchers = tuple(matchers)
        self._allowed = frozenset(allowed_names) if allowed_names is not None else None
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(self, calls: Sequence[ToolCall], *, parallel: bool | None = None) -> list[ToolResult]:
        """Run *calls* and return their results in call order."""
        return [result async for result in self.stream(calls, parallel=parallel)]

    async def stream(self, calls: Sequence[ToolCall], *, parallel: bool | None = None) -> AsyncIterator[ToolResult]:
        """Yield results in call order.

        In parallel mode every call is dispatched at once and the batch is
        joined before the first result is yielded. In serial mode each result
        is yielded as soon as its call finishes, and a consumer that stops
        pulling prevents the remaining calls from starting.
        """
        run_parallel = self._config.parallel if parallel is None else parallel
        if run_parallel and len(calls) > 1:
            LOGGER.debug("Executing %d tool call(s) in parallel", len(calls))
            results = await asyncio.gather(*(self.run_call(call) for call in calls))
            for result in results:
                yield result
            return
        for call in calls:
            yield await self.run_call(call)

    async def run_call(self, call: ToolCall) -> ToolResult:
        """Execute one call; never raises except for cancellation."""
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", call.name, call.id, call.arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", call.name, call.id)

        start_time = time.perf_counter()
        if self._allowed is not None and call.name not in self._allowed:
            LOGGER.warning("Model requested tool %s outside the visible tool set", call.name)
            return self._failure(call, f"Tool '{call.name}' is not available in this turn", start_time)

        timeout = self._config.timeout
        try:
            pending = self._provider.invoke(call.name, dict(call.arguments))
            if timeout is not None and timeout > 0:
                value = await asyncio.wait_for(_resolve(pending), timeout=timeout)
            else:
                value = await _resolve(pending)
        except asyncio.TimeoutError as exc:
            if timeout is None or timeout <= 0:
                LOGGER.warning("Tool %s failed: %r", call.name, exc)
                return self._failure(call, str(exc) or "Tool timed out", start_time)
            LOGGER.warning("Tool %s timed out (timeout=%.1fs)", call.name, timeout)
            return self._failure(call, f"Tool '{call.name}' timed out after {timeout:g}s", start_time)
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", call.name, exc)
            return self._failure(call, str(exc) or exc.__class__.__name__, start_time)

        duration_ms = (time.perf_counter() - start_time) * 1000
        if self._config.log_results:
            LOGGER.debug("Tool %s completed in %.1fms with result: %s", call.name, duration_ms, value)
        else:
            LOGGER.debug("Tool %s completed in %.1fms", call.name, duration_ms)
        return ToolResult(call_id=call.id, name=call.name, result=value, is_error=False, duration_ms=duration_ms)

    def match_immediate(self, result: ToolResult) -> Mapping[str, Any] | None:
        """Return the first matcher satisfied by a successful result, if any."""
        if result.is_error or not self._matchers:
            return None
        for pattern in self._matchers:
            if matches_pattern(result.result, pattern):
                LOGGER.debug("Tool %s result matched immediate pattern %s", result.name, pattern)
                return pattern
        return None

    @staticmethod
    def _failure(call: ToolCall, message: str, start_time: float) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            name=call.name,
            result=message,
            is_error=True,
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
