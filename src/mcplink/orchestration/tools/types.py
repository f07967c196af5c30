"""Tool collaborator types.

The engine consumes tools through :class:`ToolProvider` only: list what is
available and invoke by name. :class:`Tool` and :class:`SimpleTool` describe
in-process tools held by :class:`~mcplink.orchestration.tools.registry.ToolRegistry`.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Mapping, Protocol, Sequence, runtime_checkable

from ..types import ToolDescriptor

__all__ = [
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "ToolProvider",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

# Synchronous tool handler
ToolHandler = Callable[[Mapping[str, Any]], Any]

# Asynchronous tool handler
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ToolProvider(Protocol):
    """Narrow interface the engine uses to reach tools.

    ``list_tools`` may return the descriptors directly or an awaitable of
    them. ``invoke`` performs a single attempt; it may raise, and the
    orchestrator turns any exception into an error result.
    """

    def list_tools(self) -> Sequence[ToolDescriptor] | Awaitable[Sequence[ToolDescriptor]]:
        ...

    async def invoke(self, name: str, arguments: Mapping[str, Any]) -> Any:
        ...


@runtime_checkable
class Tool(Protocol):
    """Protocol for in-process tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def descriptor(self) -> ToolDescriptor:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        """Execute the tool with the given arguments.

        Raises:
            Exception: If tool execution fails.
        """
        ...


# -----------------------------------------------------------------------------
# Simple Tool Implementation
# -----------------------------------------------------------------------------


@dataclass
class SimpleTool:
    """Tool wrapping a plain callable.

    Example:
        def lookup(args):
            return {"city": args["city"], "temp": 21}

        tool = SimpleTool(
            descriptor=ToolDescriptor(name="weather", description="Current weather"),
            handler=lookup,
        )
    """

    descriptor: ToolDescriptor
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            return await result
        return result
