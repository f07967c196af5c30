"""In-process tool registry.

:class:`ToolRegistry` keeps tool registrations and implements the
:class:`~mcplink.orchestration.tools.types.ToolProvider` interface, so it can be
handed straight to :class:`~mcplink.orchestration.engine.AgentEngine`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

from ..types import ToolDescriptor
from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(ValueError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(KeyError):
    """The named tool is unknown or disabled."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"Tool '{self.name}' not found"


class ToolExecutionError(Exception):
    """A tool handler raised; the message is the handler's own."""

    def __init__(self, message: str, tool_name: str = "", cause: Exception | None = None) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    tool: Tool
    enabled: bool = True

    @property
    def name(self) -> str:
        return self.tool.name


class ToolRegistry:
    """Ordered collection of tools exposed to agent turns.

    Disabled tools stay registered but are neither listed nor invocable, which
    lets a host hide a tool for a while without losing its handler.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            ToolDescriptor(name="weather", description="Current weather for a city"),
            lambda args: {"city": args["city"], "temp": 21},
        )
        engine = AgentEngine(client, registry)
    """

    def __init__(self) -> None:
        self._entries: dict[str, ToolRegistration] = {}

    # -- registration ---------------------------------------------------------

    def register(self, tool: Tool, *, enabled: bool = True, allow_override: bool = False) -> ToolRegistration:
        """Add a tool implementation.

        Args:
            tool: Object exposing ``descriptor`` and ``execute(arguments)``.
            enabled: Whether the tool is visible right away.
            allow_override: Replace an existing tool of the same name instead
                of raising.

        Returns:
            The stored registration.

        Raises:
            DuplicateToolError: The name is taken and ``allow_override`` is False.
        """
        if tool.name in self._entries and not allow_override:
            raise DuplicateToolError(tool.name)
        entry = ToolRegistration(tool=tool, enabled=enabled)
        self._entries[tool.name] = entry
        LOGGER.debug("Registered tool %s (enabled=%s)", tool.name, enabled)
        return entry

    def register_function(
        self,
        descriptor: ToolDescriptor,
        handler: ToolHandler | AsyncToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
    ) -> ToolRegistration:
        """Wrap a plain (sync or async) ``handler(arguments)`` as a tool."""
        return self.register(
            SimpleTool(descriptor=descriptor, handler=handler),
            enabled=enabled,
            allow_override=allow_override,
        )

    def unregister(self, name: str) -> bool:
        removed = self._entries.pop(name, None)
        if removed is not None:
            LOGGER.debug("Unregistered tool %s", name)
        return removed is not None

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def clear(self) -> None:
        self._entries.clear()

    # -- lookup ---------------------------------------------------------------

    def get(self, name: str) -> Tool | None:
        """Return the enabled tool called *name*, if any."""
        entry = self._entries.get(name)
        return entry.tool if entry is not None and entry.enabled else None

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def list_tools(self, *, include_disabled: bool = False) -> list[ToolDescriptor]:
        """Descriptors in registration order (the ``ToolProvider`` listing)."""
        return [entry.tool.descriptor for entry in self._visible(include_disabled)]

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        return [entry.name for entry in self._visible(include_disabled)]

    # -- invocation -----------------------------------------------------------

    async def invoke(self, name: str, arguments: Mapping[str, Any]) -> Any:
        """Run one tool call (the ``ToolProvider`` invocation).

        Raises:
            ToolNotFoundError: The tool is unknown or disabled.
            ToolExecutionError: The handler raised.
        """
        tool = self.get_required(name)
        try:
            return await tool.execute(arguments)
        except Exception as exc:
            LOGGER.debug("Tool %s raised %s", name, type(exc).__name__, exc_info=True)
            raise ToolExecutionError(str(exc), tool_name=name, cause=exc) from exc

    # -- internals ------------------------------------------------------------

    def _visible(self, include_disabled: bool) -> Iterator[ToolRegistration]:
        for entry in self._entries.values():
            if entry.enabled or include_disabled:
                yield entry

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        entry.enabled = enabled
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries
