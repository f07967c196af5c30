"""Tool system for the agent turn engine.

This package provides the tool collaborator protocol, an in-process registry
implementing it, and the orchestrator that runs an iteration's tool calls.

Example:
    from mcplink.orchestration.tools import ToolOrchestrator, ToolRegistry
    from mcplink.orchestration.types import ToolCall, ToolDescriptor

    registry = ToolRegistry()
    registry.register_function(
        ToolDescriptor(name="greet", description="Greet someone"),
        lambda args: f"Hello, {args.get('name', 'World')}!",
    )

    orchestrator = ToolOrchestrator(registry)
    results = await orchestrator.execute([ToolCall("call_1", "greet", {"name": "Alice"})])
"""

from .types import (
    Tool,
    ToolProvider,
    ToolHandler,
    AsyncToolHandler,
    SimpleTool,
)

from .registry import (
    ToolRegistry,
    ToolRegistration,
    DuplicateToolError,
    ToolNotFoundError,
    ToolExecutionError,
)

from .executor import (
    ToolOrchestrator,
    ExecutorConfig,
    matches_pattern,
)

__all__ = [
    # types.py
    "Tool",
    "ToolProvider",
    "ToolHandler",
    "AsyncToolHandler",
    "SimpleTool",
    # registry.py
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
    # executor.py
    "ToolOrchestrator",
    "ExecutorConfig",
    "matches_pattern",
]
