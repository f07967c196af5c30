"""mcplink: an agent turn engine for tool-using language models."""

from .orchestration import (
    AgentEngine,
    AgentEvent,
    EngineConfig,
    EventType,
    Message,
    ModelInvocationError,
    ToolCallingMode,
    ToolDescriptor,
    ToolRegistry,
    TurnCallbacks,
    TurnResult,
)
from .client import AIClient, ClientSettings
from .utils.logging import setup_logging

__version__ = "0.1.0"

__all__ = [
    "AgentEngine",
    "AgentEvent",
    "EngineConfig",
    "EventType",
    "Message",
    "ModelInvocationError",
    "ToolCallingMode",
    "ToolDescriptor",
    "ToolRegistry",
    "TurnCallbacks",
    "TurnResult",
    "AIClient",
    "ClientSettings",
    "setup_logging",
    "__version__",
]
