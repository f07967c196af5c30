"""Agent turn orchestration: engine, stream parser, tools and configuration."""

# Core types
from .types import (
    TextPart,
    ImagePart,
    FilePart,
    ToolCallPart,
    ToolResultPart,
    Message,
    ToolDescriptor,
    ToolCall,
    ToolResult,
    ChecklistItem,
    Checklist,
    EventType,
    Usage,
    AgentEvent,
    ToolCallRecord,
    TurnResult,
)
from .errors import MCPLinkError, ModelInvocationError, ConfigurationError
from .model_types import ModelChunk, ModelReply, ModelClient

# Stream parsing
from .tag_parser import (
    ParseMode,
    ParseState,
    ParserEvent,
    ParserEventKind,
    FeedResult,
    TagStreamParser,
    feed,
    feed_reasoning,
    flush,
)
from .tool_call_parser import decode_tool_call, extract_tool_calls, normalize_tool_call_text
from .checklist import ChecklistTracker

# Tool system
from .tools import (
    ToolProvider,
    Tool,
    SimpleTool,
    ToolRegistry,
    DuplicateToolError,
    ToolNotFoundError,
    ToolExecutionError,
    ToolOrchestrator,
    ExecutorConfig,
)

# Engine
from .mode_selector import ModeSelector, ToolCallingMode
from .config import EngineConfig
from .strategies import NativeStrategy, TextConventionStrategy
from .engine import AgentEngine, AgentTurn, TurnCallbacks, TurnState
from .event_log import TurnEventLogger

__all__ = [
    # types
    "TextPart",
    "ImagePart",
    "FilePart",
    "ToolCallPart",
    "ToolResultPart",
    "Message",
    "ToolDescriptor",
    "ToolCall",
    "ToolResult",
    "ChecklistItem",
    "Checklist",
    "EventType",
    "Usage",
    "AgentEvent",
    "ToolCallRecord",
    "TurnResult",
    # errors
    "MCPLinkError",
    "ModelInvocationError",
    "ConfigurationError",
    # model collaborator
    "ModelChunk",
    "ModelReply",
    "ModelClient",
    # parsing
    "ParseMode",
    "ParseState",
    "ParserEvent",
    "ParserEventKind",
    "FeedResult",
    "TagStreamParser",
    "feed",
    "feed_reasoning",
    "flush",
    "decode_tool_call",
    "extract_tool_calls",
    "normalize_tool_call_text",
    "ChecklistTracker",
    # tools
    "ToolProvider",
    "Tool",
    "SimpleTool",
    "ToolRegistry",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "ToolOrchestrator",
    "ExecutorConfig",
    # engine
    "ModeSelector",
    "ToolCallingMode",
    "EngineConfig",
    "NativeStrategy",
    "TextConventionStrategy",
    "AgentEngine",
    "AgentTurn",
    "TurnCallbacks",
    "TurnState",
    "TurnEventLogger",
]
