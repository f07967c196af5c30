"""Prompt templates for the agent turn engine.

Provides the default system prompt, the text-convention tool instructions, the
reasoning-phase prompt and the helpers that render tools and tool results into
prompt text.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from .orchestration.types import ToolDescriptor, ToolResult

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "DEFAULT_REASONING_PHASE_PROMPT",
    "INTERNAL_NOTE_PREFIX",
    "CONTINUE_INSTRUCTION",
    "describe_tools",
    "text_convention_system_prompt",
    "reasoning_phase_system_prompt",
    "format_tool_result",
    "format_tool_results_message",
    "summarize_tool_result",
]

DEFAULT_SYSTEM_PROMPT = """You are a professional, friendly assistant.

## Response guidelines
- Be concise and clear; lead with what matters
- Present key information as lists
- Keep a polite, natural tone
- Give the conclusion directly when you have one; ask briefly when information is missing"""

DEFAULT_REASONING_PHASE_PROMPT = """
---
This is your inner monologue. The user cannot see it.

Assess the current state: what have I got? Is the task done? What is still missing?

Important: only reason and decide here. Do not write the reply (that is the next step).
---"""

INTERNAL_NOTE_PREFIX = "[Internal decision]"

CONTINUE_INSTRUCTION = (
    "Continue based on the tool result above: call another tool if more information "
    "is needed, otherwise answer the user directly."
)

_RECORD_LIST_KEYS = ("data", "list", "items", "records", "results")


def describe_tools(tools: Sequence[ToolDescriptor]) -> str:
    """Render tools as markdown: heading, description and parameter list."""
    if not tools:
        return "No tools are available."
    sections: list[str] = []
    for tool in tools:
        lines = [f"### {tool.name}"]
        if tool.description:
            lines.append(tool.description)
        properties = tool.input_schema.get("properties") if tool.input_schema else None
        if isinstance(properties, Mapping) and properties:
            required = set(tool.input_schema.get("required") or ())
            lines.append("Parameters:")
            for key, prop in properties.items():
                prop = prop if isinstance(prop, Mapping) else {}
                kind = prop.get("type", "any")
                flag = ", required" if key in required else ""
                lines.append(f"- {key} ({kind}{flag}): {prop.get('description', 'No description')}")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def text_convention_system_prompt(base_prompt: str, tools: Sequence[ToolDescriptor]) -> str:
    """System prompt teaching the tag conventions to models without native tools."""
    return f"""{base_prompt or "You are a helpful assistant."}

## Rules you must follow

### Step 1: think
Before anything else, reason inside <think> tags:
<think>
1. What does the user want?
2. Which tool, if any, is needed?
3. How will I finish the task?
</think>

### Step 2: act
Right after thinking, act:
- If a tool is needed, output a <tool_call> immediately
- Otherwise answer the user directly

Never stop after thinking without acting.

### Tool call format
<tool_call>
{{"name": "tool_name", "arguments": {{"param": "value"}}}}
</tool_call>

Rules:
1. Call one tool at a time
2. Stop writing after a tool call and wait for its result
3. Continue once you receive the <tool_result>

### Task checklist (optional)
For multi-step work you may publish a checklist once:
<todo title="Plan">
- first step
- second step
</todo>
and report progress with <todo_update id="1" status="completed" result="short summary"/>
(status is one of pending, in_progress, completed, failed).

### Available tools
{describe_tools(tools)}

### Tool results
Results arrive as:
<tool_result name="tool_name" success="true/false">
result content
</tool_result>
Never write <tool_result> yourself.

### Final answer
When you are done with tools, answer the user without any tags. Tool call JSON must be valid."""


def reasoning_phase_system_prompt(
    base_prompt: str,
    tools: Sequence[ToolDescriptor],
    phase_prompt: str,
) -> str:
    """System prompt for the hidden reasoning step that precedes each action."""
    return f"""## Your role
You are the internal thinker; the user never sees this reasoning.
Your job: analyse the current state and decide what to do next.

## Reference information (may include important configuration)
{base_prompt}

## Available tools
{describe_tools(tools)}
{phase_prompt}"""


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def format_tool_result(result: ToolResult) -> str:
    success = "false" if result.is_error else "true"
    return f'<tool_result name="{result.name}" success="{success}">\n{_render_value(result.result)}\n</tool_result>'


def format_tool_results_message(results: Sequence[ToolResult]) -> str:
    """Follow-up user message carrying text-convention tool results."""
    blocks = "\n\n".join(format_tool_result(result) for result in results)
    return f"{blocks}\n\n{CONTINUE_INSTRUCTION}"


def summarize_tool_result(name: str, value: Any) -> str:
    """Reduce a tool result to a record count for the reasoning phase."""
    data = value
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return f"[tool {name} returned data]"
    count: int | None = None
    if isinstance(data, list):
        count = len(data)
    elif isinstance(data, Mapping):
        for key in _RECORD_LIST_KEYS:
            candidate = data.get(key)
            if isinstance(candidate, list):
                count = len(candidate)
                break
    if count is None:
        return f"[tool {name} returned data]"
    return f"[tool {name} returned data, containing {count} records]"
