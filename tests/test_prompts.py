"""Tests for prompt builders and tool-result formatting."""

from __future__ import annotations

import pytest

from mcplink.orchestration.types import ToolDescriptor, ToolResult
from mcplink.prompts import (
    CONTINUE_INSTRUCTION,
    DEFAULT_REASONING_PHASE_PROMPT,
    describe_tools,
    format_tool_result,
    format_tool_results_message,
    reasoning_phase_system_prompt,
    summarize_tool_result,
    text_convention_system_prompt,
)

WEATHER = ToolDescriptor(
    name="weather",
    description="Current weather for a city",
    input_schema={
        "type": "object",
        "properties": {
            "city": {"type": "string", "description": "City name"},
            "units": {"type": "string"},
        },
        "required": ["city"],
    },
)


def test_describe_tools_lists_parameters() -> None:
    assert describe_tools([WEATHER]) == (
        "### weather\n"
        "Current weather for a city\n"
        "Parameters:\n"
        "- city (string, required): City name\n"
        "- units (string): No description"
    )


def test_describe_tools_without_tools() -> None:
    assert describe_tools([]) == "No tools are available."


def test_text_convention_prompt_embeds_base_and_tools() -> None:
    prompt = text_convention_system_prompt("Be brief.", [WEATHER])

    assert prompt.startswith("Be brief.")
    assert "### weather" in prompt
    assert '{"name": "tool_name", "arguments": {"param": "value"}}' in prompt
    assert "<todo_update" in prompt


def test_reasoning_phase_prompt_sections() -> None:
    prompt = reasoning_phase_system_prompt("Be brief.", [WEATHER], DEFAULT_REASONING_PHASE_PROMPT)

    assert prompt.startswith("## Your role")
    assert "Be brief." in prompt
    assert "### weather" in prompt
    assert prompt.endswith(DEFAULT_REASONING_PHASE_PROMPT)


def test_format_tool_result_renders_json_and_errors() -> None:
    ok = ToolResult(call_id="call_1", name="weather", result={"temp": 21})
    failed = ToolResult(call_id="call_2", name="weather", result="backend down", is_error=True)

    assert format_tool_result(ok) == '<tool_result name="weather" success="true">\n{\n  "temp": 21\n}\n</tool_result>'
    assert format_tool_result(failed) == '<tool_result name="weather" success="false">\nbackend down\n</tool_result>'


def test_results_message_ends_with_continue_instruction() -> None:
    message = format_tool_results_message(
        [
            ToolResult(call_id="call_1", name="a", result="one"),
            ToolResult(call_id="call_2", name="b", result="two"),
        ]
    )

    assert message.index('name="a"') < message.index('name="b"')
    assert message.endswith(CONTINUE_INSTRUCTION)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ([1, 2, 3], "[tool search returned data, containing 3 records]"),
        ({"items": [1, 2]}, "[tool search returned data, containing 2 records]"),
        ('{"results": []}', "[tool search returned data, containing 0 records]"),
        ({"total": 5}, "[tool search returned data]"),
        ("plain text", "[tool search returned data]"),
        (None, "[tool search returned data]"),
    ],
)
def test_summarize_tool_result(value: object, expected: str) -> None:
    assert summarize_tool_result("search", value) == expected
