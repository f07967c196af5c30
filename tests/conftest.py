"""Shared pytest fixtures."""

from __future__ import annotations

import logging

import pytest

from mcplink.orchestration.types import ToolDescriptor
from mcplink.orchestration.tools import ToolRegistry


@pytest.fixture
def weather_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(
        ToolDescriptor(
            name="weather",
            description="Current weather for a city",
            input_schema={
                "type": "object",
                "properties": {"city": {"type": "string", "description": "City name"}},
                "required": ["city"],
            },
        ),
        lambda args: {"city": args.get("city"), "temp": 21},
    )
    return registry


@pytest.fixture(autouse=True)
def _capture_mcplink_debug_logs(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="mcplink")
