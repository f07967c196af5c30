"""Tool-calling mode selection.

Some models expose reliable structured function calling, others only follow
text conventions. :class:`ModeSelector` classifies a model identifier with two
configurable pattern tables.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Iterable, Sequence

from .errors import ConfigurationError

__all__ = [
    "ToolCallingMode",
    "DEFAULT_TEXT_CONVENTION_PATTERNS",
    "DEFAULT_NATIVE_PATTERNS",
    "ModeSelector",
]

LOGGER = logging.getLogger(__name__)


class ToolCallingMode(str, Enum):
    NATIVE = "native"
    TEXT_CONVENTION = "text-convention"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: str | ToolCallingMode | None) -> ToolCallingMode:
        """Parse a mode name; ``prompt-based`` is accepted for text-convention."""
        if value is None:
            return cls.AUTO
        if isinstance(value, ToolCallingMode):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized == "prompt-based":
            return cls.TEXT_CONVENTION
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown tool calling mode: {value!r}") from exc


# Models whose structured calling is unreliable; checked first.
DEFAULT_TEXT_CONVENTION_PATTERNS: tuple[str, ...] = (
    r"deepseek",
    r"^gpt",
    r"^gemini",
    r"^mistral",
    r"^llama",
    r"^phi-",
    r"^qwen",
    r"^mixtral",
    r"^command-r",
)

DEFAULT_NATIVE_PATTERNS: tuple[str, ...] = (
    r"^claude-3",
    r"^claude-2",
    r"^o1",
    r"^o3",
)


def _compile(patterns: Iterable[str | re.Pattern[str]]) -> tuple[re.Pattern[str], ...]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        if isinstance(pattern, re.Pattern):
            compiled.append(pattern)
            continue
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            raise ConfigurationError(f"Invalid model pattern {pattern!r}: {exc}") from exc
    return tuple(compiled)


class ModeSelector:
    """Ordered rule set deciding between native and text-convention mode.

    Rules: an explicit override wins; otherwise the first matching
    text-convention pattern, then the first matching native pattern; unknown
    models fall back to text-convention.
    """

    def __init__(
        self,
        *,
        text_convention_patterns: Sequence[str | re.Pattern[str]] | None = None,
        native_patterns: Sequence[str | re.Pattern[str]] | None = None,
    ) -> None:
        self._text_patterns = _compile(
            DEFAULT_TEXT_CONVENTION_PATTERNS if text_convention_patterns is None else text_convention_patterns
        )
        self._native_patterns = _compile(DEFAULT_NATIVE_PATTERNS if native_patterns is None else native_patterns)

    def select(
        self,
        model_identifier: str | None,
        override: str | ToolCallingMode | None = None,
    ) -> ToolCallingMode:
        """Classify *model_identifier*.

        Args:
            model_identifier: Model name or id; may be empty.
            override: ``native`` or ``text-convention`` to bypass detection;
                ``auto``/None runs the pattern tables.

        Returns:
            ``ToolCallingMode.NATIVE`` or ``ToolCallingMode.TEXT_CONVENTION``.
        """
        forced = ToolCallingMode.parse(override)
        if forced is not ToolCallingMode.AUTO:
            LOGGER.debug("Tool calling mode forced to %s", forced.value)
            return forced

        identifier = (model_identifier or "").strip()
        for pattern in self._text_patterns:
            if pattern.search(identifier):
                LOGGER.debug("Model %s matched %s; using text-convention tools", identifier, pattern.pattern)
                return ToolCallingMode.TEXT_CONVENTION
        for pattern in self._native_patterns:
            if pattern.search(identifier):
                LOGGER.debug("Model %s matched %s; using native tools", identifier, pattern.pattern)
                return ToolCallingMode.NATIVE
        LOGGER.debug("Model %r not recognized; defaulting to text-convention tools", identifier)
        return ToolCallingMode.TEXT_CONVENTION
