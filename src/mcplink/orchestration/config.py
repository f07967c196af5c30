"""Engine configuration.

:class:`EngineConfig` is the options object recognized by
:class:`~mcplink.orchestration.engine.AgentEngine`. It can be built directly,
from a camelCase or snake_case mapping, or from ``MCPLINK_*`` environment
variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..prompts import DEFAULT_REASONING_PHASE_PROMPT, DEFAULT_SYSTEM_PROMPT
from .errors import ConfigurationError
from .mode_selector import DEFAULT_NATIVE_PATTERNS, DEFAULT_TEXT_CONVENTION_PATTERNS, ToolCallingMode

__all__ = ["EngineConfig"]

LOGGER = logging.getLogger(__name__)

_OPTION_ALIASES: Mapping[str, str] = {
    "systemPrompt": "system_prompt",
    "maxIterations": "max_iterations",
    "parallelToolCalls": "parallel_tool_calls",
    "enableReasoningPhase": "enable_reasoning_phase",
    "enableThinkingPhase": "enable_reasoning_phase",
    "reasoningPhasePrompt": "reasoning_phase_prompt",
    "thinkingPhasePrompt": "reasoning_phase_prompt",
    "reasoningMaxTokens": "reasoning_max_tokens",
    "thinkingMaxTokens": "reasoning_max_tokens",
    "immediateResultMatchers": "immediate_result_matchers",
    "toolCallingMode": "tool_calling_mode",
    "modelName": "model_name",
    "textConventionPatterns": "text_convention_patterns",
    "nativePatterns": "native_patterns",
    "toolTimeout": "tool_timeout",
    "eventLogDir": "event_log_dir",
}

_ENV_OVERRIDES: Mapping[str, str] = {
    "MCPLINK_SYSTEM_PROMPT": "system_prompt",
    "MCPLINK_TOOL_CALLING_MODE": "tool_calling_mode",
    "MCPLINK_MODEL": "model_name",
    "MCPLINK_EVENT_LOG_DIR": "event_log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "MCPLINK_PARALLEL_TOOL_CALLS": "parallel_tool_calls",
    "MCPLINK_ENABLE_REASONING_PHASE": "enable_reasoning_phase",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "MCPLINK_MAX_ITERATIONS": "max_iterations",
    "MCPLINK_REASONING_MAX_TOKENS": "reasoning_max_tokens",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "MCPLINK_TOOL_TIMEOUT": "tool_timeout",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True, frozen=True)
class EngineConfig:
    """Options for one engine.

    Attributes:
        system_prompt: Base system prompt.
        max_iterations: Upper bound on model invocations per turn.
        parallel_tool_calls: Run the calls of one iteration concurrently.
        enable_reasoning_phase: Run the hidden reasoning step before each
            action. Off unless requested, in both modes.
        reasoning_phase_prompt: Instructions appended to the reasoning system prompt.
        reasoning_max_tokens: Token cap for the reasoning step.
        immediate_result_matchers: Partial-object patterns ending the turn on match.
        tool_calling_mode: ``native``, ``text-convention`` or ``auto``.
        model_name: Identifier used for mode detection (defaults to the client model).
        text_convention_patterns: Mode detection table checked first.
        native_patterns: Mode detection table checked second.
        tool_timeout: Per tool call timeout in seconds.
        event_log_dir: Directory for per-turn JSONL event logs.
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_iterations: int = 10
    parallel_tool_calls: bool = True
    enable_reasoning_phase: bool = False
    reasoning_phase_prompt: str = DEFAULT_REASONING_PHASE_PROMPT
    reasoning_max_tokens: int = 1000
    immediate_result_matchers: tuple[Mapping[str, Any], ...] = ()
    tool_calling_mode: ToolCallingMode = ToolCallingMode.AUTO
    model_name: str | None = None
    text_convention_patterns: tuple[str, ...] = DEFAULT_TEXT_CONVENTION_PATTERNS
    native_patterns: tuple[str, ...] = DEFAULT_NATIVE_PATTERNS
    tool_timeout: float | None = None
    event_log_dir: Path | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.max_iterations, int) or self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be a positive integer, got {self.max_iterations!r}")
        if self.reasoning_max_tokens < 1:
            raise ConfigurationError("reasoning_max_tokens must be positive")
        object.__setattr__(self, "enable_reasoning_phase", bool(self.enable_reasoning_phase))
        object.__setattr__(self, "tool_calling_mode", ToolCallingMode.parse(self.tool_calling_mode))
        object.__setattr__(self, "immediate_result_matchers", _coerce_matchers(self.immediate_result_matchers))
        object.__setattr__(self, "text_convention_patterns", tuple(self.text_convention_patterns))
        object.__setattr__(self, "native_patterns", tuple(self.native_patterns))
        if self.event_log_dir is not None and not isinstance(self.event_log_dir, Path):
            object.__setattr__(self, "event_log_dir", Path(self.event_log_dir).expanduser())
        if not self.system_prompt:
            object.__setattr__(self, "system_prompt", DEFAULT_SYSTEM_PROMPT)
        if not self.reasoning_phase_prompt:
            object.__setattr__(self, "reasoning_phase_prompt", DEFAULT_REASONING_PHASE_PROMPT)

    def with_updates(self, **changes: Any) -> EngineConfig:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None = None, *, base: EngineConfig | None = None) -> EngineConfig:
        """Build a config from an options mapping (camelCase or snake_case keys).

        ``usePromptBasedTools`` is accepted as a boolean shortcut for
        ``tool_calling_mode``.

        Raises:
            ConfigurationError: On unknown keys or invalid values.
        """
        known = {spec.name for spec in fields(cls)}
        changes: dict[str, Any] = {}
        for key, value in (options or {}).items():
            if key == "usePromptBasedTools":
                if value is not None:
                    changes["tool_calling_mode"] = (
                        ToolCallingMode.TEXT_CONVENTION if value else ToolCallingMode.NATIVE
                    )
                continue
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(f"Unknown engine option: {key!r}")
            if value is None and name not in ("model_name", "tool_timeout", "event_log_dir"):
                continue
            changes[name] = value
        return replace(base or cls(), **changes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, base: EngineConfig | None = None) -> EngineConfig:
        """Apply ``MCPLINK_*`` environment overrides on top of *base*."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        config = base or cls()
        if overrides:
            LOGGER.debug("Applying environment overrides: %s", sorted(overrides))
            config = replace(config, **overrides)
        return config


def _coerce_matchers(matchers: Sequence[Mapping[str, Any]] | None) -> tuple[Mapping[str, Any], ...]:
    if not matchers:
        return ()
    if isinstance(matchers, Mapping):
        matchers = (matchers,)
    coerced: list[Mapping[str, Any]] = []
    for pattern in matchers:
        if not isinstance(pattern, Mapping) or not pattern:
            raise ConfigurationError(f"Immediate result matcher must be a non-empty mapping, got {pattern!r}")
        coerced.append(dict(pattern))
    return tuple(coerced)
