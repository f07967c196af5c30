"""Exception hierarchy for the agent turn engine."""

from __future__ import annotations

__all__ = [
    "MCPLinkError",
    "ModelInvocationError",
    "ConfigurationError",
]


class MCPLinkError(Exception):
    """Base class for engine errors."""


class ModelInvocationError(MCPLinkError):
    """Raised when the model stream collaborator fails during a turn."""

    def __init__(self, message: str, *, iteration: int | None = None, cause: BaseException | None = None) -> None:
        self.iteration = iteration
        self.cause = cause
        super().__init__(message)


class ConfigurationError(MCPLinkError, ValueError):
    """Raised when engine options are invalid."""
