"""Error types shared by the bus, agent loop and scheduler."""

from __future__ import annotations


class CrabgateError(Exception):
    """Base class for all crabgate errors."""


class ValidationError(CrabgateError, ValueError):
    """Bad input to a mutating operation or a tool call."""


class NotFoundError(CrabgateError, LookupError):
    """Unknown job id or tool name."""


class DuplicateToolError(CrabgateError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class ProviderError(CrabgateError):
    """The language-model backend call failed. Fatal for one processing pass."""


class ToolExecutionError(CrabgateError):
    """A tool failed. Folded into the conversation, never fatal to the pass."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class IterationLimitExceeded(CrabgateError):
    """The tool-call loop hit its cap without a final answer."""

    def __init__(self, iterations: int, partial: str | None = None):
        super().__init__(
            f"Reached the maximum number of tool call iterations ({iterations}) "
            "without a final answer"
        )
        self.iterations = iterations
        self.partial = partial


class PersistenceError(CrabgateError):
    """Writing the job store failed. The in-memory state stays authoritative."""
