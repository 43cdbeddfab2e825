"""Tool registry for dynamic tool management."""

import asyncio
from typing import Any

from crabgate.agent.tools.base import Tool
from crabgate.errors import DuplicateToolError, NotFoundError, ToolExecutionError, ValidationError


class ToolRegistry:
    """
    Registry for agent tools.

    Tools are registered during startup wiring and only read afterwards,
    so lookups take no lock.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool. Raises DuplicateToolError on a name collision."""
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name, or None."""
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        """Get a tool by name or raise NotFoundError."""
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Tool '{name}' not found. Available: {', '.join(self.tool_names)}")
        return tool

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def schemas(self) -> list[dict[str, Any]]:
        """Name, description and parameter schema of every tool."""
        return [
            {"name": t.name, "description": t.description, "parameters": t.parameters}
            for t in self._tools.values()
        ]

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, params: dict[str, Any], timeout: float | None = None) -> str:
        """
        Execute a tool by name with given parameters.

        Args:
            name: Tool name.
            params: Tool parameters.
            timeout: Optional per-call timeout in seconds.

        Returns:
            Tool execution result as string.

        Raises:
            NotFoundError: Unknown tool.
            ValidationError: Parameters do not match the tool schema.
            ToolExecutionError: The tool raised or timed out.
        """
        tool = self.require(name)
        tool.check_params(params)
        try:
            return await asyncio.wait_for(tool.execute(**params), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(name, f"Tool '{name}' timed out after {timeout}s") from e
        except (ValidationError, ToolExecutionError):
            raise
        except Exception as e:
            raise ToolExecutionError(name, f"Error executing {name}: {e}") from e

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
