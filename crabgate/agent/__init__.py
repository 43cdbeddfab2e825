"""Agent core module."""

from crabgate.agent.loop import AgentLoop
from crabgate.agent.tools.base import Tool
from crabgate.agent.tools.registry import ToolRegistry

__all__ = ["AgentLoop", "Tool", "ToolRegistry"]
