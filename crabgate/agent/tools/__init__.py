"""Agent tools: the Tool contract, the registry and built-in tools."""

from crabgate.agent.tools.base import Tool
from crabgate.agent.tools.cron import CronTool
from crabgate.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolRegistry", "CronTool"]
