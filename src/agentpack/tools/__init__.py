"""Agent CLI invocation."""

from agentpack.tools.runner import ToolExecution, ToolInvoker, ToolRequest, invoke_tool

__all__ = ["ToolExecution", "ToolInvoker", "ToolRequest", "invoke_tool"]
