"""Agent executor clients."""

from lancer.agents.executor import McpAgentExecutor, infer_task_type

__all__ = ["McpAgentExecutor", "infer_task_type"]
