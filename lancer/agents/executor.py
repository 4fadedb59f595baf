"""Agent executor: hands a paid job to an AI agent over MCP.

Agents expose an ``execute_freelance_task`` tool on a streamable-HTTP MCP
endpoint. The executor opens a session per job, calls the tool with the
job title and requirements and returns the tool's text output as the
delivery content.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from lancer.protocols import AgentExecutorError, ExecutionResult

logger = logging.getLogger(__name__)

TASK_TOOL = "execute_freelance_task"
DEFAULT_TIMEOUT_SECONDS = 300.0

TASK_TYPES = ("code_generation", "code_audit", "translation", "content_creation", "general")
DELIVERY_TYPES = ("code", "text", "json", "url")


def infer_task_type(title: Optional[str], requirements: Optional[str] = None) -> str:
    """Map a job to one of the agent's task types from its wording."""
    text = f"{title or ''} {requirements or ''}".lower()
    if "audit" in text:
        return "code_audit"
    if "translat" in text:
        return "translation"
    if "code" in text or "develop" in text:
        return "code_generation"
    if "writ" in text or "blog" in text or "content" in text:
        return "content_creation"
    return "general"


def _parse_tool_output(text: str) -> ExecutionResult:
    """Agents may reply with plain text or a JSON envelope.

    The envelope form is ``{"success": ..., "content": ..., "contentType": ..., "error": ...}``.
    """
    try:
        data = json.loads(text)
    except ValueError:
        return ExecutionResult(success=True, content=text)
    if not isinstance(data, dict) or ("content" not in data and "error" not in data):
        return ExecutionResult(success=True, content=text)

    content_type = str(data.get("contentType") or "text")
    success = bool(data.get("success", "error" not in data))
    content = data.get("content")
    if content is not None and not isinstance(content, str):
        content = json.dumps(content)
    return ExecutionResult(
        success=success,
        content=content,
        error=data.get("error"),
        delivery_type=content_type if content_type in DELIVERY_TYPES else "text",
    )


class McpAgentExecutor:
    """AgentExecutor that calls an agent's MCP task tool."""

    def __init__(
        self,
        default_endpoint: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        tool_name: str = TASK_TOOL,
    ):
        self.default_endpoint = default_endpoint
        self.timeout = timeout
        self.tool_name = tool_name

    async def _call_tool(self, endpoint: str, arguments: Dict[str, Any]) -> Any:
        async with streamablehttp_client(endpoint) as (read_stream, write_stream, _):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                return await session.call_tool(self.tool_name, arguments=arguments)

    async def execute(
        self,
        job_id: int,
        title: str,
        requirements: Optional[str],
        task_type: str,
        *,
        endpoint: Optional[str] = None,
    ) -> ExecutionResult:
        target = endpoint or self.default_endpoint
        if not target:
            return ExecutionResult(success=False, error="No agent MCP endpoint configured")

        arguments = {
            "jobId": job_id,
            "title": title,
            "requirements": requirements or title,
            "taskType": task_type if task_type in TASK_TYPES else "general",
        }
        logger.info(f"Dispatching job {job_id} ({arguments['taskType']}) to {target}")

        try:
            result = await asyncio.wait_for(self._call_tool(target, arguments), self.timeout)
        except asyncio.TimeoutError as e:
            raise AgentExecutorError(
                f"Agent at {target} did not finish job {job_id} within {self.timeout}s"
            ) from e
        except Exception as e:
            raise AgentExecutorError(f"Agent call to {target} failed: {e}") from e

        text = "\n".join(
            block.text for block in result.content if getattr(block, "type", None) == "text"
        )
        if result.isError:
            return ExecutionResult(success=False, error=text or "Agent tool reported an error")
        if not text:
            return ExecutionResult(success=False, error="Agent returned no content")
        return _parse_tool_output(text)
