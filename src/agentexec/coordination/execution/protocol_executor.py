"""
Protocol-client strategy: invokes a tool, renders a prompt, or reads a
resource on a protocol server connected through the execution context.
"""

import logging
from typing import Any, Dict, List

from agentexec.agents.definitions import ProtocolClientAgent, RuntimeOutput
from agentexec.agents.exceptions import AgentConfigurationError
from agentexec.environment.protocol_client import ProtocolClient
from agentexec.utils.templates import render_string

from .base import AgentExecutorBase

logger = logging.getLogger(__name__)


def content_text(content: Any) -> str:
    """Flatten protocol content (a part, a list of parts, or a string) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return content.get("text") or ""
    return "\n".join(content_text(part) for part in content if part)


def prompt_messages(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"role": message.get("role") or "user", "content": content_text(message.get("content"))}
        for message in result.get("messages", [])
    ]


class ProtocolClientExecutor(AgentExecutorBase):
    agent: ProtocolClientAgent

    def _arguments(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {
            p.key: inputs.get(p.key)
            for p in self.agent.parameters
            if not p.hidden and inputs.get(p.key) is not None
        }

    async def process(self, inputs: Dict[str, Any]) -> Any:
        operation = self.agent.operation
        if not self.agent.platform_id or operation is None:
            raise AgentConfigurationError(
                "Protocol client agent requires a platform id and an operation",
                config_field="operation" if self.agent.platform_id else "platform_id",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        client = await self.context.get_protocol_client(self.agent.platform_id)
        logger.info(
            f"Protocol {operation.type} {operation.name} on {self.agent.platform_id}",
            extra={"agent_id": self.agent.id},
        )

        if operation.type == "tool":
            result = await client.call_tool(operation.name, self._arguments(inputs))
            if self.agent.has_output(RuntimeOutput.TEXT.value) and isinstance(result, dict):
                return {**result, RuntimeOutput.TEXT.value: content_text(result.get("content"))}
            return result

        if operation.type == "prompt":
            return await self._run_prompt(client, operation.name, inputs)

        uri = render_string(operation.uri or operation.name, self.template_variables())
        return await client.read_resource(uri)

    async def _run_prompt(self, client: ProtocolClient, name: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        result = await client.get_prompt(name, self._arguments(inputs))
        messages = prompt_messages(result or {})
        if not messages:
            raise AgentConfigurationError(
                f"Protocol prompt {name} returned no messages",
                config_field="operation",
                config_value=name,
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        # Rendered in one model call; nothing is streamed to the caller
        text = ""
        async for chunk in self.stream_model(self.model_request(messages), inputs):
            text += chunk.content or ""
        return {RuntimeOutput.TEXT.value: text}
