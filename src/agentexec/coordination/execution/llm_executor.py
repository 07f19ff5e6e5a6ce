"""
LLM prompt strategy.

Renders the agent's role-tagged prompt templates and streams one model call.
When the agent declares structured outputs, the system prompt asks for a
trailing fenced JSON block: text before the fence is live ``$text``, the
fenced block is parsed once the stream ends. A malformed or non-conforming
block triggers a retry of the whole call; only the first attempt forwards
live text.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Union

from agentexec.agents.definitions import LLMAgent, ParameterType, PromptMessage, RuntimeOutput
from agentexec.agents.exceptions import AgentConfigurationError, ValidationError
from agentexec.agents.schema import output_variables_schema
from agentexec.coordination.events import ChunkEvent, InputEvent
from agentexec.models.utils import FencedJsonExtractor, metadata_instruction
from agentexec.utils.retry import with_retry
from agentexec.utils.templates import render_string, template_variables

from .base import AgentExecutorBase, mask_secret_inputs

logger = logging.getLogger(__name__)

_IMAGE_MARKER = "__IMAGE_{}__"


def strip_comment_lines(content: str) -> str:
    return "\n".join(line for line in content.split("\n") if not line.startswith("//"))


def with_system_instruction(messages: List[Dict[str, Any]], instruction: str) -> List[Dict[str, Any]]:
    """Append ``instruction`` to the first system message, adding one if needed."""
    messages = [dict(m) for m in messages]
    for message in messages:
        if message["role"] == "system" and isinstance(message["content"], str):
            message["content"] = message["content"] + instruction
            return messages
    return [{"role": "system", "content": instruction.lstrip()}] + messages


class LLMExecutor(AgentExecutorBase):
    agent: LLMAgent

    def render_prompt(self, prompt: PromptMessage, inputs: Dict[str, Any]) -> Union[str, List[Dict[str, Any]]]:
        """
        Render one prompt message.

        User messages that reference ``image`` parameters become a list of
        text and ``image_url`` content parts.
        """
        content = strip_comment_lines(prompt.content or "")
        variables = self.template_variables()

        referenced = template_variables(content) if "{" in content else set()
        images = {
            p.key: inputs[p.key]
            for p in self.agent.parameters
            if p.type == ParameterType.IMAGE and p.key in referenced and inputs.get(p.key)
        }
        if not images:
            return render_string(content, variables)

        markers = {key: _IMAGE_MARKER.format(key) for key in images}
        rendered = render_string(content, {**variables, **markers})

        parts: List[Dict[str, Any]] = []
        pattern = "(" + "|".join(re.escape(m) for m in markers.values()) + ")"
        by_marker = {marker: images[key] for key, marker in markers.items()}
        for piece in re.split(pattern, rendered):
            if piece in by_marker:
                if prompt.role == "user":
                    urls = by_marker[piece] if isinstance(by_marker[piece], list) else [by_marker[piece]]
                    parts.extend({"type": "image_url", "image_url": {"url": url}} for url in urls)
            elif piece:
                parts.append({"type": "text", "text": piece})
        logger.debug(f"Prompt with {len(images)} image parameter(s)", extra={"agent_id": self.agent.id})
        return parts

    def render_messages(self, inputs: Dict[str, Any]) -> List[Dict[str, Any]]:
        messages = []
        for prompt in self.agent.prompts:
            if prompt.visibility == "hidden":
                continue
            content = self.render_prompt(prompt, inputs)
            if content:
                messages.append({"role": prompt.role, "content": content})
        if not messages:
            raise AgentConfigurationError(
                "LLM agent has no prompt messages",
                config_field="prompts",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )
        return messages

    async def process(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        messages = self.render_messages(inputs)
        await self.emit(InputEvent, inputs=mask_secret_inputs(inputs, self.agent), prompt_messages=messages)

        streams_text = self.streams_text
        structured = self.structured_outputs()
        schema = output_variables_schema(structured) if structured else None
        if schema is not None:
            messages = with_system_instruction(messages, metadata_instruction(schema, allow_text=streams_text))

        request = self.model_request(messages)

        async def attempt(number: int) -> Dict[str, Any]:
            extractor: Optional[FencedJsonExtractor] = FencedJsonExtractor() if schema is not None else None
            text = ""

            async def forward(delta: str) -> None:
                if delta and streams_text and number == 0:
                    await self.emit(ChunkEvent, content=delta)

            async for chunk in self.stream_model(request, inputs):
                if not chunk.content:
                    continue
                live = extractor.feed(chunk.content) if extractor else chunk.content
                text += live
                await forward(live)

            outputs: Dict[str, Any] = {}
            if extractor is not None:
                rest = extractor.finish()
                text += rest
                await forward(rest)
                outputs = extractor.parse_json()
                if extractor.found_fence:
                    text = text.rstrip()

            if streams_text:
                outputs[RuntimeOutput.TEXT.value] = text
            if self.schema.is_empty:
                return outputs
            return self.validate_outputs(outputs)

        return await with_retry(
            attempt,
            attempts=self.context.max_retries,
            retry_on=(ValidationError,),
            agent_id=self.agent.id,
        )
