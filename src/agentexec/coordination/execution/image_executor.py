"""
Image strategies: generation through the image model backend, and the
compositor that only builds a templated preview URL.
"""

import json
import logging
from typing import Any, Dict, List
from urllib.parse import urlencode

from agentexec.agents.definitions import ImageAgent, ImageCompositorAgent, ParameterType, RuntimeOutput
from agentexec.agents.exceptions import AgentConfigurationError
from agentexec.coordination.events import ChunkEvent
from agentexec.models.requests import ImageGenerationRequest
from agentexec.utils.templates import render_string, render_value, template_variables

from .base import AgentExecutorBase
from .llm_executor import strip_comment_lines

logger = logging.getLogger(__name__)


def image_placeholders(
    prompt: str, image_inputs: Dict[str, Any]
) -> "tuple[Dict[str, str], Dict[str, str]]":
    """
    Map image parameters referenced by ``prompt`` to ``image-N`` placeholders.

    Returns (variables, images): template values to render the prompt with,
    and the placeholder -> url map sent to the backend.
    """
    referenced = template_variables(prompt)
    variables: Dict[str, str] = {}
    images: Dict[str, str] = {}
    for key in sorted(k for k in image_inputs if k in referenced):
        urls = image_inputs[key] if isinstance(image_inputs[key], list) else [image_inputs[key]]
        names = []
        for url in urls:
            if not url:
                continue
            name = f"image-{len(images)}"
            images[name] = url
            names.append(name)
        variables[key] = ", ".join(names)
    return variables, images


class ImageExecutor(AgentExecutorBase):
    agent: ImageAgent

    async def process(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        prompt = strip_comment_lines(self.agent.prompt or "")
        if not prompt.strip():
            raise AgentConfigurationError(
                "Prompt cannot be empty",
                config_field="prompt",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        image_inputs = {
            p.key: inputs.get(p.key)
            for p in self.agent.parameters
            if p.type == ParameterType.IMAGE and inputs.get(p.key)
        }
        placeholders, images = image_placeholders(prompt, image_inputs)
        rendered = render_string(prompt, self.template_variables(placeholders))

        info = self.agent.model
        request = ImageGenerationRequest(
            prompt=rendered,
            model=(info and info.model) or self.config.default_image_model,
            n=(info and info.n) or 1,
            size=info.size if info else None,
            quality=info.quality if info else None,
            style=info.style if info else None,
            images=images,
        )

        logger.info(f"Generating {request.n} image(s) with {request.model}", extra={"agent_id": self.agent.id})
        generated = await self.context.generate_images(request)
        results: List[Dict[str, Any]] = [{"url": item["url"]} for item in generated if item.get("url")]

        await self.emit(ChunkEvent, images=results)
        return {RuntimeOutput.IMAGES.value: results}


class ImageCompositorExecutor(AgentExecutorBase):
    """Renders per-field values into the template URL; no network call."""

    agent: ImageCompositorAgent

    async def process(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        if not self.agent.template_url:
            raise AgentConfigurationError(
                "Image compositor template url is required",
                config_field="template_url",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        variables = self.template_variables()
        values = {}
        for field in self.agent.fields:
            value = render_value(field.value, variables)
            if value is None:
                continue
            values[field.name] = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

        url = render_string(self.agent.template_url, variables)
        if values:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(values)}"

        images = [{"url": url}]
        await self.emit(ChunkEvent, images=images)
        return {RuntimeOutput.IMAGES.value: images}
