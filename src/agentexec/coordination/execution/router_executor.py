"""
Router strategy: a tool-calling loop over the agent's routes.

Each route (another agent or a platform API operation) becomes a function
tool. The model is called with the running conversation and ``tool_choice``
``auto``; requested tools run concurrently as child tasks and their results
are appended to the conversation, until the model answers without calling a
tool.

When the agent also declares structured outputs, a second pass asks the
model for JSON constrained to the output schema. It starts once the tool loop
has finished its first round and works on a snapshot of the conversation
taken at that point, so it never races the loop's later appends.
"""

import asyncio
import copy
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from agentexec.agents.definitions import (
    LLM_INPUT_PARAMETER_TYPES,
    BaseAgentDefinition,
    ExternalPlatformAgent,
    ParameterType,
    PlatformOperation,
    Route,
    RouterAgent,
    RuntimeOutput,
)
from agentexec.agents.exceptions import (
    AgentConfigurationError,
    AgentLimitError,
    OnTaskCompletion,
    ToolCompletionDirective,
    ValidationError,
)
from agentexec.agents.schema import OutputSchema, output_variables_schema
from agentexec.coordination.events import ChunkEvent, InputEvent
from agentexec.models.requests import ToolCallMsg
from agentexec.models.utils import (
    finalize_tool_calls,
    function_tool,
    json_response_format,
    merge_tool_call_deltas,
    parse_json_response,
    parse_tool_arguments,
)
from agentexec.utils.concurrency import gather_all
from agentexec.utils.retry import with_retry
from agentexec.utils.templates import render_string, render_template

from .base import AgentExecutorBase, mask_secret_inputs

logger = logging.getLogger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
_INVALID_TOOL_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

TRANSLATE_TOOL_NAME_PROMPT = """\
# Role: You translate the user's input into an English function name.

# Rules:
- Reply with the function name only, nothing else.
- Use camelCase and only the characters a-z, A-Z, 0-9, _ and -.
- If the input is already an English identifier, repeat it unchanged.

# Examples:
- 测试: test
- 添加一个新的todo: addANewTodo
- weapon: weapon
"""


@dataclass
class RouterTool:
    """A route made callable: its function schema plus what runs when it is called."""

    name: str
    route: Route
    description: str
    parameters: Dict[str, Any]
    agent: Optional[BaseAgentDefinition] = None
    operation: Optional[PlatformOperation] = None

    def schema(self) -> Dict[str, Any]:
        return function_tool(self.name, self.description, self.parameters)


def sanitize_tool_name(name: str) -> str:
    return _INVALID_TOOL_NAME_CHARS.sub("_", name or "")[:64]


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class RouterExecutor(AgentExecutorBase):
    agent: RouterAgent

    # =========================================================================
    # Tools
    # =========================================================================

    async def tool_name(self, route: Route, name: str, fallback: str) -> str:
        """
        A function name for ``name`` matching ``[a-zA-Z0-9_-]{1,64}``.

        Non-conforming names are translated by the model once per
        (agent, route, name); failed translations are not remembered.
        """
        if TOOL_NAME_PATTERN.match(name or ""):
            return name

        translated = None
        if name and self.config.translate_tool_names:
            cache_key = f"{self.agent.id}-{route.id}-{_md5(name)}"
            translated = self.context.tool_name_cache.get(cache_key)
            if translated is None:
                try:
                    translated = sanitize_tool_name((await self._translate(name)).strip())
                except Exception as e:
                    logger.warning(f"Tool name translation failed for {name!r}: {e}", extra={"agent_id": self.agent.id})
                    translated = None
                if translated:
                    self.context.tool_name_cache[cache_key] = translated

        return translated or sanitize_tool_name(name) or sanitize_tool_name(fallback)

    async def _translate(self, name: str) -> str:
        request = self.model_request(
            [
                {"role": "system", "content": TRANSLATE_TOOL_NAME_PROMPT},
                {"role": "user", "content": name},
            ],
            stream=False,
        )
        content = ""
        async for chunk in self.context.stream_model(request):
            content += chunk.content or ""
        return content

    def _agent_tool_parameters(self, route: Route, target: BaseAgentDefinition) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for parameter in target.parameters:
            if (
                parameter.is_source
                or parameter.hidden
                or parameter.type in LLM_INPUT_PARAMETER_TYPES
                or route.parameters.get(parameter.key)
            ):
                continue
            prop: Dict[str, Any] = {"type": "string", "description": parameter.description or ""}
            if parameter.type == ParameterType.SELECT and parameter.options:
                prop["enum"] = [o.value for o in parameter.options]
            properties[parameter.key] = prop
            if parameter.required:
                required.append(parameter.key)

        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema

    def _operation_tool_parameters(self, route: Route, operation: PlatformOperation) -> Dict[str, Any]:
        properties = {
            p.name: {"type": "string", "description": p.description or ""}
            for p in operation.parameters
            if not route.parameters.get(p.name)
        }
        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        required = [name for name in operation.required_fields if name in properties]
        if required:
            schema["required"] = required
        return schema

    async def _route_tool(self, route: Route) -> Optional[RouterTool]:
        if route.from_ == "platform-api":
            platform_id = route.platform_id or (self.agent.identity.platform_id if self.agent.identity else None)
            operations = await self.context.platform_operations(platform_id)
            operation = next((o for o in operations if o.id == route.id), None)
            if operation is None:
                logger.warning(f"Platform operation {route.id} not found, skipping route", extra={"agent_id": self.agent.id})
                return None
            name = route.function_name or operation.summary or operation.description or ""
            return RouterTool(
                name=await self.tool_name(route, name, operation.id),
                route=route,
                description=operation.description or name,
                parameters=self._operation_tool_parameters(route, operation),
                operation=operation,
            )

        target = await self.get_agent(route.reference, required=False)
        if target is None:
            logger.warning(f"Route agent {route.id} not found, skipping route", extra={"agent_id": self.agent.id})
            return None
        name = route.function_name or target.description or target.name or ""
        return RouterTool(
            name=await self.tool_name(route, name, target.id),
            route=route,
            description=target.description or "",
            parameters=self._agent_tool_parameters(route, target),
            agent=target,
        )

    async def build_tools(self) -> Dict[str, RouterTool]:
        tools: Dict[str, RouterTool] = {}
        for tool in await gather_all(*(self._route_tool(r) for r in self.agent.routes)):
            if tool is None:
                continue
            name, suffix = tool.name, 2
            while name in tools:
                name = f"{tool.name[:60]}_{suffix}"
                suffix += 1
            tool.name = name
            tools[name] = tool
        logger.info(f"Router tools: {sorted(tools)}", extra={"agent_id": self.agent.id})
        return tools

    # =========================================================================
    # Tool execution
    # =========================================================================

    async def run_tool(self, tool: RouterTool, call: ToolCallMsg) -> Any:
        arguments = parse_tool_arguments(call)
        variables = self.template_variables()
        for key, value in tool.route.parameters.items():
            if value not in (None, ""):
                arguments[key] = render_template(value, variables) if isinstance(value, str) else value

        logger.info(f"Calling tool {tool.name}", extra={"agent_id": self.agent.id})
        if tool.operation is not None:
            target = ExternalPlatformAgent(
                id=tool.operation.id,
                name=tool.name,
                platform_id=tool.operation.platform_id or tool.route.platform_id,
                operation_id=tool.operation.id,
            )
            forward = False
        else:
            target = tool.agent
            text = RuntimeOutput.TEXT.value
            forward = target.has_output(text) and self.agent.has_output(text)

        result = await self.run_child(target, inputs=arguments, forward_text=forward)

        if tool.route.on_end == OnTaskCompletion.EXIT:
            raise ToolCompletionDirective(
                "The task has been stopped. The tool will now exit.", OnTaskCompletion.EXIT
            )
        return result

    async def _tool_messages(self, tools: Dict[str, RouterTool], calls: List[ToolCallMsg]) -> List[Dict[str, Any]]:
        async def one(call: ToolCallMsg) -> Any:
            tool = tools.get(call.name)
            if tool is None:
                logger.warning(f"Model requested unknown tool {call.name}", extra={"agent_id": self.agent.id})
                return {"error": f"Unknown tool: {call.name}"}
            return await self.run_tool(tool, call)

        results = await gather_all(*(one(c) for c in calls))
        return [
            {
                "role": "tool",
                "tool_call_id": call.id,
                "content": json.dumps(result, ensure_ascii=False, default=str),
                "_result": result,
            }
            for call, result in zip(calls, results)
        ]

    # =========================================================================
    # Passes
    # =========================================================================

    async def tool_loop(
        self,
        messages: List[Dict[str, Any]],
        tools: Dict[str, RouterTool],
        first_round: "asyncio.Future",
    ) -> Tuple[str, List[Any]]:
        """
        Run model rounds until the model stops calling tools.

        ``messages`` is extended in place. ``first_round`` receives an
        immutable snapshot of the conversation after the first round.
        Returns the final text and the results of the last tool round.
        """
        schemas = [t.schema() for t in tools.values()] or None
        results: List[Any] = []
        text = ""

        for round_number in range(self.config.max_tool_rounds):
            request = self.model_request(
                list(messages),
                tools=schemas,
                tool_choice="auto" if schemas else None,
            )
            content = ""
            accumulated: Dict[int, Dict[str, Any]] = {}
            async for chunk in self.stream_model(request):
                if chunk.content:
                    content += chunk.content
                    if self.streams_text:
                        await self.emit(ChunkEvent, content=chunk.content)
                if chunk.tool_calls:
                    merge_tool_call_deltas(accumulated, chunk.tool_calls)

            calls = finalize_tool_calls(accumulated)
            text += content
            if not calls:
                if not first_round.done():
                    first_round.set_result(tuple(copy.deepcopy(messages)))
                return text, results

            messages.append(
                {"role": "assistant", "content": content or None, "tool_calls": [c.to_dict() for c in calls]}
            )
            tool_messages = await self._tool_messages(tools, calls)
            results = [m.pop("_result") for m in tool_messages]
            messages.extend(tool_messages)

            if round_number == 0:
                first_round.set_result(tuple(copy.deepcopy(messages)))

        raise AgentLimitError(
            f"Router exceeded {self.config.max_tool_rounds} tool-calling rounds",
            limit_type="tool_rounds",
            limit_value=self.config.max_tool_rounds,
            agent_id=self.agent.id,
            task_id=self.task_id,
        )

    async def json_pass(self, first_round: "asyncio.Future", structured) -> Dict[str, Any]:
        """Ask for the structured outputs as JSON, starting from the first-round snapshot."""
        snapshot = await first_round
        response_format = json_response_format(output_variables_schema(structured))
        schema = OutputSchema(structured)

        async def attempt(number: int) -> Dict[str, Any]:
            request = self.model_request([dict(m) for m in snapshot], response_format=response_format)
            content = ""
            async for chunk in self.stream_model(request):
                content += chunk.content or ""
            return schema.validate(parse_json_response(content))

        return await with_retry(
            attempt,
            attempts=self.context.max_retries,
            retry_on=(ValidationError,),
            agent_id=self.agent.id,
        )

    async def process(self, inputs: Dict[str, Any]) -> Any:
        if not self.agent.prompt:
            raise AgentConfigurationError(
                "Router agent prompt is required",
                config_field="prompt",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        message = render_string(self.agent.prompt, self.template_variables())
        messages: List[Dict[str, Any]] = [{"role": "user", "content": message}]
        await self.emit(InputEvent, inputs=mask_secret_inputs(inputs, self.agent), prompt_messages=list(messages))

        tools = await self.build_tools()
        structured = self.structured_outputs()

        first_round: asyncio.Future = asyncio.get_running_loop().create_future()
        if structured:
            (text, results), outputs = await gather_all(
                self.tool_loop(messages, tools, first_round), self.json_pass(first_round, structured)
            )
        else:
            text, results = await self.tool_loop(messages, tools, first_round)
            outputs = {}

        if not self.agent.visible_outputs and results:
            return results[0] if len(results) == 1 else results

        if self.streams_text:
            outputs[RuntimeOutput.TEXT.value] = text
        return outputs
