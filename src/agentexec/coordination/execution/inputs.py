"""
Input resolution shared by every executor.

Parameters are resolved in declaration order. Literal values are rendered as
templates against the caller's variables; source parameters are filled by
calling a collaborator (secret store, memory store) or by running another
agent as a child task; LLM plumbing parameters are parsed and checked against
the chat-completion wire shapes; booleans and numbers are coerced.
"""

import json
import logging
import os
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from agentexec.agents.definitions import (
    LLM_INPUT_PARAMETER_TYPES,
    AgentReference,
    ExternalPlatformAgent,
    MemoryBinding,
    Parameter,
    ParameterType,
)
from agentexec.agents.exceptions import (
    AgentConfigurationError,
    InputValidationError,
    SecretMissingError,
    UpstreamError,
)
from agentexec.utils.concurrency import gather_all
from agentexec.utils.templates import render_string, render_template, render_value

if TYPE_CHECKING:  # pragma: no cover
    from .base import AgentExecutorBase

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


# =============================================================================
# LLM plumbing shapes
# =============================================================================


class _ImageUrl(BaseModel):
    url: str


class _ContentPart(BaseModel):
    type: Literal["text", "image_url"]
    text: Optional[str] = None
    image_url: Optional[_ImageUrl] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "_ContentPart":
        if self.type == "text" and self.text is None:
            raise ValueError("text content part requires 'text'")
        if self.type == "image_url" and self.image_url is None:
            raise ValueError("image_url content part requires 'image_url.url'")
        return self


class _Message(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: Union[str, List[_ContentPart], None]
    name: Optional[str] = None

    @field_validator("role", "name", mode="before")
    @classmethod
    def _empty_as_unset(cls, value, info):
        if value in (None, ""):
            return "user" if info.field_name == "role" else None
        return value


class _FunctionSpec(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: Dict[str, Any]


class _Tool(BaseModel):
    type: Literal["function"]
    function: _FunctionSpec


class _ToolChoiceFunction(BaseModel):
    name: str
    description: Optional[str] = None


class _NamedToolChoice(BaseModel):
    type: Literal["function"]
    function: _ToolChoiceFunction


class _JsonSchemaFormat(BaseModel):
    name: str
    description: Optional[str] = None
    schema_: Dict[str, Any] = Field(alias="schema")
    strict: Optional[bool] = None


class _ResponseFormat(BaseModel):
    type: Optional[Literal["text", "json_object", "json_schema"]] = None
    json_schema: Optional[_JsonSchemaFormat] = None

    @model_validator(mode="after")
    def _check_schema(self) -> "_ResponseFormat":
        if self.type == "json_schema" and self.json_schema is None:
            raise ValueError("json_schema response format requires 'json_schema'")
        return self


_MESSAGES = TypeAdapter(List[_Message])
_TOOLS = TypeAdapter(List[_Tool])
_TOOL_CHOICE = TypeAdapter(Union[Literal["auto", "none", "required"], _NamedToolChoice])
_RESPONSE_FORMAT = TypeAdapter(_ResponseFormat)


def _try_parse_json(value: Any) -> Any:
    if not isinstance(value, str):
        return None
    try:
        return json.loads(value)
    except ValueError:
        return None


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True, by_alias=True)
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


def parse_llm_input(parameter: Parameter, value: Any) -> Any:
    """
    Parse and check an LLM plumbing value (structured or JSON-encoded).

    Raises:
        InputValidationError: The value does not have the expected shape.
    """
    try:
        if parameter.type == ParameterType.LLM_INPUT_MESSAGES:
            if value is None:
                return None
            messages = value if isinstance(value, list) else _try_parse_json(value)
            if not isinstance(messages, list):
                content = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
                messages = [{"role": "user", "content": content}]
            return _dump(_MESSAGES.validate_python(messages))

        if parameter.type == ParameterType.LLM_INPUT_TOOLS:
            tools = value if isinstance(value, list) else _try_parse_json(value)
            if not tools:
                return None
            return _dump(_TOOLS.validate_python(tools))

        if parameter.type == ParameterType.LLM_INPUT_TOOL_CHOICE:
            if value in (None, ""):
                return None
            return _dump(_TOOL_CHOICE.validate_python(_try_parse_json(value) or value))

        if value in (None, ""):
            return None
        return _dump(_RESPONSE_FORMAT.validate_python(_try_parse_json(value) or value))
    except PydanticValidationError as e:
        raise InputValidationError(
            f'Parameter "{parameter.key}" (type: {parameter.type.value}) validation failed: {e}',
            parameter_key=parameter.key,
        ) from e


# =============================================================================
# Scalars
# =============================================================================


def coerce_boolean(value: Any, default: Any = None) -> bool:
    if value is None:
        value = default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    return bool(value)


def coerce_number(value: Any, default: Any = None) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            pass
    if isinstance(value, bool):
        return int(value)
    return default


def _render_literal(value: Any, variables: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, variables) if value.strip() else value
    if isinstance(value, (dict, list)):
        return render_value(value, variables)
    return value


# =============================================================================
# Source parameters
# =============================================================================


async def _resolve_secret(executor: "AgentExecutorBase", parameter: Parameter, supplied: Any) -> str:
    if supplied:
        return supplied
    context, agent = executor.context, executor.agent
    if context.config.secret_env_fallback:
        secret = os.environ.get(parameter.key.upper())
        if secret:
            return secret
    project_id = (agent.identity and agent.identity.project_id) or context.entry_project_id
    secret = await context.lookup_secret(project_id, agent.id, parameter.key)
    if not secret:
        raise SecretMissingError(parameter.key, agent_id=agent.id, task_id=executor.task_id)
    return secret


async def _resolve_tool(executor: "AgentExecutorBase", parameter: Parameter, resolved: Dict[str, Any]) -> Any:
    source = parameter.source.tool
    tool = await executor.get_agent(source.agent, required=False)
    if tool is None:
        logger.warning(
            f"Tool agent {source.agent.agent_id} for parameter '{parameter.key}' not found, skipping",
            extra={"agent_id": executor.agent.id},
        )
        return parameter.default_value
    result = await executor.run_child(tool, inputs=source.parameters, variables=dict(resolved))
    return result if result is not None else parameter.default_value


async def _resolve_datastore(executor: "AgentExecutorBase", parameter: Parameter) -> Any:
    binding = parameter.source.variable if parameter.source else None
    binding = binding or MemoryBinding(key=parameter.key)
    memory = executor.context.memory
    if memory is None:
        raise AgentConfigurationError(
            f"Parameter '{parameter.key}' reads memory but no memory store is configured",
            config_field="memory",
            agent_id=executor.agent.id,
        )

    values = await memory.read((binding.key or parameter.key).lower(), binding.scope, **executor.memory_kwargs())
    values = [v for v in values if v is not None] or [binding.default_value]
    result: Any = values
    if binding.reset:
        result = values if len(values) > 1 else values[0]
        if result is None:
            result = ""
    return result if result is not None else parameter.default_value


def _platform_agent(executor: "AgentExecutorBase", operation_id: str, platform_id: Optional[str]) -> ExternalPlatformAgent:
    identity = executor.agent.identity
    return ExternalPlatformAgent(
        id=operation_id,
        name=operation_id,
        platform_id=platform_id or (identity.platform_id if identity else None),
        operation_id=operation_id,
    )


async def _resolve_knowledge(executor: "AgentExecutorBase", parameter: Parameter, resolved: Dict[str, Any]) -> str:
    source = parameter.source.knowledge
    agent = _platform_agent(executor, executor.config.knowledge_operation_id, source.platform_id)
    try:
        data = await executor.run_child(
            agent,
            inputs={**source.parameters, "knowledge_id": source.id},
            variables=dict(resolved),
            forward_text=True,
        )
    except Exception as e:
        raise UpstreamError(f"Search the knowledge error: {e}", agent_id=executor.agent.id) from e
    docs = (data or {}).get("docs") if isinstance(data, dict) else None
    return json.dumps(docs or [], ensure_ascii=False)


async def _resolve_history(executor: "AgentExecutorBase", parameter: Parameter, resolved: Dict[str, Any]) -> List[Dict[str, Any]]:
    source = parameter.source.chat_history
    context = executor.context
    agent = _platform_agent(executor, executor.config.history_operation_id, None)
    result = await executor.run_child(
        agent,
        inputs={
            "session_id": context.session_id,
            "limit": source.limit or 50,
            "keyword": render_string(source.keyword or "", executor.template_variables(resolved)),
        },
    )
    messages = result.get("messages") if isinstance(result, dict) else None
    if not isinstance(messages, list):
        return []

    async def display_name(agent_id: str) -> Optional[str]:
        try:
            definition = await executor.get_agent(AgentReference(agent_id=agent_id), required=False)
        except Exception as e:
            logger.warning(
                f"Could not resolve agent {agent_id} in conversation history: {e}",
                extra={"agent_id": executor.agent.id},
            )
            return None
        return definition.display_name if definition else None

    agent_ids = sorted({m.get("agent_id") for m in messages if isinstance(m, dict) and m.get("agent_id")})
    names = dict(zip(agent_ids, await gather_all(*(display_name(i) for i in agent_ids))))
    return [
        {**message, "name": names.get(message.get("agent_id"))}
        for message in messages
        if isinstance(message, dict)
    ]


async def _resolve_platform_api(executor: "AgentExecutorBase", parameter: Parameter, resolved: Dict[str, Any]) -> Any:
    source = parameter.source.api
    agent = _platform_agent(executor, source.id, source.platform_id)
    return await executor.run_child(agent, inputs=source.parameters, variables=dict(resolved), forward_text=True)


async def _resolve_source(executor: "AgentExecutorBase", parameter: Parameter, resolved: Dict[str, Any], supplied: Any) -> Any:
    source = parameter.source
    if parameter.type == ParameterType.SECRET:
        return await _resolve_secret(executor, parameter, supplied)
    if parameter.type == ParameterType.DATASTORE:
        return await _resolve_datastore(executor, parameter)
    if parameter.type == ParameterType.TOOL and source and source.tool:
        return await _resolve_tool(executor, parameter, resolved)
    if parameter.type == ParameterType.KNOWLEDGE and source and source.knowledge:
        return await _resolve_knowledge(executor, parameter, resolved)
    if parameter.type == ParameterType.HISTORY and source and source.chat_history:
        return await _resolve_history(executor, parameter, resolved)
    if parameter.type == ParameterType.PLATFORM_API and source and source.api:
        return await _resolve_platform_api(executor, parameter, resolved)
    raise AgentConfigurationError(
        f"Parameter '{parameter.key}' of type {parameter.type.value} has no source configured",
        config_field="parameters",
        config_value=parameter.key,
        agent_id=executor.agent.id,
    )


# =============================================================================
# Entry point
# =============================================================================


async def resolve_inputs(executor: "AgentExecutorBase") -> Dict[str, Any]:
    """
    Materialize the executor's inputs.

    Undeclared caller inputs are passed through unchanged. Each declared
    parameter is resolved in order; source parameters see the values resolved
    before them.

    Raises:
        InputValidationError: A required parameter is empty or an LLM plumbing
            value has the wrong shape.
        SecretMissingError: A secret parameter has no value anywhere.
        AgentConfigurationError: A source parameter is misconfigured.
    """
    options = executor.options
    raw = dict(options.inputs or {})
    variables = {**raw, **options.variables, "$sys": executor.context.system_variables()}
    resolved: Dict[str, Any] = dict(raw)

    for parameter in executor.agent.parameters:
        key = parameter.key
        supplied = raw.get(key)

        if parameter.is_source:
            value = await _resolve_source(executor, parameter, resolved, supplied)
        elif parameter.type in LLM_INPUT_PARAMETER_TYPES:
            value = parse_llm_input(parameter, supplied)
        else:
            value = _render_literal(supplied, variables)
            if value is None:
                value = options.variables.get(key)
            if parameter.type == ParameterType.BOOLEAN:
                value = coerce_boolean(value, parameter.default_value)
            elif parameter.type == ParameterType.NUMBER:
                value = coerce_number(value, parameter.default_value)
            elif value is None:
                value = parameter.default_value

            if parameter.required and value in (None, ""):
                raise InputValidationError(
                    f'Parameter "{key}" is required',
                    parameter_key=key,
                    agent_id=executor.agent.id,
                    task_id=executor.task_id,
                )

        resolved[key] = value

    logger.debug(f"Resolved inputs: {sorted(resolved)}", extra={"agent_id": executor.agent.id})
    return resolved
