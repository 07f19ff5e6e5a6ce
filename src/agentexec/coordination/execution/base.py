"""
Executor base: the lifecycle every agent kind goes through.

``AgentExecutorBase.execute`` is a template method:

1. emit INPUT with the caller's raw inputs (secrets masked)
2. resolve inputs (templates, source parameters, coercion)
3. emit a CHUNK with outputs already satisfied by input bindings
4. emit EXECUTE(RUNNING)
5. serve from cache when enabled and the cached outputs still validate
6. otherwise run the kind-specific ``process`` and validate its result
7. persist outputs bound to memory keys
8. emit the final output CHUNK (and a JSON text CHUNK on the parent task)
9. emit EXECUTE(END)

Failures in steps 2-6 propagate to the caller. Once RUNNING has been emitted
the END event is always emitted, carrying the error when the task failed.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Tuple

from agentexec.agents.definitions import (
    AgentIdentity,
    AgentReference,
    BaseAgentDefinition,
    CacheEntry,
    OutputVariable,
    ParameterType,
    RuntimeOutput,
)
from agentexec.agents.exceptions import (
    AgentConfigurationError,
    AgentFrameworkError,
    OutputValidationError,
    ToolCompletionDirective,
)
from agentexec.agents.schema import OutputSchema
from agentexec.coordination.events import (
    ChunkEvent,
    ExecuteEvent,
    ExecutionEvent,
    ExecutionPhase,
    InputEvent,
    UsageEvent,
)
from agentexec.models.requests import ChatCompletionChunk, ChatCompletionRequest
from agentexec.utils.concurrency import gather_all
from agentexec.utils.task_id import next_task_id
from agentexec.utils.templates import render_template, render_truthy

from .inputs import resolve_inputs

if TYPE_CHECKING:  # pragma: no cover
    from .context import ExecutionContext

logger = logging.getLogger(__name__)

SECRET_MASK = "******"


@dataclass
class ExecutorOptions:
    """Per-task invocation options; one instance per node of the call tree."""

    inputs: Dict[str, Any] = field(default_factory=dict)
    task_id: str = field(default_factory=next_task_id)
    parent_task_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    parent_identity: Optional[AgentIdentity] = None
    depth: int = 0

    def child(
        self,
        inputs: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        parent_identity: Optional[AgentIdentity] = None,
    ) -> "ExecutorOptions":
        return ExecutorOptions(
            inputs=dict(inputs or {}),
            task_id=next_task_id(),
            parent_task_id=self.task_id,
            variables=dict(variables or {}),
            parent_identity=parent_identity,
            depth=self.depth + 1,
        )


def mask_secret_inputs(values: Optional[Dict[str, Any]], agent: BaseAgentDefinition) -> Dict[str, Any]:
    """Copy of ``values`` with every visible secret parameter replaced by a mask."""
    masked = dict(values or {})
    for parameter in agent.parameters:
        if parameter.type == ParameterType.SECRET and not parameter.hidden:
            masked[parameter.key] = SECRET_MASK
    return masked


def stable_hash(data: Any) -> str:
    encoded = json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()


class AgentExecutorBase:
    """
    Shared lifecycle; subclasses implement :meth:`process`.

    Subclasses may also override :meth:`outputs_object` when their raw result
    is not a dict of outputs (e.g. a list of parallel results).
    """

    def __init__(self, context: "ExecutionContext", agent: BaseAgentDefinition, options: ExecutorOptions):
        self.context = context
        self.agent = agent
        self.options = options
        self.schema = OutputSchema(agent.output_variables)
        self.inputs: Dict[str, Any] = {}
        self._executor_override: Optional["asyncio.Future"] = None

    @property
    def task_id(self) -> str:
        return self.options.task_id

    @property
    def config(self):
        return self.context.config

    # =========================================================================
    # Strategy hooks
    # =========================================================================

    async def process(self, inputs: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def outputs_object(self, raw: Any) -> Dict[str, Any]:
        return raw if isinstance(raw, dict) else {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def execute(self) -> Any:
        agent, options = self.agent, self.options

        await self.emit(InputEvent, inputs=mask_secret_inputs(options.inputs, agent))

        self.inputs = await resolve_inputs(self)

        partial = self.validate_outputs({}, partial=True)
        if partial:
            await self.emit(ChunkEvent, object=mask_secret_inputs(partial, agent))

        await self.emit(ExecuteEvent, phase=ExecutionPhase.RUNNING)
        logger.info(f"Task {self.task_id} running ({agent.kind})", extra={"agent_id": agent.id})

        error: Optional[BaseException] = None
        try:
            result = await self._cached_result()
            if result is None:
                raw = await self.process(self.inputs)
                result = await self._validate_processed(raw)
                await self._write_cache(result)

            await self.post_process(result)

            await self.emit(ChunkEvent, object=result if isinstance(result, dict) else {"result": result})
            if options.parent_task_id:
                await self.emit(
                    ChunkEvent,
                    task_id=options.parent_task_id,
                    content=json.dumps(result, ensure_ascii=False, default=str),
                )
            return result
        except ToolCompletionDirective:
            raise
        except BaseException as e:
            error = e
            raise
        finally:
            await self.emit(ExecuteEvent, phase=ExecutionPhase.END, error=self._error_info(error))
            logger.info(
                f"Task {self.task_id} {'failed' if error else 'ended'}",
                extra={"agent_id": agent.id},
            )

    @staticmethod
    def _error_info(error: Optional[BaseException]) -> Optional[Dict[str, Any]]:
        if error is None:
            return None
        if isinstance(error, AgentFrameworkError):
            return error.to_dict()
        return {"error_type": type(error).__name__, "message": str(error)}

    # =========================================================================
    # Output validation
    # =========================================================================

    def _input_bound_outputs(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        bound = {}
        for output in self.agent.visible_outputs:
            if output.from_ is None or output.from_.type != "input":
                continue
            parameter = next(
                (p for p in self.agent.parameters if p.id == output.from_.id and not p.hidden), None
            )
            if parameter is not None and inputs.get(parameter.key) is not None:
                bound[output.name] = inputs[parameter.key]
        return bound

    def validate_outputs(self, outputs: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
        """Validate ``outputs`` merged with input-bound values against the output schema."""
        merged = {**(outputs or {}), **self._input_bound_outputs(self.inputs)}
        return self.schema.validate(merged, partial=partial)

    async def _validate_processed(self, raw: Any) -> Any:
        if self.schema.is_empty and not self._has_derived_outputs():
            return raw
        outputs = self.outputs_object(raw)
        result = self.validate_outputs(outputs)
        await self._apply_derived_outputs(outputs, result)
        return result

    @property
    def streams_text(self) -> bool:
        """Whether the strategy should produce live ``$text``."""
        return self.agent.has_output(RuntimeOutput.TEXT.value) or not self.agent.visible_outputs

    def structured_outputs(self) -> List[OutputVariable]:
        """Outputs a model must produce as JSON."""
        runtime = (RuntimeOutput.TEXT.value, RuntimeOutput.LLM_RESPONSE_STREAM.value)
        return [
            o
            for o in self.agent.visible_outputs
            if o.name not in runtime and o.from_ is None and not (o.value_template or "").strip()
        ]

    def _has_derived_outputs(self) -> bool:
        return any(
            (o.from_ is not None and o.from_.type == "call-agent") or (o.value_template or "").strip()
            for o in self.agent.output_variables
            if o.name
        )

    async def _apply_derived_outputs(self, outputs: Dict[str, Any], result: Dict[str, Any]) -> None:
        """Fill outputs bound to another agent's result or to a value template."""
        scope = {**outputs, **result}

        async def call_agent_output(output):
            if output.active_when and not render_truthy(output.active_when, self.template_variables(scope)):
                return None
            reference = output.from_.agent
            if reference is None:
                raise AgentConfigurationError(
                    f"Output '{output.name}' is bound to an agent call without an agent",
                    config_field="output_variables",
                    agent_id=self.agent.id,
                )
            agent = await self.get_agent(reference, required=True)
            value = await self.run_child(agent, inputs=output.from_.inputs, variables={**self.inputs, **outputs})
            return output.name, value

        call_outputs = [
            o for o in self.agent.output_variables if o.name and o.from_ is not None and o.from_.type == "call-agent"
        ]
        called = dict(filter(None, await gather_all(*(call_agent_output(o) for o in call_outputs))))
        result.update(called)

        for output in self.agent.output_variables:
            if not output.name or not (output.value_template or "").strip():
                continue
            variables = self.template_variables({**outputs, **called})
            if output.active_when and not render_truthy(output.active_when, variables):
                continue
            result[output.name] = render_template(output.value_template, variables)

    # =========================================================================
    # Cache
    # =========================================================================

    @property
    def cache_enabled(self) -> bool:
        return bool(
            self.agent.cache and self.agent.cache.enabled and self.agent.identity and self.context.cache
        )

    def cache_key(self) -> str:
        visible = {p.key: self.inputs.get(p.key) for p in self.agent.parameters if not p.hidden}
        return stable_hash(visible)

    async def _cached_result(self) -> Optional[Any]:
        if not self.cache_enabled:
            return None

        result = None
        try:
            entry = await self.context.cache.get(self.agent.identity.aid, self.cache_key())
            if entry is not None and self.schema.is_empty:
                result = dict(entry.outputs) or None
            elif entry is not None:
                result = self.validate_outputs(entry.outputs) or None
        except OutputValidationError as e:
            logger.warning(f"Discarding stale cache entry: {e}", extra={"agent_id": self.agent.id})
        except Exception as e:
            logger.warning(f"Cache read failed: {e}", extra={"agent_id": self.agent.id})

        if result is not None:
            logger.info(f"Cache hit for task {self.task_id}", extra={"agent_id": self.agent.id})
            text = result.get(RuntimeOutput.TEXT.value)
            if isinstance(text, str):
                await self.emit(ChunkEvent, content=text)
        return result

    async def _write_cache(self, result: Any) -> None:
        if not self.cache_enabled or not result or not isinstance(result, dict):
            return
        await self.context.cache.set(
            self.agent.identity.aid,
            self.cache_key(),
            CacheEntry(inputs=self.inputs, outputs=result),
        )

    # =========================================================================
    # Memory
    # =========================================================================

    def memory_kwargs(self) -> Dict[str, Any]:
        return {
            "project_id": self.context.entry_project_id,
            "session_id": self.context.session_id,
            "agent_id": self.agent.id,
            "user_id": self.context.user.did if self.context.user else None,
        }

    async def post_process(self, result: Any) -> None:
        """Persist outputs that are bound to a memory key."""
        if not isinstance(result, dict):
            return
        for output in self.agent.visible_outputs:
            if output.variable is None or not output.variable.key:
                continue
            value = result.get(output.name)
            if value is None:
                continue
            if self.context.memory is None:
                raise AgentConfigurationError(
                    f"Output '{output.name}' is bound to memory but no memory store is configured",
                    config_field="memory",
                    agent_id=self.agent.id,
                )
            await self.context.memory.write(
                output.variable.key.lower(),
                value,
                output.variable.scope,
                reset=output.variable.reset,
                **self.memory_kwargs(),
            )

    # =========================================================================
    # Events and children
    # =========================================================================

    async def emit(self, event_cls, task_id: Optional[str] = None, **fields: Any) -> None:
        event = event_cls(
            task_id or self.task_id,
            parent_task_id=self.options.parent_task_id if task_id is None else None,
            agent_id=self.agent.id,
            agent_name=self.agent.name,
            **fields,
        )
        await self.context.emit(event)

    def template_variables(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Variables visible to templates: resolved inputs, ``extra``, and ``$sys``."""
        return {**self.inputs, **(extra or {}), "$sys": self.context.system_variables()}

    async def get_agent(self, reference: AgentReference, required: bool = True) -> Optional[BaseAgentDefinition]:
        return await self.context.get_agent(reference.resolve(self.agent.identity), required=required)

    def text_forwarding_context(self, child_task_id: str) -> "ExecutionContext":
        """Context whose sink also re-emits the child's text deltas on this task id."""
        parent_context = self.context

        async def sink(event: ExecutionEvent) -> None:
            await parent_context.emit(event)
            if isinstance(event, ChunkEvent) and event.task_id == child_task_id and event.content:
                await self.emit(ChunkEvent, content=event.content)

        return parent_context.copy(sink=sink)

    async def run_child(
        self,
        agent: BaseAgentDefinition,
        inputs: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        forward_text: bool = False,
    ) -> Any:
        """Run ``agent`` as a child task of this one."""
        options = self.options.child(inputs=inputs, variables=variables, parent_identity=self.agent.identity)
        context = self.text_forwarding_context(options.task_id) if forward_text else self.context
        return await context.execute(agent, options)

    # =========================================================================
    # Model access shared by the LLM-class strategies
    # =========================================================================

    def model_request(self, messages: List[Dict[str, Any]], **overrides: Any) -> ChatCompletionRequest:
        """Request with the agent's model info, falling back to project defaults."""
        info = self.agent.model
        project = self.context.project
        model = (info and info.model) or (project and project.model) or self.config.default_text_model
        defaults = project if project is not None and project.model == model else None

        def pick(name):
            value = getattr(info, name) if info is not None else None
            if value is None and defaults is not None:
                value = getattr(defaults, name)
            return value

        return ChatCompletionRequest(
            messages=messages,
            model=model,
            temperature=pick("temperature"),
            top_p=pick("top_p"),
            presence_penalty=pick("presence_penalty"),
            frequency_penalty=pick("frequency_penalty"),
            **overrides,
        )

    async def executor_override(self) -> Optional[Tuple[BaseAgentDefinition, Dict[str, Any]]]:
        """The gateway agent model calls are delegated to, if any (resolved once)."""
        if self._executor_override is None:
            self._executor_override = asyncio.ensure_future(self._resolve_executor_override())
        return await self._executor_override

    async def _resolve_executor_override(self):
        override = self.agent.executor
        if override is None and self.context.project is not None:
            override = self.context.project.executor
        if override is None:
            return None
        agent = await self.get_agent(override.agent, required=True)
        return agent, dict(override.input_values)

    async def stream_model(
        self, request: ChatCompletionRequest, inputs: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[ChatCompletionChunk]:
        """
        Yield model chunks, either from the backend or from the executor
        override agent's ``$llm.response.stream`` output. Usage chunks are
        reported as USAGE events.
        """
        override = await self.executor_override()
        if override is None:
            stream = self.context.stream_model(request)
        else:
            gateway, input_values = override
            stream = await self._gateway_stream(gateway, input_values, request, inputs or self.inputs)

        async for chunk in stream:
            if chunk.usage is not None:
                await self.emit(
                    UsageEvent,
                    model=request.model,
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                )
            yield chunk

    async def _gateway_stream(self, gateway, input_values, request, inputs):
        plumbing = {
            ParameterType.LLM_INPUT_MESSAGES: request.messages,
            ParameterType.LLM_INPUT_TOOLS: request.tools,
            ParameterType.LLM_INPUT_TOOL_CHOICE: request.tool_choice,
            ParameterType.LLM_INPUT_RESPONSE_FORMAT: request.response_format,
        }
        gateway_inputs = {**inputs, **input_values}
        for type_, value in plumbing.items():
            parameter = gateway.parameter_of_type(type_)
            if parameter is not None and value is not None:
                gateway_inputs[parameter.key] = value

        result = await self.run_child(gateway, inputs=gateway_inputs)
        stream = (result or {}).get(RuntimeOutput.LLM_RESPONSE_STREAM.value)
        if stream is None:
            raise AgentConfigurationError(
                f"Executor agent {gateway.id} did not return a response stream",
                config_field="executor",
                agent_id=self.agent.id,
            )
        return stream
