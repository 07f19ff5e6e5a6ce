"""
Composition strategies: run a fixed list of sub-agents sequentially
(call-agent) or concurrently (parallel-call).
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from agentexec.agents.definitions import (
    BaseAgentDefinition,
    CallAgent,
    OutputFrom,
    OutputVariable,
    ParallelCallAgent,
    Route,
    RuntimeOutput,
)
from agentexec.agents.exceptions import AgentConfigurationError
from agentexec.utils.concurrency import gather_all
from agentexec.utils.templates import render_template

from .base import AgentExecutorBase

logger = logging.getLogger(__name__)


def lookup_path(scope: Any, path: str) -> Any:
    """Walk a dotted ``path`` through dicts (and list indexes); None when absent."""
    current = scope
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def find_output_by_id(variables: List[OutputVariable], output_id: str) -> Optional[OutputVariable]:
    return next((v for v in variables if v.id == output_id), None)


class _CompositionMixin:
    """Helpers shared by the sequential and parallel composition strategies."""

    async def called_agents(self) -> List[Tuple[Route, BaseAgentDefinition]]:
        routes = self.agent.agents
        if not routes:
            raise AgentConfigurationError(
                "Must choose an agent to execute",
                config_field="agents",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )
        targets = await gather_all(*(self.get_agent(r.reference, required=True) for r in routes))
        return list(zip(routes, targets))

    def text_source(self, called: List[Tuple[Route, BaseAgentDefinition]]) -> Optional[int]:
        """Index of the last sub-agent producing ``$text``, if this agent streams text."""
        text = RuntimeOutput.TEXT.value
        if not self.agent.has_output(text):
            return None
        indexes = [i for i, (_, target) in enumerate(called) if target.has_output(text)]
        return indexes[-1] if indexes else None

    def route_inputs(self, route: Route, inputs: Dict[str, Any], scope: Dict[str, Any]) -> Dict[str, Any]:
        variables = self.template_variables(scope)
        rendered = {
            key: render_template(value, variables) if isinstance(value, str) and value else value
            for key, value in route.parameters.items()
        }
        for key, value in rendered.items():
            if value in (None, ""):
                rendered[key] = inputs.get(key, "")
        return {**inputs, **rendered}

    def pick_output(
        self,
        binding: OutputFrom,
        scope: Dict[str, Any],
        called: List[Tuple[Route, BaseAgentDefinition]],
        results: List[Any],
    ) -> Any:
        """Value of an output bound to a sub-agent result."""
        if not binding.id:
            return lookup_path(scope, binding.path) if binding.path else None

        for (_, target), result in zip(called, results):
            variable = find_output_by_id(target.output_variables, binding.id)
            if variable is None or not isinstance(result, dict):
                continue
            value = result.get(variable.name)
            for property_id in (binding.path or "").split("."):
                if not property_id:
                    continue
                variable = find_output_by_id(variable.properties, property_id) if variable else None
                if variable is None or not isinstance(value, dict):
                    return None
                value = value.get(variable.name)
            return value
        return None

    def assemble_outputs(
        self,
        scope: Dict[str, Any],
        called: List[Tuple[Route, BaseAgentDefinition]],
        results: List[Any],
    ) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for result in results:
            if isinstance(result, dict):
                merged.update(result)

        outputs = {}
        for output in self.agent.visible_outputs:
            if output.from_ is not None and output.from_.type == "output":
                outputs[output.name] = self.pick_output(output.from_, scope, called, results)
            elif output.from_ is None:
                outputs[output.name] = merged.get(output.name)
        return outputs


class CallAgentExecutor(_CompositionMixin, AgentExecutorBase):
    """
    Runs sub-agents one after another.

    Each result is stored in the scope under the route's function name, so
    later sub-agents (and output bindings such as ``"a.value"``) can refer to
    earlier results.
    """

    agent: CallAgent

    async def process(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        called = await self.called_agents()
        text_source = self.text_source(called)

        scope: Dict[str, Any] = {}
        results: List[Any] = []
        for index, (route, target) in enumerate(called):
            result = await self.run_child(
                target,
                inputs=self.route_inputs(route, inputs, scope),
                variables={**inputs, **scope},
                forward_text=index == text_source,
            )
            scope[route.function_name or route.id] = result
            results.append(result)

        if not self.agent.visible_outputs:
            return scope
        return self.assemble_outputs(scope, called, results)


class ParallelCallExecutor(_CompositionMixin, AgentExecutorBase):
    """Runs sub-agents concurrently and returns the list of their results."""

    agent: ParallelCallAgent

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._called: List[Tuple[Route, BaseAgentDefinition]] = []

    async def process(self, inputs: Dict[str, Any]) -> List[Any]:
        called = await self.called_agents()
        text_source = self.text_source(called)

        results = await gather_all(
            *(
                self.run_child(
                    target,
                    inputs=self.route_inputs(route, inputs, {}),
                    forward_text=index == text_source,
                )
                for index, (route, target) in enumerate(called)
            )
        )
        self._called = called
        logger.info(f"Parallel call finished {len(results)} sub-agent(s)", extra={"agent_id": self.agent.id})
        return list(results)

    def outputs_object(self, raw: Any) -> Dict[str, Any]:
        if not isinstance(raw, list):
            return super().outputs_object(raw)
        called = self._called
        scope = {route.function_name or route.id: result for (route, _), result in zip(called, raw)}
        return self.assemble_outputs(scope, called, raw)
