"""
Tests for the composition strategies (agentexec.coordination.execution.call_executor).

This module tests:
- Sequential call-agent scope and dotted output bindings
- Output bindings by sub-agent output id
- Parallel-call result lists and sibling cancellation on failure
- Text forwarding from the last text-producing sub-agent
"""

import asyncio
import json

import pytest

from agentexec.agents.definitions import OutputVariable, ParallelCallAgent
from agentexec.agents.exceptions import AgentConfigurationError, AgentNotFoundError, ModelError
from agentexec.coordination.events import ChunkEvent, ExecuteEvent, ExecutionPhase
from agentexec.coordination.execution import execute_agent
from agentexec.coordination.execution.base import ExecutorOptions
from agentexec.coordination.execution.call_executor import ParallelCallExecutor, find_output_by_id, lookup_path
from agentexec.models.requests import ChatCompletionChunk

DOUBLE = {
    "id": "double",
    "kind": "function",
    "code": "def main():\n    return {'value': n * 2}\n",
    "parameters": [{"key": "n", "type": "number"}],
    "output_variables": [{"id": "out-value", "name": "value", "type": "number"}],
}

INC = {
    "id": "inc",
    "kind": "function",
    "code": "def main():\n    return {'value': n + 1}\n",
    "parameters": [{"key": "n", "type": "number"}],
    "output_variables": [{"name": "value", "type": "number"}],
}


def root_task_id(bus):
    return bus.events[0].task_id


class PromptRoutedModel:
    """Model caller failing for prompts mentioning ``Bad`` and streaming slowly otherwise."""

    def __call__(self, request):
        return self._stream(json.dumps(request.messages))

    @staticmethod
    async def _stream(prompt):
        if "Bad" in prompt:
            raise RuntimeError("model down")
        for piece in ["a", "b", "c"]:
            await asyncio.sleep(0.1)
            yield ChatCompletionChunk(content=piece)


class TestLookupPath:
    def test_nested(self):
        assert lookup_path({"a": {"b": [10, {"c": 3}]}}, "a.b.1.c") == 3

    def test_missing(self):
        assert lookup_path({"a": 1}, "a.b") is None
        assert lookup_path({"a": [1]}, "a.5") is None

    def test_find_output_by_id(self):
        variables = [OutputVariable(id="x", name="first"), OutputVariable(name="second")]

        assert find_output_by_id(variables, "x").name == "first"
        assert find_output_by_id(variables, "second").name == "second"
        assert find_output_by_id(variables, "nope") is None


# =============================================================================
# Call Agent
# =============================================================================


class TestCallAgent:
    @pytest.mark.asyncio
    async def test_sequential_scope_and_path_binding(self, make_context, load_agents):
        agents = load_agents(
            {
                "id": "pipeline",
                "kind": "call-agent",
                "parameters": [{"key": "n", "type": "number"}],
                "agents": [
                    {"id": "double", "function_name": "a", "parameters": {"n": "{{ n }}"}},
                    {"id": "inc", "function_name": "b", "parameters": {"n": "{{ a.value }}"}},
                ],
                "output_variables": [{"name": "result", "type": "number", "from": {"type": "output", "path": "b.value"}}],
            },
            DOUBLE,
            INC,
        )

        result = await execute_agent(make_context(), agents["pipeline"], {"n": 3})

        assert result == {"result": 7}

    @pytest.mark.asyncio
    async def test_scope_returned_without_outputs(self, make_context, load_agents):
        agents = load_agents(
            {
                "id": "pipeline",
                "kind": "call-agent",
                "agents": [{"id": "double", "function_name": "a"}, {"id": "inc"}],
            },
            DOUBLE,
            INC,
        )

        result = await execute_agent(make_context(), agents["pipeline"], {"n": 1})

        assert result == {"a": {"value": 2}, "inc": {"value": 2}}

    @pytest.mark.asyncio
    async def test_binding_by_output_id(self, make_context, load_agents):
        agents = load_agents(
            {
                "id": "pipeline",
                "kind": "call-agent",
                "agents": [{"id": "double"}],
                "output_variables": [{"name": "doubled", "type": "number", "from": {"type": "output", "id": "out-value"}}],
            },
            DOUBLE,
        )

        assert await execute_agent(make_context(), agents["pipeline"], {"n": 5}) == {"doubled": 10}

    @pytest.mark.asyncio
    async def test_unbound_outputs_merged_from_results(self, make_context, load_agents):
        agents = load_agents(
            {
                "id": "pipeline",
                "kind": "call-agent",
                "agents": [{"id": "double"}],
                "output_variables": [{"name": "value", "type": "number"}],
            },
            DOUBLE,
        )

        assert await execute_agent(make_context(), agents["pipeline"], {"n": 4}) == {"value": 8}

    @pytest.mark.asyncio
    async def test_no_agents(self, make_context, load_agents):
        agents = load_agents({"id": "pipeline", "kind": "call-agent"})

        with pytest.raises(AgentConfigurationError):
            await execute_agent(make_context(), agents["pipeline"])

    @pytest.mark.asyncio
    async def test_missing_sub_agent(self, make_context, load_agents):
        agents = load_agents({"id": "pipeline", "kind": "call-agent", "agents": [{"id": "ghost"}]})

        with pytest.raises(AgentNotFoundError):
            await execute_agent(make_context(), agents["pipeline"])

    @pytest.mark.asyncio
    async def test_text_forwarded_from_last_text_agent(self, make_context, load_agents, model, bus):
        agents = load_agents(
            {
                "id": "story",
                "kind": "call-agent",
                "agents": [{"id": "draft"}, {"id": "polish"}],
                "output_variables": [{"name": "$text"}],
            },
            {"id": "draft", "kind": "llm-prompt", "prompt": "Draft", "output_variables": [{"name": "$text"}]},
            {"id": "polish", "kind": "llm-prompt", "prompt": "Polish", "output_variables": [{"name": "$text"}]},
        )
        model.queue("rough", ["shi", "ny"])

        result = await execute_agent(make_context(), agents["story"])

        assert result == {"$text": "shiny"}
        root = root_task_id(bus)
        deltas = [e.content for e in bus.for_task(root) if isinstance(e, ChunkEvent) and e.content and e.agent_id == "story"]
        assert deltas == ["shi", "ny"]


# =============================================================================
# Parallel Call
# =============================================================================


class TestParallelCall:
    @pytest.mark.asyncio
    async def test_returns_list_in_route_order(self, make_context, load_agents, bus):
        agents = load_agents(
            {"id": "fanout", "kind": "parallel-call", "agents": [{"id": "double"}, {"id": "inc"}]},
            DOUBLE,
            INC,
        )

        result = await execute_agent(make_context(), agents["fanout"], {"n": 1})

        assert result == [{"value": 2}, {"value": 2}]
        assert bus.of_type(ChunkEvent)[-1].object == {"result": result}

    @pytest.mark.asyncio
    async def test_outputs_assembled_from_list(self, make_context, load_agents):
        agents = load_agents(
            {
                "id": "fanout",
                "kind": "parallel-call",
                "agents": [{"id": "double", "function_name": "d"}, {"id": "inc", "function_name": "i"}],
                "output_variables": [
                    {"name": "doubled", "type": "number", "from": {"type": "output", "path": "d.value"}},
                    {"name": "incremented", "type": "number", "from": {"type": "output", "path": "i.value"}},
                ],
            },
            DOUBLE,
            INC,
        )

        result = await execute_agent(make_context(), agents["fanout"], {"n": 10})

        assert result == {"doubled": 20, "incremented": 11}

    def test_called_agents_per_executor(self, make_context):
        agent = ParallelCallAgent(id="fanout")
        first = ParallelCallExecutor(make_context(), agent, ExecutorOptions())
        second = ParallelCallExecutor(make_context(), agent, ExecutorOptions())

        first._called.append(("route", "target"))

        assert second._called == []

    @pytest.mark.asyncio
    async def test_failure_cancels_siblings_before_end(self, make_context, load_agents, bus):
        agents = load_agents(
            {"id": "fanout", "kind": "parallel-call", "agents": [{"id": "bad"}, {"id": "slow"}]},
            {"id": "bad", "kind": "llm-prompt", "prompt": "Bad", "output_variables": [{"name": "$text"}]},
            {"id": "slow", "kind": "llm-prompt", "prompt": "Slow", "output_variables": [{"name": "$text"}]},
        )

        with pytest.raises(ModelError):
            await execute_agent(make_context(call_model=PromptRoutedModel()), agents["fanout"])
        seen = len(bus.events)
        await asyncio.sleep(0.5)

        assert len(bus.events) == seen
        fanout_end = max(
            i
            for i, e in enumerate(bus.events)
            if e.agent_id == "fanout" and isinstance(e, ExecuteEvent) and e.phase == ExecutionPhase.END
        )
        slow_events = [i for i, e in enumerate(bus.events) if e.agent_id == "slow"]
        assert slow_events and max(slow_events) < fanout_end
        assert not [e for e in bus.events if e.agent_id == "slow" and isinstance(e, ChunkEvent) and e.content]
