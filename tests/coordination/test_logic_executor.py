"""
Tests for the function strategy (agentexec.coordination.execution.logic_executor).

This module tests:
- Parameter bindings and the ``args`` dict
- ``print`` output as LOG events
- The ``context``, ``storage``, ``fetch``, ``run_agent`` and
  ``get_user_headers`` bindings
- Empty and rejected code
"""

from unittest.mock import AsyncMock, patch

import pytest

from agentexec.agents.definitions import VariableScope
from agentexec.agents.exceptions import AgentConfigurationError, SandboxError
from agentexec.coordination.events import LogEvent
from agentexec.coordination.execution import execute_agent
from agentexec.environment.code import SandboxConfig


def function_agent(code, **fields):
    return {"id": fields.pop("id", "fn"), "kind": "function", "code": code, **fields}


class TestBindings:
    @pytest.mark.asyncio
    async def test_parameters_and_args(self, make_context, load_agents):
        agents = load_agents(
            function_agent(
                "def main():\n    return {'sum': a + b, 'keys': sorted(args)}\n",
                parameters=[
                    {"key": "a", "type": "number"},
                    {"key": "b", "type": "number", "default_value": 10},
                ],
            )
        )

        result = await execute_agent(make_context(), agents["fn"], {"a": "5"})

        assert result == {"sum": 15, "keys": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_context_binding(self, make_context, load_agents):
        agents = load_agents(
            function_agent(
                "def main():\n"
                "    return {'user': context['user']['did'], 'session': context['session']['id'],\n"
                "            'project': context['project_id']}\n"
            )
        )

        result = await execute_agent(make_context(), agents["fn"])

        assert result == {"user": "z-user", "session": "session-1", "project": "p1"}

    @pytest.mark.asyncio
    async def test_user_headers_binding(self, make_context, load_agents):
        agents = load_agents(function_agent("def main():\n    return get_user_headers()\n"))

        result = await execute_agent(make_context(), agents["fn"])

        assert result == {"x-user-did": "z-user", "x-user-role": "owner", "x-user-fullname": "Test User"}


class TestLogs:
    @pytest.mark.asyncio
    async def test_print_becomes_log_events(self, make_context, load_agents, bus):
        agents = load_agents(
            function_agent("def main():\n    print('step', 1)\n    print({'done': True})\n    return {}\n")
        )

        await execute_agent(make_context(), agents["fn"])

        logs = bus.of_type(LogEvent)
        assert [log.message for log in logs] == ["step 1", '{\n  "done": true\n}']
        assert {log.level for log in logs} == {"info"}
        assert all(log.agent_id == "fn" for log in logs)


class TestStorage:
    @pytest.mark.asyncio
    async def test_set_and_get_item(self, make_context, load_agents):
        agents = load_agents(
            function_agent(
                "async def main():\n"
                "    await storage.set_item('Color', 'blue')\n"
                "    return {'color': await storage.get_item('color')}\n"
            )
        )
        context = make_context()

        result = await execute_agent(context, agents["fn"])

        assert result == {"color": "blue"}
        stored = await context.memory.read(
            "color", VariableScope.SESSION, project_id="p1", session_id="session-1", agent_id="fn"
        )
        assert stored == ["blue"]

    @pytest.mark.asyncio
    async def test_missing_item_is_none(self, make_context, load_agents):
        agents = load_agents(
            function_agent("async def main():\n    return {'v': await storage.get_item('nothing', 'global')}\n")
        )

        assert await execute_agent(make_context(), agents["fn"]) == {"v": None}

    @pytest.mark.asyncio
    async def test_storage_without_memory_store(self, make_context, load_agents):
        agents = load_agents(function_agent("async def main():\n    return await storage.get_item('x')\n"))

        with pytest.raises(AgentConfigurationError):
            await execute_agent(make_context(memory=None), agents["fn"])

    @pytest.mark.asyncio
    async def test_storage_exposes_no_host_state(self, make_context, load_agents):
        agents = load_agents(
            function_agent(
                "def main():\n"
                "    return [hasattr(storage, 'get_item'), hasattr(storage, 'executor'), hasattr(storage, 'context')]\n"
            )
        )

        assert await execute_agent(make_context(), agents["fn"]) == [True, False, False]

    @pytest.mark.asyncio
    async def test_private_storage_attributes_rejected(self, make_context, load_agents, secrets):
        secrets.secrets[("p1", "other", "token")] = "hunter2"
        agents = load_agents(
            function_agent(
                "async def main():\n"
                "    return await storage._executor.context.lookup_secret('token', 'other')\n"
            )
        )

        with pytest.raises(SandboxError, match="_executor"):
            await execute_agent(make_context(), agents["fn"])
        assert secrets.lookups == []


class TestFetchAndRunAgent:
    @pytest.mark.asyncio
    async def test_fetch(self, make_context, load_agents):
        agents = load_agents(
            function_agent(
                "async def main():\n"
                "    data = await fetch('https://api.example.com/items', params={'q': q})\n"
                "    return {'count': len(data['items'])}\n",
                parameters=[{"key": "q"}],
            )
        )
        send = AsyncMock(return_value={"items": [1, 2, 3]})

        with patch("agentexec.coordination.execution.logic_executor.send_http_request", new=send):
            result = await execute_agent(make_context(), agents["fn"], {"q": "cats"})

        assert result == {"count": 3}
        send.assert_awaited_once_with(
            "GET", "https://api.example.com/items", headers=None, params={"q": "cats"}, json_body=None
        )

    @pytest.mark.asyncio
    async def test_run_agent(self, make_context, load_agents, bus):
        agents = load_agents(
            function_agent(
                "async def main():\n    inner = await run_agent('helper', {'x': 2})\n    return {'y': inner['x'] * 10}\n"
            ),
            function_agent("def main():\n    return {'x': x}\n", id="helper", parameters=[{"key": "x", "type": "number"}]),
        )

        result = await execute_agent(make_context(), agents["fn"])

        assert result == {"y": 20}
        assert any(e.agent_id == "helper" and e.parent_task_id for e in bus.events)


class TestInvalidCode:
    @pytest.mark.asyncio
    async def test_empty_code(self, make_context, load_agents):
        agents = load_agents(function_agent("   "))

        with pytest.raises(AgentConfigurationError):
            await execute_agent(make_context(), agents["fn"])

    @pytest.mark.asyncio
    async def test_rejected_import(self, make_context, load_agents):
        agents = load_agents(function_agent("import os\ndef main():\n    return {}\n"))

        with pytest.raises(SandboxError):
            await execute_agent(make_context(), agents["fn"])

    @pytest.mark.asyncio
    async def test_sync_code_timeout(self, make_context, load_agents):
        agents = load_agents(function_agent("import time\ndef main():\n    time.sleep(5)\n    return {}\n"))

        with pytest.raises(SandboxError, match="timed out"):
            await execute_agent(make_context(sandbox_config=SandboxConfig(timeout_seconds=0.5)), agents["fn"])
