"""
Function strategy: runs the agent's Python code in the sandbox.

The code must define a callable ``main()``; its return value is the agent's
output object. Resolved parameters are available both as top-level names and
as the ``args`` dict. ``print`` output becomes LOG events. The helper
bindings (``fetch``, ``run_agent``, ``storage``, ``get_user_headers``) are
plain host functions called back from the sandbox process.
"""

import logging
from types import SimpleNamespace
from typing import Any, Dict, Optional

from agentexec.agents.definitions import AgentReference, FunctionAgent, VariableScope
from agentexec.agents.exceptions import AgentConfigurationError
from agentexec.coordination.events import LogEvent
from agentexec.environment.code import CodeSandbox

from .api_executor import send_http_request
from .base import AgentExecutorBase

logger = logging.getLogger(__name__)


class LogicExecutor(AgentExecutorBase):
    agent: FunctionAgent

    def sandbox_context(self) -> Dict[str, Any]:
        context = self.context
        return {
            "user": context.user.to_dict() if context.user else None,
            "session": {"id": context.session_id},
            "message_id": context.message_id,
            "client_time": context.client_time,
            "project_id": context.entry_project_id,
        }

    def storage(self) -> SimpleNamespace:
        """``storage`` binding: memory-store access scoped to the running agent."""

        def memory():
            if self.context.memory is None:
                raise AgentConfigurationError(
                    "storage is not available: no memory store is configured",
                    config_field="memory",
                    agent_id=self.agent.id,
                )
            return self.context.memory

        async def get_item(key: str, scope: str = "session") -> Any:
            values = await memory().read(key.lower(), VariableScope(scope), **self.memory_kwargs())
            if not values:
                return None
            return values[0] if len(values) == 1 else values

        async def set_item(key: str, value: Any, scope: str = "session", reset: bool = True) -> None:
            await memory().write(key.lower(), value, VariableScope(scope), reset=reset, **self.memory_kwargs())

        return SimpleNamespace(get_item=get_item, set_item=set_item)

    def bindings(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        args = {
            p.key: inputs.get(p.key) or p.default_value
            for p in self.agent.parameters
            if not p.hidden
        }

        async def fetch(
            url: str,
            method: str = "GET",
            headers: Optional[Dict[str, str]] = None,
            params: Optional[Dict[str, Any]] = None,
            json: Any = None,
        ) -> Any:
            return await send_http_request(method, url, headers=headers, params=params, json_body=json)

        async def run_agent(agent_id: str, inputs: Optional[Dict[str, Any]] = None) -> Any:
            agent = await self.get_agent(AgentReference(agent_id=agent_id), required=True)
            return await self.run_child(agent, inputs=inputs or {})

        def get_user_headers() -> Dict[str, str]:
            return self.context.user_headers()

        return {
            **args,
            "args": dict(args),
            "context": self.sandbox_context(),
            "fetch": fetch,
            "run_agent": run_agent,
            "storage": self.storage(),
            "get_user_headers": get_user_headers,
        }

    async def process(self, inputs: Dict[str, Any]) -> Any:
        if not (self.agent.code or "").strip():
            raise AgentConfigurationError(
                f"Agent {self.agent.id}'s code is empty",
                config_field="code",
                agent_id=self.agent.id,
                task_id=self.task_id,
            )

        async def on_log(line: str, level: str) -> None:
            await self.emit(LogEvent, message=line, level=level)

        sandbox = CodeSandbox(self.context.sandbox_config)
        return await sandbox.run(self.agent.code, self.bindings(inputs), on_log=on_log, agent_id=self.agent.id)
