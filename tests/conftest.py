"""
Shared fakes for the execution engine tests.

- ScriptedModel: text model backend that replays queued responses and
  records every request it receives
- FakeSecretStore: ``(project_id, agent_id, key) -> secret`` lookup
- make_context: ExecutionContext wired to an in-memory registry, an EventBus
  sink and in-memory memory/cache stores
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from agentexec.agents.registry import AgentDefinitionRegistry
from agentexec.coordination.config import EngineConfig
from agentexec.coordination.event_bus import EventBus
from agentexec.coordination.execution.context import ExecutionContext, UserInfo
from agentexec.coordination.stores import InMemoryCacheStore, InMemoryMemoryStore
from agentexec.models.requests import ChatCompletionChunk


class ScriptedModel:
    """
    Text model caller replaying queued responses in order.

    A response is a string (one chunk), a list of strings/chunks, or an
    exception to raise from the stream.
    """

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.requests: List[Any] = []

    def queue(self, *responses: Any) -> "ScriptedModel":
        self.responses.extend(responses)
        return self

    def __call__(self, request):
        self.requests.append(copy.deepcopy(request))
        if not self.responses:
            raise AssertionError(f"Unexpected model call #{len(self.requests)}")
        return self._stream(self.responses.pop(0))

    @staticmethod
    async def _stream(response: Any):
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, (str, ChatCompletionChunk)):
            response = [response]
        for item in response:
            yield ChatCompletionChunk(content=item) if isinstance(item, str) else item


class FakeSecretStore:
    def __init__(self, secrets: Optional[Dict[Tuple[Optional[str], str, str], str]] = None):
        self.secrets = dict(secrets or {})
        self.lookups: List[Tuple[Optional[str], str, str]] = []

    async def __call__(self, project_id: Optional[str], agent_id: str, key: str) -> Optional[str]:
        self.lookups.append((project_id, agent_id, key))
        return self.secrets.get((project_id, agent_id, key))


@pytest.fixture
def registry():
    """Registry holding the agents under test."""
    return AgentDefinitionRegistry()


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def bus():
    """Recording event sink."""
    return EventBus()


@pytest.fixture
def secrets():
    return FakeSecretStore()


@pytest.fixture
def make_context(registry, model, bus, secrets):
    """Factory for an ExecutionContext; keyword arguments override the defaults."""

    def _make(**overrides: Any) -> ExecutionContext:
        defaults: Dict[str, Any] = dict(
            resolve_agent=registry.resolve,
            call_model=model,
            sink=bus,
            memory=InMemoryMemoryStore(),
            cache=InMemoryCacheStore(),
            get_secret=secrets,
            user=UserInfo(did="z-user", role="owner", full_name="Test User"),
            session_id="session-1",
            message_id="message-1",
            entry_project_id="p1",
            config=EngineConfig(secret_env_fallback=False),
        )
        defaults.update(overrides)
        return ExecutionContext(**defaults)

    return _make


@pytest.fixture
def load_agents(registry):
    """Register plain agent mappings under project ``p1`` and return them by id."""

    def _load(*agents: Dict[str, Any]):
        definitions = registry.load_data({"project_id": "p1", "project_ref": "main", "agents": list(agents)})
        return {d.id: d for d in definitions}

    return _load
