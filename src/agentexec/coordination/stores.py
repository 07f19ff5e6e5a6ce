"""
Collaborator interfaces for persisted memory and the result cache, plus
in-memory implementations for local runs and tests.

Production deployments implement these against their own storage service;
the engine only calls the methods defined here.
"""

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from agentexec.agents.definitions import CacheEntry, VariableScope

logger = logging.getLogger(__name__)


class MemoryStore:
    """Long-term memory: 0..n JSON values per (project, scope owner, key)."""

    async def read(
        self,
        key: str,
        scope: VariableScope,
        *,
        project_id: Optional[str],
        session_id: Optional[str],
        agent_id: str,
        user_id: Optional[str] = None,
    ) -> List[Any]:
        raise NotImplementedError

    async def write(
        self,
        key: str,
        value: Any,
        scope: VariableScope,
        *,
        project_id: Optional[str],
        session_id: Optional[str],
        agent_id: str,
        user_id: Optional[str] = None,
        reset: bool = False,
    ) -> None:
        raise NotImplementedError


class CacheStore:
    """Result cache keyed by (agent aid, cache key)."""

    async def get(self, aid: str, cache_key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def set(self, aid: str, cache_key: str, entry: CacheEntry) -> None:
        raise NotImplementedError


class InMemoryMemoryStore(MemoryStore):
    """
    Dict-backed MemoryStore.

    Values are partitioned by project and by the scope owner: the whole
    project for ``global``, the session for ``session`` and the agent for
    ``agent``. ``reset`` replaces the stored list instead of appending.
    """

    def __init__(self):
        self._values: Dict[Tuple[Optional[str], str, Optional[str], str], List[Any]] = defaultdict(list)
        self._lock = asyncio.Lock()

    @staticmethod
    def _slot(key, scope, project_id, session_id, agent_id):
        scope = VariableScope(scope)
        owner = {
            VariableScope.GLOBAL: None,
            VariableScope.SESSION: session_id,
            VariableScope.AGENT: agent_id,
        }[scope]
        return (project_id, scope.value, owner, key.lower())

    async def read(self, key, scope, *, project_id, session_id, agent_id, user_id=None):
        slot = self._slot(key, scope, project_id, session_id, agent_id)
        async with self._lock:
            return copy.deepcopy(self._values.get(slot, []))

    async def write(self, key, value, scope, *, project_id, session_id, agent_id, user_id=None, reset=False):
        slot = self._slot(key, scope, project_id, session_id, agent_id)
        async with self._lock:
            if reset:
                self._values[slot] = [copy.deepcopy(value)]
            else:
                self._values[slot].append(copy.deepcopy(value))
        logger.debug(f"Memory write {slot} (reset={reset})", extra={"agent_id": agent_id})


class InMemoryCacheStore(CacheStore):
    def __init__(self):
        self._entries: Dict[Tuple[str, str], CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, aid, cache_key):
        entry = self._entries.get((aid, cache_key))
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.model_copy(deep=True)

    async def set(self, aid, cache_key, entry):
        self._entries[(aid, cache_key)] = entry.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._entries)
