from .config import EngineConfig
from .event_bus import EventBus
from .events import (
    ChunkEvent,
    EventType,
    ExecuteEvent,
    ExecutionEvent,
    ExecutionPhase,
    InputEvent,
    LogEvent,
    UsageEvent,
)
from .stores import CacheStore, InMemoryCacheStore, InMemoryMemoryStore, MemoryStore
from .execution import (
    Dispatcher,
    ExecutionContext,
    ExecutorOptions,
    UserInfo,
    execute_agent,
)
from .secret_inputs import SecretRequirement, resolve_secret_inputs

__all__ = [
    "EngineConfig",
    "EventBus",
    # Events
    "ChunkEvent",
    "EventType",
    "ExecuteEvent",
    "ExecutionEvent",
    "ExecutionPhase",
    "InputEvent",
    "LogEvent",
    "UsageEvent",
    # Stores
    "CacheStore",
    "InMemoryCacheStore",
    "InMemoryMemoryStore",
    "MemoryStore",
    # Execution
    "Dispatcher",
    "ExecutionContext",
    "ExecutorOptions",
    "UserInfo",
    "execute_agent",
    "SecretRequirement",
    "resolve_secret_inputs",
]
