"""
Execution event definitions.

Every event is correlated to one task id of the call tree. Events are only
produced here; consumers (UI, HTTP layer, tests) subscribe via the sink
passed into the ExecutionContext.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional
import time
import uuid


class EventType(str, Enum):
    INPUT = "input"
    EXECUTE = "execute"
    CHUNK = "chunk"
    USAGE = "usage"
    LOG = "log"


class ExecutionPhase(str, Enum):
    RUNNING = "running"
    END = "end"
    STOP = "stop"


@dataclass
class ExecutionEvent:
    """Base class for all execution events."""
    EVENT_TYPE: ClassVar[EventType]

    task_id: str
    parent_task_id: Optional[str] = field(default=None, kw_only=True)
    agent_id: Optional[str] = field(default=None, kw_only=True)
    agent_name: Optional[str] = field(default=None, kw_only=True)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)
    timestamp: float = field(default_factory=time.time, kw_only=True)

    @property
    def event_type(self) -> EventType:
        return self.EVENT_TYPE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.EVENT_TYPE.value
        return data


@dataclass
class InputEvent(ExecutionEvent):
    """Raw caller inputs (secrets masked), plus rendered prompts for model strategies."""
    EVENT_TYPE: ClassVar[EventType] = EventType.INPUT
    inputs: Dict[str, Any] = field(default_factory=dict)
    prompt_messages: Optional[List[Dict[str, Any]]] = None


@dataclass
class ExecuteEvent(ExecutionEvent):
    """Task phase change; END carries error details when the task failed."""
    EVENT_TYPE: ClassVar[EventType] = EventType.EXECUTE
    phase: ExecutionPhase
    error: Optional[Dict[str, Any]] = None


@dataclass
class ChunkEvent(ExecutionEvent):
    """Incremental output: a text delta, a (partial or full) output object, or images."""
    EVENT_TYPE: ClassVar[EventType] = EventType.CHUNK
    content: Optional[str] = None
    object: Optional[Dict[str, Any]] = None
    images: Optional[List[Dict[str, Any]]] = None


@dataclass
class UsageEvent(ExecutionEvent):
    """Token usage reported by a model call."""
    EVENT_TYPE: ClassVar[EventType] = EventType.USAGE
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class LogEvent(ExecutionEvent):
    """Log line produced by sandboxed user code."""
    EVENT_TYPE: ClassVar[EventType] = EventType.LOG
    message: str = ""
    level: str = "info"
