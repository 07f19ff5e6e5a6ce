"""
Event bus for execution events.

An EventBus instance can be passed directly as the event sink of an
ExecutionContext: it records every event and fans it out to listeners
subscribed by event class name (``"ChunkEvent"``) or by event type
(``EventType.CHUNK``).
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Union

from .events import EventType, ExecuteEvent, ExecutionEvent, ExecutionPhase

logger = logging.getLogger(__name__)


class EventBus:
    """
    Recording, fan-out event sink.

    Listeners may be plain or async callables. A listener that keeps failing
    is removed after ``max_listener_errors`` errors; listener errors never
    reach the task that emitted the event.
    """

    def __init__(self, max_listener_errors: int = 5):
        self.events: List[ExecutionEvent] = []
        self.listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._listener_errors: Dict[str, int] = defaultdict(int)
        self._max_listener_errors = max_listener_errors

    async def emit(self, event: ExecutionEvent) -> None:
        """
        Record an event and notify its listeners.

        Args:
            event: The event object to emit
        """
        self.events.append(event)

        keys = [type(event).__name__, event.event_type.value, "*"]
        for key in keys:
            for listener in list(self.listeners.get(key, [])):
                try:
                    result = listener(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    listener_id = f"{key}:{id(listener)}"
                    self._listener_errors[listener_id] += 1
                    logger.error(f"Error in event listener for {key}: {e}")

                    if self._listener_errors[listener_id] >= self._max_listener_errors:
                        logger.warning(
                            f"Removing failing listener for {key} after {self._max_listener_errors} errors"
                        )
                        self.listeners[key].remove(listener)

    __call__ = emit

    @staticmethod
    def _key(event_type: Union[str, EventType, type]) -> str:
        if isinstance(event_type, type):
            return event_type.__name__
        return event_type.value if isinstance(event_type, EventType) else event_type

    def subscribe(self, event_type: Union[str, EventType], listener: Callable) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event class name, EventType, or ``"*"`` for all events
            listener: Callable (sync or async) to handle events
        """
        key = self._key(event_type)
        if listener not in self.listeners[key]:
            self.listeners[key].append(listener)
            logger.debug(f"Subscribed listener to {key}")

    def unsubscribe(self, event_type: Union[str, EventType], listener: Callable) -> None:
        key = self._key(event_type)
        if listener in self.listeners.get(key, []):
            self.listeners[key].remove(listener)
            logger.debug(f"Unsubscribed listener from {key}")

    def clear_listeners(self, event_type: Optional[Union[str, EventType]] = None) -> None:
        if event_type is not None:
            self.listeners.pop(self._key(event_type), None)
        else:
            self.listeners.clear()
            self._listener_errors.clear()

    def clear_events(self) -> None:
        self.events.clear()

    # --- Queries used by callers and tests ---

    def for_task(self, task_id: str) -> List[ExecutionEvent]:
        return [e for e in self.events if e.task_id == task_id]

    def of_type(self, event_type: Union[str, EventType, type]) -> List[ExecutionEvent]:
        key = self._key(event_type)
        return [e for e in self.events if e.event_type.value == key or type(e).__name__ == key]

    def phases(self, task_id: str) -> List[ExecutionPhase]:
        return [e.phase for e in self.for_task(task_id) if isinstance(e, ExecuteEvent)]

    def text(self, task_id: str) -> str:
        """Concatenated text deltas emitted for ``task_id``."""
        return "".join(
            e.content for e in self.for_task(task_id) if e.event_type == EventType.CHUNK and e.content
        )

    def get_event_count(self, event_type: Optional[Union[str, EventType]] = None) -> int:
        if event_type is None:
            return len(self.events)
        return len(self.of_type(event_type))

    def get_listener_count(self, event_type: Optional[Union[str, EventType]] = None) -> int:
        if event_type is not None:
            return len(self.listeners.get(self._key(event_type), []))
        return sum(len(listeners) for listeners in self.listeners.values())

    def summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = defaultdict(int)
        for e in self.events:
            counts[e.event_type.value] += 1
        return dict(counts)
