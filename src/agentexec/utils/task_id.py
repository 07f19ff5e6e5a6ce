"""
Task id generation.

Ids are snowflake-style integers rendered as strings: milliseconds since a
fixed epoch, a per-process worker component and a sequence number that
rolls within the same millisecond. They are unique within a process and
increase monotonically, so sorting task ids sorts tasks by creation.
"""

import os
import threading
import time

_EPOCH_MS = 1_672_531_200_000  # 2023-01-01T00:00:00Z
_WORKER_BITS = 10
_SEQUENCE_BITS = 12
_MAX_SEQUENCE = (1 << _SEQUENCE_BITS) - 1


class TaskIdGenerator:
    def __init__(self, worker_id: int = None):
        if worker_id is None:
            worker_id = os.getpid()
        self.worker_id = worker_id & ((1 << _WORKER_BITS) - 1)
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    def next_id(self) -> str:
        with self._lock:
            now = int(time.time() * 1000) - _EPOCH_MS
            if now < self._last_ms:
                # Clock went backwards; keep issuing from the last timestamp.
                now = self._last_ms
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & _MAX_SEQUENCE
                if self._sequence == 0:
                    now = self._last_ms + 1
            else:
                self._sequence = 0
            self._last_ms = now
            value = (now << (_WORKER_BITS + _SEQUENCE_BITS)) | (self.worker_id << _SEQUENCE_BITS) | self._sequence
        return str(value)


_default_generator = TaskIdGenerator()


def next_task_id() -> str:
    """Return the next id from the process-wide generator."""
    return _default_generator.next_id()
