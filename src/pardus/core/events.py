"""In-process publish/subscribe for task and log updates."""

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

TASK_UPDATE = "task:update"
TASK_CREATED = "task:created"
TASK_COMPLETED = "task:completed"
TASK_FAILED = "task:failed"
LOG_STREAM = "log:stream"
QUEUE_EMPTY = "queue:empty"

Listener = Callable[[Any], None]


class EventBus:
    """Thread-safe event emitter.

    Listeners run synchronously on the emitting thread. A listener that raises
    is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, listener: Listener):
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener):
        with self._lock:
            listeners = self._listeners.get(event)
            if listeners and listener in listeners:
                listeners.remove(listener)

    def emit(self, event: str, data: Any = None):
        with self._lock:
            listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(data)
            except Exception:
                logger.exception("Listener for %s failed", event)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, ()))

    def clear(self, event: str | None = None):
        with self._lock:
            if event:
                self._listeners.pop(event, None)
            else:
                self._listeners.clear()
