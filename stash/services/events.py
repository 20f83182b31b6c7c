from __future__ import annotations

import logging
import threading
from typing import Callable

Listener = Callable[[str, object], None]


class EventEmitter:
    """Callback registry shared by the monitor, the queue and the orchestrator.

    Listeners are called synchronously on the emitting thread. A listener that
    raises is logged and does not stop delivery to the others.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("stash")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, data: object = None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, data)
            except Exception:
                self._logger.exception("Listener failed handling %s event", event)
