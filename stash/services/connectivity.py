from __future__ import annotations

import logging
import threading

import httpx

from stash.services.events import EventEmitter

ONLINE = "online"
OFFLINE = "offline"


class ConnectivityMonitor:
    """Two-state online/offline tracker fed by a reachability signal.

    Emits ``"online"`` or ``"offline"`` only when the state actually changes.
    """

    def __init__(self, initially_online: bool = True, logger: logging.Logger | None = None):
        self._online = initially_online
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("stash")
        self.events = EventEmitter(self._logger)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def state(self) -> str:
        return ONLINE if self._online else OFFLINE

    def subscribe(self, listener):
        return self.events.subscribe(listener)

    def set_reachable(self, reachable: bool) -> bool:
        """Record a reachability signal. Returns True when it caused a transition."""
        with self._lock:
            if self._online == bool(reachable):
                return False
            self._online = bool(reachable)
            event = self.state
        self._logger.info("Connectivity changed: %s", event)
        self.events.emit(event, event)
        return True

    def probe(self, url: str, timeout: float = 5.0) -> bool:
        try:
            with httpx.Client(follow_redirects=True, timeout=timeout) as client:
                response = client.head(url)
            reachable = response.status_code < 500
        except httpx.HTTPError as exc:
            self._logger.debug("Connectivity probe to %s failed: %s", url, exc)
            reachable = False
        self.set_reachable(reachable)
        return reachable
