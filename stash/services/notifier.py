from __future__ import annotations

import logging
from typing import Callable

from stash.services.remote import RecordBackend


class ChangeNotifier:
    """Turns "remote store changed" signals into refresh requests."""

    def __init__(
        self,
        backend: RecordBackend,
        refresh: Callable[[str], object],
        logger: logging.Logger | None = None,
    ) -> None:
        self._refresh = refresh
        self._logger = logger or logging.getLogger("stash")
        backend.subscribe(self.notify)

    def notify(self, record_ids: list[str] | None = None) -> None:
        self._logger.debug("Remote change notification for %s", record_ids or "all records")
        self._refresh("remote-change")
