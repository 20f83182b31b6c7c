from __future__ import annotations

import logging
from dataclasses import dataclass

from stash.errors import RemoteUnavailableError
from stash.models import Bookmark
from stash.services.connectivity import ConnectivityMonitor
from stash.services.offline_queue import (
    AddBookmark,
    DeleteBookmark,
    Mutation,
    OfflineQueue,
    UpdateBookmark,
)
from stash.services.records import RecordStore
from stash.services.sync import SyncOrchestrator

DELIVERY_SYNCED = "synced"
DELIVERY_QUEUED = "queued"


@dataclass
class MutationResult:
    bookmark: Bookmark
    delivery: str

    def as_dict(self) -> dict:
        payload = self.bookmark.as_dict()
        payload["delivery"] = self.delivery
        return payload


class BookmarkService:
    """Interactive add/update/delete: commit locally, then push or queue."""

    def __init__(
        self,
        store: RecordStore,
        queue: OfflineQueue,
        monitor: ConnectivityMonitor,
        orchestrator: SyncOrchestrator,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self._queue = queue
        self._monitor = monitor
        self._orchestrator = orchestrator
        self._logger = logger or logging.getLogger("stash")

    def _deliver(self, mutation: Mutation) -> str:
        if not self._monitor.is_online:
            self._queue.enqueue(mutation)
            return DELIVERY_QUEUED
        try:
            self._orchestrator.push_mutation(mutation)
        except RemoteUnavailableError:
            if not self._monitor.is_online:
                self._queue.enqueue(mutation)
                return DELIVERY_QUEUED
            self._logger.warning(
                "Push of %s for bookmark %s failed while online",
                mutation.kind,
                mutation.record_id,
            )
            raise
        return DELIVERY_SYNCED

    def add(self, url: str, title: str | None = None, notes: str | None = None) -> MutationResult:
        bookmark = self.store.create(url, title=title, notes=notes)
        delivery = self._deliver(AddBookmark(record=bookmark.to_record()))
        return MutationResult(bookmark, delivery)

    def update(
        self, record_id: str, title: str | None = None, notes: str | None = None
    ) -> MutationResult:
        bookmark = self.store.update(record_id, title=title, notes=notes)
        delivery = self._deliver(UpdateBookmark(record=bookmark.to_record()))
        return MutationResult(bookmark, delivery)

    def delete(self, record_id: str) -> MutationResult:
        bookmark = self.store.soft_delete(record_id)
        deleted_at = bookmark.to_record().modified_at
        delivery = self._deliver(DeleteBookmark(record_id=bookmark.id, deleted_at=deleted_at))
        return MutationResult(bookmark, delivery)

    def get(self, record_id: str) -> Bookmark:
        return self.store.get(record_id)

    def search(self, query: str = "", offset: int = 0, limit: int = 50) -> list[Bookmark]:
        return self.store.search(query, offset=offset, limit=limit)

    def count(self, query: str = "") -> int:
        return self.store.count(query)
