from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app

from stash.services.bookmarks import BookmarkService
from stash.services.conflicts import ConflictResolver
from stash.services.connectivity import ConnectivityMonitor
from stash.services.notifier import ChangeNotifier
from stash.services.offline_queue import OfflineQueue
from stash.services.records import RecordStore
from stash.services.remote import HttpRecordBackend, InMemoryRecordBackend, RecordBackend
from stash.services.sync import SyncOrchestrator

EXTENSION_KEY = "stash"


@dataclass
class Services:
    store: RecordStore
    monitor: ConnectivityMonitor
    queue: OfflineQueue
    backend: RecordBackend
    resolver: ConflictResolver
    orchestrator: SyncOrchestrator
    notifier: ChangeNotifier
    bookmarks: BookmarkService


def build_backend(app: Flask) -> RecordBackend:
    kind = (app.config.get("REMOTE_BACKEND") or "memory").strip().lower()
    if kind == "memory":
        return InMemoryRecordBackend()
    if kind == "http":
        base_url = app.config.get("REMOTE_URL")
        if not base_url:
            raise RuntimeError("REMOTE_URL is required when REMOTE_BACKEND=http")
        return HttpRecordBackend(
            base_url,
            token=app.config.get("REMOTE_TOKEN"),
            timeout=app.config.get("REMOTE_TIMEOUT", 10),
            logger=app.logger,
        )
    raise RuntimeError(f"unknown REMOTE_BACKEND: {kind}")


def init_services(app: Flask, backend: RecordBackend | None = None) -> Services:
    backend = backend or build_backend(app)
    store = RecordStore()
    monitor = ConnectivityMonitor(logger=app.logger)
    queue = OfflineQueue(max_retries=app.config.get("OFFLINE_MAX_RETRIES", 3), logger=app.logger)
    resolver = ConflictResolver(store, logger=app.logger)
    orchestrator = SyncOrchestrator(
        app,
        store,
        queue,
        monitor,
        backend,
        resolver,
        background=app.config.get("SYNC_BACKGROUND", True),
        status_reset_seconds=app.config.get("SYNC_STATUS_RESET_SECONDS", 2),
        page_size=app.config.get("SYNC_PAGE_SIZE", 200),
    )
    notifier = ChangeNotifier(backend, orchestrator.request_sync, logger=app.logger)
    services = Services(
        store=store,
        monitor=monitor,
        queue=queue,
        backend=backend,
        resolver=resolver,
        orchestrator=orchestrator,
        notifier=notifier,
        bookmarks=BookmarkService(store, queue, monitor, orchestrator, logger=app.logger),
    )
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services(app: Flask | None = None) -> Services:
    target = app or current_app
    return target.extensions[EXTENSION_KEY]
