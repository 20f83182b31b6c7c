from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime

from dateutil import parser as dt_parser
from flask import Flask, current_app, has_app_context

from stash.errors import ConflictError, RemoteUnavailableError
from stash.extensions import db
from stash.models import BookmarkRecord, SyncState, ensure_utc, utcnow
from stash.services.conflicts import Conflict, ConflictResolver, Resolution, ResolutionResult
from stash.services.connectivity import ONLINE, ConnectivityMonitor
from stash.services.events import EventEmitter
from stash.services.offline_queue import (
    AddBookmark,
    DeleteBookmark,
    DrainResult,
    Mutation,
    OfflineQueue,
    UpdateBookmark,
)
from stash.services.records import RecordStore
from stash.services.remote import SORT_MODIFIED_ASC, RecordBackend, RecordQuery

STATE_IDLE = "idle"
STATE_SYNCING = "syncing"
STATE_SUCCESS = "success"
STATE_CONFLICTS = "conflicts_detected"
STATE_ERROR = "error"

LAST_SYNC_KEY = "last_sync_date"
STATUS_EVENT = "status"


@dataclass(frozen=True)
class SyncStatus:
    state: str = STATE_IDLE
    conflicts: int = 0
    message: str | None = None

    def as_dict(self) -> dict:
        return {"state": self.state, "conflicts": self.conflicts, "message": self.message}


IDLE = SyncStatus()


@dataclass
class SyncReport:
    pushed: int = 0
    pulled: int = 0
    drained: DrainResult = field(default_factory=DrainResult)

    def as_dict(self) -> dict:
        return {"pushed": self.pushed, "pulled": self.pulled, "queue": self.drained.as_dict()}


def _chunks(values: list[str], size: int):
    for i in range(0, len(values), size):
        yield values[i : i + size]


class SyncOrchestrator:
    """Coordinates push, pull and conflict surfacing for one local store.

    Status changes are published through ``events`` as ``("status", SyncStatus)``.
    Only one cycle runs at a time; a request made while ``syncing`` is ignored.
    """

    def __init__(
        self,
        app: Flask,
        store: RecordStore,
        queue: OfflineQueue,
        monitor: ConnectivityMonitor,
        backend: RecordBackend,
        resolver: ConflictResolver,
        background: bool = True,
        status_reset_seconds: float = 2.0,
        page_size: int = 200,
    ) -> None:
        self._app = app
        self._store = store
        self._queue = queue
        self._monitor = monitor
        self._backend = backend
        self._resolver = resolver
        self._background = background
        self._status_reset_seconds = status_reset_seconds
        self._page_size = max(1, page_size)

        self.events = EventEmitter(app.logger)
        self.last_report: SyncReport | None = None
        self._status = IDLE
        self._generation = 0
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._pending: dict[str, Conflict] = {}

        monitor.subscribe(self.on_connectivity)

    # -- status -----------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self._status

    def subscribe(self, listener):
        return self.events.subscribe(listener)

    def _set_status(self, status: SyncStatus) -> None:
        with self._lock:
            self._status = status
            self._generation += 1
            generation = self._generation
        self.events.emit(STATUS_EVENT, status)
        if status.state in {STATE_SUCCESS, STATE_ERROR} and self._status_reset_seconds > 0:
            timer = threading.Timer(
                self._status_reset_seconds, self._reset_to_idle, args=(generation,)
            )
            timer.daemon = True
            timer.start()

    def _reset_to_idle(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._status = IDLE
            self._generation += 1
        self.events.emit(STATUS_EVENT, IDLE)

    def _begin(self) -> bool:
        with self._lock:
            if self._status.state == STATE_SYNCING:
                return False
            self._status = SyncStatus(STATE_SYNCING)
            self._generation += 1
        self.events.emit(STATUS_EVENT, self._status)
        return True

    # -- persisted sync cursor -------------------------------------------

    @property
    def last_sync_date(self) -> datetime | None:
        row = db.session.get(SyncState, LAST_SYNC_KEY)
        if row is None or not row.value:
            return None
        return ensure_utc(dt_parser.isoparse(row.value))

    def _store_last_sync_date(self, value: datetime) -> None:
        row = db.session.get(SyncState, LAST_SYNC_KEY)
        if row is None:
            row = SyncState(key=LAST_SYNC_KEY)
            db.session.add(row)
        row.value = ensure_utc(value).isoformat()
        db.session.commit()

    # -- execution helpers -----------------------------------------------

    def _in_context(self, func, *args):
        if has_app_context() and current_app._get_current_object() is self._app:
            return func(*args)
        with self._app.app_context():
            try:
                return func(*args)
            finally:
                db.session.remove()

    def _dispatch(self, func, name: str, *args) -> None:
        if not self._background:
            self._in_context(func, *args)
            return
        worker = threading.Thread(
            target=self._in_context,
            args=(func, *args),
            daemon=True,
            name=f"stash-{name}",
        )
        worker.start()

    # -- remote application ----------------------------------------------

    def apply_mutation(self, mutation: Mutation) -> None:
        if isinstance(mutation, (AddBookmark, UpdateBookmark)):
            self._backend.save(mutation.record)
        elif isinstance(mutation, DeleteBookmark):
            self._backend.delete(mutation.record_id)
        else:
            raise TypeError(f"unsupported mutation: {mutation!r}")

    push_mutation = apply_mutation

    def drain_queue(self) -> DrainResult:
        if not self._drain_lock.acquire(blocking=False):
            return DrainResult()
        try:
            result = self._queue.drain(
                self.apply_mutation, is_online=lambda: self._monitor.is_online
            )
        finally:
            self._drain_lock.release()
        if result.applied or result.dropped:
            self._app.logger.info(
                "Drained offline queue: %s applied, %s retrying, %s dropped",
                len(result.applied),
                len(result.retrying),
                len(result.dropped),
            )
        return result

    def request_drain(self) -> None:
        self._dispatch(self.drain_queue, "drain")

    def on_connectivity(self, event: str, _data=None) -> None:
        if event == ONLINE:
            self.request_drain()

    # -- sync cycle ------------------------------------------------------

    def pending_conflicts(self) -> list[Conflict]:
        with self._lock:
            return list(self._pending.values())

    def request_sync(self, reason: str = "manual") -> bool:
        """Start a cycle without blocking. Returns False when nothing was started."""
        if self.pending_conflicts():
            self._app.logger.debug("Sync (%s) skipped: conflicts awaiting resolution", reason)
            return False
        if not self._begin():
            self._app.logger.debug("Sync (%s) skipped: already syncing", reason)
            return False
        self._app.logger.info("Sync started (%s)", reason)
        self._dispatch(self._run_cycle, "sync")
        return True

    def sync_now(self) -> SyncStatus:
        pending = self.pending_conflicts()
        if pending:
            raise ConflictError(len(pending))
        if not self._begin():
            return self.status
        self._in_context(self._run_cycle)
        return self.status

    def _fail(self, exc: Exception) -> None:
        db.session.rollback()
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, RemoteUnavailableError):
            self._app.logger.warning("Sync failed: %s", message)
        else:
            self._app.logger.exception("Sync failed unexpectedly")
        self._set_status(SyncStatus(STATE_ERROR, message=message))

    def _run_cycle(self) -> None:
        started_at = utcnow()
        try:
            if not self._monitor.is_online:
                raise RemoteUnavailableError("offline")
            since = self.last_sync_date
            conflicts = self._detect_conflicts(since)
            if conflicts:
                with self._lock:
                    self._pending = {c.record_id: c for c in conflicts}
                self._app.logger.info("Sync halted: %s conflicts detected", len(conflicts))
                self._set_status(SyncStatus(STATE_CONFLICTS, conflicts=len(conflicts)))
                return
            self._push_and_pull(since, started_at)
        except Exception as exc:
            self._fail(exc)

    def _resume(self) -> None:
        started_at = utcnow()
        try:
            if not self._monitor.is_online:
                raise RemoteUnavailableError("offline")
            self._push_and_pull(self.last_sync_date, started_at)
        except Exception as exc:
            self._fail(exc)

    def _fetch_remote(self, ids: list[str]) -> dict[str, BookmarkRecord]:
        found: dict[str, BookmarkRecord] = {}
        for chunk in _chunks(ids, self._page_size):
            rows = self._backend.query(
                RecordQuery(ids=tuple(chunk)), sort=SORT_MODIFIED_ASC, limit=len(chunk)
            )
            for row in rows:
                found[row.id] = row
        return found

    def _detect_conflicts(self, since: datetime | None) -> list[Conflict]:
        local_changes = [
            bookmark.to_record()
            for bookmark in self._store.modified_since(since)
            if not bookmark.deleted
        ]
        if not local_changes:
            return []

        remote = self._fetch_remote([record.id for record in local_changes])
        conflicts: list[Conflict] = []
        for local in local_changes:
            theirs = remote.get(local.id)
            if theirs is None:
                continue
            if since is not None and theirs.modified_at <= since:
                continue
            if theirs.modified_at == local.modified_at or theirs.same_content(local):
                continue
            conflicts.append(Conflict(local=local, remote=theirs))
        return conflicts

    def _push_and_pull(self, since: datetime | None, started_at: datetime) -> None:
        report = SyncReport(drained=self.drain_queue())

        for bookmark in self._store.modified_since(since):
            record = bookmark.to_record()
            if record.deleted:
                self._backend.delete(record.id)
            else:
                self._backend.save(record)
            report.pushed += 1

        offset = 0
        while True:
            page = self._backend.query(
                RecordQuery(modified_after=since),
                sort=SORT_MODIFIED_ASC,
                limit=self._page_size,
                offset=offset,
            )
            for record in page:
                if self._store.apply_remote(record):
                    report.pulled += 1
            if len(page) < self._page_size:
                break
            offset += self._page_size

        self._store_last_sync_date(started_at)
        self.last_report = report
        self._app.logger.info(
            "Sync finished: %s pushed, %s pulled", report.pushed, report.pulled
        )
        self._set_status(SyncStatus(STATE_SUCCESS))

    # -- conflict resolution ---------------------------------------------

    def resolve_conflicts(self, resolutions: dict | None = None) -> ResolutionResult:
        """Resolve pending conflicts; ids missing from ``resolutions`` keep their default."""
        choices = {key: Resolution.parse(value) for key, value in (resolutions or {}).items()}
        batch = [
            replace(conflict, resolution=choices.get(conflict.record_id, conflict.resolution))
            for conflict in self.pending_conflicts()
        ]
        if not batch:
            return ResolutionResult()

        result = self._resolver.resolve(batch)
        with self._lock:
            for record_id in result.resolved:
                self._pending.pop(record_id, None)

        if result.failed:
            self._set_status(
                SyncStatus(
                    STATE_ERROR,
                    conflicts=len(result.failed),
                    message=f"Failed to resolve {len(result.failed)} conflicts",
                )
            )
            return result

        if self._begin():
            self._dispatch(self._resume, "resume")
        return result

    def resolve_all(self, strategy) -> ResolutionResult:
        resolution = Resolution.parse(strategy)
        return self.resolve_conflicts(
            {conflict.record_id: resolution for conflict in self.pending_conflicts()}
        )
