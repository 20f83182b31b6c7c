from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

import httpx
from dateutil import parser as dt_parser

from stash.errors import RemoteUnavailableError
from stash.models import BookmarkRecord, ensure_utc, utcnow

ChangeCallback = Callable[[list[str]], None]

SORT_MODIFIED_ASC = "modified_at"
SORT_MODIFIED_DESC = "-modified_at"


@dataclass(frozen=True)
class RecordQuery:
    """Predicate understood by every backend: filter by ids and/or modification time."""

    ids: tuple[str, ...] | None = None
    modified_after: datetime | None = None

    def matches(self, record: BookmarkRecord) -> bool:
        if self.ids is not None and record.id not in self.ids:
            return False
        if self.modified_after is not None and record.modified_at <= self.modified_after:
            return False
        return True


def serialize_record(record: BookmarkRecord) -> dict:
    return {
        "id": record.id,
        "url": record.url,
        "title": record.title,
        "notes": record.notes,
        "created_at": record.created_at.isoformat(),
        "modified_at": record.modified_at.isoformat(),
        "deleted": record.deleted,
    }


def deserialize_record(payload: dict) -> BookmarkRecord:
    return BookmarkRecord(
        id=str(payload["id"]),
        url=payload["url"],
        title=payload.get("title"),
        notes=payload.get("notes"),
        created_at=ensure_utc(dt_parser.isoparse(payload["created_at"])),
        modified_at=ensure_utc(dt_parser.isoparse(payload["modified_at"])),
        deleted=bool(payload.get("deleted", False)),
    )


class RecordBackend:
    """Contract the sync layer relies on. Failures raise RemoteUnavailableError."""

    def query(
        self,
        predicate: RecordQuery,
        sort: str = SORT_MODIFIED_ASC,
        limit: int = 200,
        offset: int = 0,
    ) -> list[BookmarkRecord]:
        raise NotImplementedError

    def save(self, record: BookmarkRecord) -> BookmarkRecord:
        raise NotImplementedError

    def delete(self, record_id: str) -> None:
        raise NotImplementedError

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        raise NotImplementedError


class _CallbackRegistry:
    def __init__(self) -> None:
        self._callbacks: list[ChangeCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def fire(self, record_ids: list[str]) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(record_ids)


class InMemoryRecordBackend(RecordBackend):
    """Process-local backend used for demo mode and tests.

    ``available = False`` makes every call fail the way a dropped network would.
    """

    def __init__(self, notify_on_write: bool = False) -> None:
        self.records: dict[str, BookmarkRecord] = {}
        self.available = True
        self.notify_on_write = notify_on_write
        self.calls: list[tuple[str, str | None]] = []
        self._lock = threading.Lock()
        self._callbacks = _CallbackRegistry()

    def _check(self) -> None:
        if not self.available:
            raise RemoteUnavailableError("remote backend unavailable")

    def query(self, predicate, sort=SORT_MODIFIED_ASC, limit=200, offset=0):
        self._check()
        self.calls.append(("query", None))
        with self._lock:
            rows = [r for r in self.records.values() if predicate.matches(r)]
        rows.sort(key=lambda r: (r.modified_at, r.id), reverse=sort.startswith("-"))
        return rows[offset : offset + limit]

    def save(self, record):
        self._check()
        self.calls.append(("save", record.id))
        with self._lock:
            self.records[record.id] = record
        if self.notify_on_write:
            self._callbacks.fire([record.id])
        return record

    def delete(self, record_id):
        # soft delete so other devices pull the tombstone
        self._check()
        self.calls.append(("delete", record_id))
        with self._lock:
            current = self.records.get(record_id)
            if current is not None:
                self.records[record_id] = replace(
                    current, deleted=True, modified_at=max(utcnow(), current.modified_at)
                )
        if self.notify_on_write:
            self._callbacks.fire([record_id])

    def subscribe(self, callback):
        return self._callbacks.subscribe(callback)

    def put_remote(self, record: BookmarkRecord) -> None:
        """Simulate a write made by another device; fires change callbacks."""
        with self._lock:
            self.records[record.id] = record
        self._callbacks.fire([record.id])


class HttpRecordBackend(RecordBackend):
    """Record backend reached over HTTP with bearer-token auth."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._logger = logger or logging.getLogger("stash")
        self._callbacks = _CallbackRegistry()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RemoteUnavailableError(
                f"{method} {path} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            message = str(exc).strip() or exc.__class__.__name__
            raise RemoteUnavailableError(f"{method} {path} failed: {message}") from exc
        return response

    def query(self, predicate, sort=SORT_MODIFIED_ASC, limit=200, offset=0):
        params: dict[str, object] = {"sort": sort, "limit": limit, "offset": offset}
        if predicate.ids is not None:
            if not predicate.ids:
                return []
            params["ids"] = ",".join(predicate.ids)
        if predicate.modified_after is not None:
            params["modified_after"] = predicate.modified_after.isoformat()
        response = self._request("GET", "/records", params=params)
        try:
            payload = response.json()
            rows = payload.get("records", []) if isinstance(payload, dict) else payload
            return [deserialize_record(row) for row in rows]
        except (ValueError, KeyError, TypeError) as exc:
            raise RemoteUnavailableError(f"malformed records response: {exc}") from exc

    def save(self, record):
        response = self._request(
            "PUT", f"/records/{record.id}", json=serialize_record(record)
        )
        try:
            return deserialize_record(response.json())
        except (ValueError, KeyError, TypeError):
            return record

    def delete(self, record_id):
        self._request("DELETE", f"/records/{record_id}")

    def subscribe(self, callback):
        return self._callbacks.subscribe(callback)

    def close(self) -> None:
        self._client.close()
