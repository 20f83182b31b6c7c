from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ClassVar, Union

from dateutil import parser as dt_parser

from stash.extensions import db
from stash.models import BookmarkRecord, OfflineOperationRow, ensure_utc, utcnow
from stash.services.events import EventEmitter
from stash.services.remote import deserialize_record, serialize_record

DEFAULT_MAX_RETRIES = 3

OPERATION_SYNCED = "operation_synced"
OPERATION_FAILED = "operation_failed"


@dataclass(frozen=True)
class AddBookmark:
    kind: ClassVar[str] = "add"
    record: BookmarkRecord

    @property
    def record_id(self) -> str:
        return self.record.id

    def to_payload(self) -> dict:
        return {"record": serialize_record(self.record)}


@dataclass(frozen=True)
class UpdateBookmark:
    kind: ClassVar[str] = "update"
    record: BookmarkRecord

    @property
    def record_id(self) -> str:
        return self.record.id

    def to_payload(self) -> dict:
        return {"record": serialize_record(self.record)}


@dataclass(frozen=True)
class DeleteBookmark:
    kind: ClassVar[str] = "delete"
    record_id: str
    deleted_at: datetime

    def to_payload(self) -> dict:
        return {"record_id": self.record_id, "deleted_at": self.deleted_at.isoformat()}


Mutation = Union[AddBookmark, UpdateBookmark, DeleteBookmark]


def decode_mutation(kind: str, payload: dict) -> Mutation:
    if kind == AddBookmark.kind:
        return AddBookmark(record=deserialize_record(payload["record"]))
    if kind == UpdateBookmark.kind:
        return UpdateBookmark(record=deserialize_record(payload["record"]))
    if kind == DeleteBookmark.kind:
        return DeleteBookmark(
            record_id=payload["record_id"],
            deleted_at=ensure_utc(dt_parser.isoparse(payload["deleted_at"])),
        )
    raise ValueError(f"unknown offline operation kind: {kind}")


@dataclass
class OfflineOperation:
    id: str
    mutation: Mutation
    enqueued_at: datetime
    retry_count: int = 0
    last_error: str | None = None

    @property
    def kind(self) -> str:
        return self.mutation.kind

    @property
    def record_id(self) -> str:
        return self.mutation.record_id

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "record_id": self.record_id,
            "payload": self.mutation.to_payload(),
            "enqueued_at": self.enqueued_at.isoformat(),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }


@dataclass
class DrainResult:
    applied: list[str] = field(default_factory=list)
    retrying: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "applied": len(self.applied),
            "retrying": len(self.retrying),
            "dropped": len(self.dropped),
            "deferred": len(self.deferred),
        }


def _from_row(row: OfflineOperationRow) -> OfflineOperation:
    return OfflineOperation(
        id=row.id,
        mutation=decode_mutation(row.kind, row.payload or {}),
        enqueued_at=ensure_utc(row.enqueued_at),
        retry_count=row.retry_count,
        last_error=row.last_error,
    )


class OfflineQueue:
    """Durable FIFO of mutations waiting to reach the remote backend."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: logging.Logger | None = None,
    ) -> None:
        self.max_retries = max(1, int(max_retries))
        self._logger = logger or logging.getLogger("stash")
        self.events = EventEmitter(self._logger)

    def subscribe(self, listener):
        return self.events.subscribe(listener)

    def enqueue(self, mutation: Mutation) -> OfflineOperation:
        row = OfflineOperationRow(
            kind=mutation.kind,
            record_id=mutation.record_id,
            payload=mutation.to_payload(),
            enqueued_at=utcnow(),
            retry_count=0,
        )
        db.session.add(row)
        db.session.commit()
        self._logger.info(
            "Queued offline %s for bookmark %s", mutation.kind, mutation.record_id
        )
        return _from_row(row)

    def _rows(self) -> list[OfflineOperationRow]:
        return OfflineOperationRow.query.order_by(OfflineOperationRow.seq.asc()).all()

    def pending(self) -> list[OfflineOperation]:
        return [_from_row(row) for row in self._rows()]

    def __len__(self) -> int:
        return OfflineOperationRow.query.count()

    def clear(self) -> int:
        removed = OfflineOperationRow.query.delete()
        db.session.commit()
        return removed

    def drain(
        self,
        apply: Callable[[Mutation], object],
        is_online: Callable[[], bool] = lambda: True,
    ) -> DrainResult:
        """Apply queued mutations oldest first.

        Once an operation for a record fails, later operations for the same
        record wait for the next drain so they never overtake it.
        """
        result = DrainResult()
        blocked: set[str] = set()

        for row in self._rows():
            if not is_online():
                break
            if row.record_id in blocked:
                result.deferred.append(row.id)
                continue

            operation = _from_row(row)
            try:
                apply(operation.mutation)
            except Exception as exc:
                blocked.add(row.record_id)
                row.retry_count = (row.retry_count or 0) + 1
                row.last_error = str(exc)[:500] or exc.__class__.__name__
                operation.retry_count = row.retry_count
                operation.last_error = row.last_error
                if row.retry_count >= self.max_retries:
                    db.session.delete(row)
                    db.session.commit()
                    result.dropped.append(operation.id)
                    self._logger.warning(
                        "Dropping offline %s for bookmark %s after %s attempts: %s",
                        operation.kind,
                        operation.record_id,
                        operation.retry_count,
                        operation.last_error,
                    )
                    self.events.emit(OPERATION_FAILED, operation)
                else:
                    db.session.commit()
                    result.retrying.append(operation.id)
                    self._logger.warning(
                        "Offline %s for bookmark %s failed (attempt %s): %s",
                        operation.kind,
                        operation.record_id,
                        operation.retry_count,
                        operation.last_error,
                    )
                continue

            db.session.delete(row)
            db.session.commit()
            result.applied.append(operation.id)
            self.events.emit(OPERATION_SYNCED, operation)

        return result
