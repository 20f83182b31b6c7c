from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from urllib.parse import urlparse

from stash.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class BookmarkRecord:
    """Detached snapshot of a bookmark, as exchanged with the remote backend."""

    id: str
    url: str
    title: str | None
    notes: str | None
    created_at: datetime
    modified_at: datetime
    deleted: bool = False

    def with_content(self, title, notes, modified_at) -> BookmarkRecord:
        return replace(self, title=title, notes=notes, modified_at=modified_at)

    def same_content(self, other: BookmarkRecord) -> bool:
        return (
            self.url == other.url
            and (self.title or None) == (other.title or None)
            and (self.notes or None) == (other.notes or None)
            and self.deleted == other.deleted
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
            "deleted": self.deleted,
        }


class Bookmark(db.Model):
    __tablename__ = "bookmarks"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    url = db.Column(db.Text, nullable=False)
    normalized_url = db.Column(db.Text, nullable=False, index=True)
    title = db.Column(db.String(512), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    modified_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    deleted = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.Index("ix_bookmark_deleted_modified", "deleted", "modified_at"),
    )

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        return urlparse(self.url).hostname or self.url

    def to_record(self) -> BookmarkRecord:
        return BookmarkRecord(
            id=self.id,
            url=self.url,
            title=self.title,
            notes=self.notes,
            created_at=ensure_utc(self.created_at),
            modified_at=ensure_utc(self.modified_at),
            deleted=bool(self.deleted),
        )

    def as_dict(self):
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "display_title": self.display_title,
            "notes": self.notes or "",
            "created_at": ensure_utc(self.created_at).isoformat(),
            "modified_at": ensure_utc(self.modified_at).isoformat(),
            "deleted": bool(self.deleted),
        }


class OfflineOperationRow(db.Model):
    __tablename__ = "offline_operations"

    seq = db.Column(db.Integer, primary_key=True, autoincrement=True)
    id = db.Column(db.String(36), nullable=False, unique=True, default=new_id)
    kind = db.Column(db.String(16), nullable=False)
    record_id = db.Column(db.String(36), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    enqueued_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)


class SyncState(db.Model):
    __tablename__ = "sync_state"

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Backup(db.Model):
    __tablename__ = "backups"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    filename = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    platform = db.Column(db.String(64), nullable=False)
    bookmark_count = db.Column(db.Integer, nullable=False, default=0)
    size = db.Column(db.Integer, nullable=False, default=0)

    def as_dict(self):
        return {
            "id": self.id,
            "filename": self.filename,
            "created_at": ensure_utc(self.created_at).isoformat(),
            "platform": self.platform,
            "bookmark_count": self.bookmark_count,
            "size": self.size,
        }
