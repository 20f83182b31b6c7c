from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from stash.errors import DuplicateError, NotFoundError
from stash.extensions import db
from stash.models import Bookmark, BookmarkRecord, ensure_utc, utcnow
from stash.services.common import (
    normalize_notes,
    normalize_title,
    normalize_url,
    validate_url,
)

DEFAULT_RETENTION = timedelta(days=30)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _touch(bookmark: Bookmark) -> None:
    now = utcnow()
    previous = ensure_utc(bookmark.modified_at)
    bookmark.modified_at = max(now, previous) if previous else now


class RecordStore:
    """Local table of bookmark records. Every write commits before returning."""

    def _active_by_url(self, normalized_url: str) -> Bookmark | None:
        return (
            Bookmark.query.filter_by(normalized_url=normalized_url, deleted=False)
            .order_by(Bookmark.created_at.asc())
            .first()
        )

    def create(
        self,
        url: str,
        title: str | None = None,
        notes: str | None = None,
        created_at: datetime | None = None,
    ) -> Bookmark:
        raw_url = validate_url(url)
        normalized = normalize_url(raw_url)
        existing = self._active_by_url(normalized)
        if existing:
            raise DuplicateError(existing)

        now = utcnow()
        bookmark = Bookmark(
            url=raw_url,
            normalized_url=normalized,
            title=normalize_title(title),
            notes=normalize_notes(notes),
            created_at=ensure_utc(created_at) or now,
            modified_at=now,
            deleted=False,
        )
        db.session.add(bookmark)
        db.session.commit()
        return bookmark

    def add(self, url: str, title: str | None = None, notes: str | None = None) -> Bookmark:
        try:
            return self.create(url, title=title, notes=notes)
        except DuplicateError as exc:
            return exc.existing

    def get_or_none(self, record_id: str) -> Bookmark | None:
        if not record_id:
            return None
        return db.session.get(Bookmark, record_id)

    def get(self, record_id: str) -> Bookmark:
        bookmark = self.get_or_none(record_id)
        if bookmark is None:
            raise NotFoundError(record_id)
        return bookmark

    def update(
        self, record_id: str, title: str | None = None, notes: str | None = None
    ) -> Bookmark:
        bookmark = self.get(record_id)
        if bookmark.deleted:
            raise NotFoundError(record_id)
        if title is not None:
            bookmark.title = normalize_title(title)
        if notes is not None:
            bookmark.notes = normalize_notes(notes)
        _touch(bookmark)
        db.session.commit()
        return bookmark

    def soft_delete(self, record_id: str) -> Bookmark:
        bookmark = self.get(record_id)
        if bookmark.deleted:
            raise NotFoundError(record_id)
        bookmark.deleted = True
        _touch(bookmark)
        db.session.commit()
        return bookmark

    def replace_content(
        self,
        record_id: str,
        title: str | None,
        notes: str | None,
        modified_at: datetime,
        deleted: bool | None = None,
    ) -> Bookmark:
        bookmark = self.get(record_id)
        bookmark.title = title
        bookmark.notes = notes
        bookmark.modified_at = ensure_utc(modified_at)
        if deleted is not None:
            bookmark.deleted = bookmark.deleted or deleted
        db.session.commit()
        return bookmark

    def _search_query(self, query: str):
        rows = Bookmark.query.filter(Bookmark.deleted.is_(False))
        text = (query or "").strip()
        if text:
            pattern = _like_pattern(text)
            rows = rows.filter(
                db.or_(
                    Bookmark.url.ilike(pattern, escape="\\"),
                    Bookmark.title.ilike(pattern, escape="\\"),
                    Bookmark.notes.ilike(pattern, escape="\\"),
                )
            )
        return rows

    def search(self, query: str = "", offset: int = 0, limit: int = 50) -> list[Bookmark]:
        offset = max(0, int(offset or 0))
        limit = max(1, min(int(limit or 50), 500))
        return (
            self._search_query(query)
            .order_by(Bookmark.modified_at.desc(), Bookmark.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count(self, query: str = "") -> int:
        return self._search_query(query).count()

    def active_records(self) -> list[Bookmark]:
        return (
            Bookmark.query.filter(Bookmark.deleted.is_(False))
            .order_by(Bookmark.modified_at.desc(), Bookmark.created_at.desc())
            .all()
        )

    def list_deleted(self) -> list[Bookmark]:
        return (
            Bookmark.query.filter(Bookmark.deleted.is_(True))
            .order_by(Bookmark.modified_at.desc())
            .all()
        )

    def modified_since(self, since: datetime | None) -> list[Bookmark]:
        rows = Bookmark.query
        if since is not None:
            rows = rows.filter(Bookmark.modified_at > ensure_utc(since))
        return rows.order_by(Bookmark.modified_at.asc()).all()

    def apply_remote(self, record: BookmarkRecord) -> bool:
        """Merge a pulled remote copy into the store. Returns True when anything changed."""
        local = self.get_or_none(record.id)
        if local is None:
            if record.deleted:
                return False
            normalized = normalize_url(record.url)
            duplicate = self._active_by_url(normalized)
            if duplicate is not None:
                current_app.logger.warning(
                    "Skipping remote bookmark %s: %s is already stored as %s",
                    record.id,
                    record.url,
                    duplicate.id,
                )
                return False
            db.session.add(
                Bookmark(
                    id=record.id,
                    url=record.url,
                    normalized_url=normalized,
                    title=record.title,
                    notes=record.notes,
                    created_at=ensure_utc(record.created_at),
                    modified_at=ensure_utc(record.modified_at),
                    deleted=False,
                )
            )
            db.session.commit()
            return True

        if ensure_utc(record.modified_at) <= ensure_utc(local.modified_at):
            return False
        if local.deleted:
            return False

        local.title = record.title
        local.notes = record.notes
        local.deleted = record.deleted
        local.modified_at = ensure_utc(record.modified_at)
        db.session.commit()
        return True

    def purge_deleted_older_than(self, duration: timedelta = DEFAULT_RETENTION) -> int:
        cutoff = utcnow() - duration
        rows = (
            Bookmark.query.filter(Bookmark.deleted.is_(True))
            .filter(Bookmark.modified_at <= cutoff)
            .all()
        )
        for bookmark in rows:
            db.session.delete(bookmark)
        db.session.commit()
        if rows:
            current_app.logger.info("Purged %s deleted bookmarks", len(rows))
        return len(rows)
