from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace

from stash.errors import ValidationError
from stash.extensions import db
from stash.models import BookmarkRecord
from stash.services.records import RecordStore

NOTES_SEPARATOR = "\n\n---\n"


class Resolution(str, enum.Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"

    @classmethod
    def parse(cls, value) -> Resolution:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("-", "_")
        aliases = {"keeplocal": "keep_local", "keepremote": "keep_remote"}
        try:
            return cls(aliases.get(text, text))
        except ValueError as exc:
            raise ValidationError(f"unknown resolution: {value}") from exc


@dataclass
class Conflict:
    local: BookmarkRecord
    remote: BookmarkRecord
    resolution: Resolution = Resolution.MERGE

    @property
    def record_id(self) -> str:
        return self.local.id

    def as_dict(self) -> dict:
        return {
            "id": self.record_id,
            "local": self.local.as_dict(),
            "remote": self.remote.as_dict(),
            "resolution": self.resolution.value,
        }


@dataclass
class ResolutionResult:
    resolved: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "resolved": len(self.resolved),
            "failed": len(self.failed),
            "errors": list(self.errors),
        }


def merge_notes(local: str | None, remote: str | None) -> str | None:
    local_text = local or ""
    remote_text = remote or ""
    if local_text and remote_text and local_text != remote_text:
        return f"{local_text}{NOTES_SEPARATOR}{remote_text}"
    return local_text or remote_text or None


def merge_records(local: BookmarkRecord, remote: BookmarkRecord) -> BookmarkRecord:
    """Combine two versions of one bookmark.

    The later side wins the title (local on a tie), notes are concatenated when
    both sides have different text, and the result carries the later timestamp.
    A tombstone on either side keeps the merged record deleted.
    """
    title = remote.title if remote.modified_at > local.modified_at else local.title
    return replace(
        local,
        title=title,
        notes=merge_notes(local.notes, remote.notes),
        modified_at=max(local.modified_at, remote.modified_at),
        deleted=local.deleted or remote.deleted,
    )


class ConflictResolver:
    def __init__(self, store: RecordStore, logger: logging.Logger | None = None) -> None:
        self._store = store
        self._logger = logger or logging.getLogger("stash")

    def _apply(self, conflict: Conflict) -> None:
        if conflict.resolution is Resolution.KEEP_LOCAL:
            # the local copy is pushed over the remote on the next cycle
            self._store.get(conflict.record_id)
            return
        if conflict.resolution is Resolution.KEEP_REMOTE:
            self._store.replace_content(
                conflict.record_id,
                title=conflict.remote.title,
                notes=conflict.remote.notes,
                modified_at=conflict.remote.modified_at,
                deleted=conflict.remote.deleted,
            )
            return
        merged = merge_records(conflict.local, conflict.remote)
        self._store.replace_content(
            conflict.record_id,
            title=merged.title,
            notes=merged.notes,
            modified_at=merged.modified_at,
            deleted=merged.deleted,
        )

    def resolve(self, conflicts: list[Conflict]) -> ResolutionResult:
        result = ResolutionResult()
        for conflict in conflicts:
            try:
                self._apply(conflict)
            except Exception as exc:
                db.session.rollback()
                result.failed.append(conflict.record_id)
                result.errors.append(f"{conflict.record_id}: {exc}")
                self._logger.warning(
                    "Failed to resolve conflict for bookmark %s (%s): %s",
                    conflict.record_id,
                    conflict.resolution.value,
                    exc,
                )
                continue
            result.resolved.append(conflict.record_id)
        return result
