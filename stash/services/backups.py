from __future__ import annotations

from pathlib import Path

from flask import current_app

from stash.errors import NotFoundError
from stash.extensions import db
from stash.models import Backup, new_id, utcnow
from stash.services.codec import FORMAT_JSON, ImportSummary, export_records, import_records
from stash.services.records import RecordStore


def _backup_dir() -> Path:
    path = Path(current_app.config["BACKUP_DIR"])
    path.mkdir(parents=True, exist_ok=True)
    return path


def list_backups() -> list[Backup]:
    return Backup.query.order_by(Backup.created_at.desc()).all()


def _prune(keep: int) -> int:
    stale = list_backups()[max(keep, 0) :]
    directory = _backup_dir()
    for row in stale:
        (directory / row.filename).unlink(missing_ok=True)
        db.session.delete(row)
    db.session.commit()
    return len(stale)


def create_backup(store: RecordStore) -> Backup:
    now = utcnow()
    platform = current_app.config.get("PLATFORM", "web")
    export = export_records(store.active_records(), FORMAT_JSON, platform=platform, now=now)

    backup_id = new_id()
    filename = f"stash-backup-{now:%Y%m%d-%H%M%S}-{backup_id[:8]}.json"
    data = export.content.encode("utf-8")
    (_backup_dir() / filename).write_bytes(data)

    row = Backup(
        id=backup_id,
        filename=filename,
        created_at=now,
        platform=platform,
        bookmark_count=export.count,
        size=len(data),
    )
    db.session.add(row)
    db.session.commit()

    pruned = _prune(current_app.config.get("BACKUP_KEEP", 10))
    current_app.logger.info(
        "Backup %s written with %s bookmarks (%s old backups pruned)",
        filename,
        export.count,
        pruned,
    )
    return row


def restore_backup(store: RecordStore, backup_id: str) -> ImportSummary:
    row = db.session.get(Backup, backup_id)
    if row is None:
        raise NotFoundError(backup_id)
    path = _backup_dir() / row.filename
    if not path.exists():
        current_app.logger.warning("Backup file %s is missing", path)
        raise NotFoundError(backup_id)
    return import_records(store, path.read_bytes(), filename=row.filename, fmt=FORMAT_JSON)
