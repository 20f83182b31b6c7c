import json
from datetime import timedelta
from pathlib import Path

import pytest

from stash.errors import NotFoundError
from stash.services.backups import create_backup, list_backups, restore_backup


def test_backup_writes_json_export_and_records_row(app, services):
    with app.app_context():
        services.store.add("https://example.com/a", title="A")
        services.store.add("https://example.com/b", title="B")

        row = create_backup(services.store)

        path = Path(app.config["BACKUP_DIR"]) / row.filename
        assert path.exists()
        assert row.bookmark_count == 2
        assert row.size == path.stat().st_size
        assert row.platform == "web"
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["version"] == "1.0"
        assert [backup.id for backup in list_backups()] == [row.id]


def test_old_backups_are_pruned(app, services):
    app.config["BACKUP_KEEP"] = 2
    with app.app_context():
        services.store.add("https://example.com/a")
        first = create_backup(services.store)
        create_backup(services.store)
        create_backup(services.store)

        rows = list_backups()

        assert len(rows) == 2
        assert first.id not in {row.id for row in rows}
        assert len(list(Path(app.config["BACKUP_DIR"]).glob("*.json"))) == 2


def test_restore_reimports_missing_bookmarks(app, services):
    with app.app_context():
        store = services.store
        kept = store.add("https://example.com/kept", title="Kept")
        lost = store.add("https://example.com/lost", title="Lost", notes="n")
        row = create_backup(store)
        store.soft_delete(lost.id)
        store.purge_deleted_older_than(timedelta(0))

        summary = restore_backup(store, row.id)

        assert summary.imported == 1
        assert summary.skipped == 1
        titles = sorted(bookmark.title for bookmark in store.active_records())
        assert titles == ["Kept", "Lost"]
        assert store.get(kept.id).title == "Kept"


def test_restore_unknown_backup_raises(app, services):
    with app.app_context():
        with pytest.raises(NotFoundError):
            restore_backup(services.store, "missing")
