from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from stash.errors import ValidationError
from stash.models import BookmarkRecord
from stash.services.conflicts import (
    NOTES_SEPARATOR,
    Conflict,
    Resolution,
    merge_notes,
    merge_records,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(title="Title", notes=None, modified_at=T0, **overrides):
    values = dict(
        id="rec-1",
        url="https://example.com/a",
        title=title,
        notes=notes,
        created_at=T0 - timedelta(days=1),
        modified_at=modified_at,
    )
    values.update(overrides)
    return BookmarkRecord(**values)


def test_merge_joins_divergent_notes_and_takes_later_timestamp():
    local = _record(title="Local", notes="x", modified_at=T0)
    remote = _record(title="Remote", notes="y", modified_at=T0 + timedelta(minutes=3))

    merged = merge_records(local, remote)

    assert merged.notes == f"x{NOTES_SEPARATOR}y"
    assert "x" in merged.notes and "y" in merged.notes
    assert merged.modified_at == remote.modified_at
    assert merged.title == "Remote"


@pytest.mark.parametrize(
    "local_offset, remote_offset",
    [(0, 0), (0, 90), (90, 0), (-3600, 5), (86400, -86400)],
)
def test_merge_modified_at_is_the_max_in_either_order(local_offset, remote_offset):
    local = _record(notes="a", modified_at=T0 + timedelta(seconds=local_offset))
    remote = _record(notes="b", modified_at=T0 + timedelta(seconds=remote_offset))
    expected = max(local.modified_at, remote.modified_at)

    assert merge_records(local, remote).modified_at == expected
    assert merge_records(remote, local).modified_at == expected


@pytest.mark.parametrize("local_deleted, remote_deleted", [(False, True), (True, False)])
def test_merge_never_revives_a_tombstone(local_deleted, remote_deleted):
    local = _record(notes="edited", deleted=local_deleted)
    remote = _record(modified_at=T0 + timedelta(minutes=1), deleted=remote_deleted)

    assert merge_records(local, remote).deleted is True


def test_merge_keeps_local_title_on_timestamp_tie():
    local = _record(title="Mine")
    remote = _record(title="Theirs")

    assert merge_records(local, remote).title == "Mine"


@pytest.mark.parametrize(
    "local, remote, expected",
    [
        ("x", None, "x"),
        (None, "y", "y"),
        ("", "y", "y"),
        ("same", "same", "same"),
        (None, None, None),
    ],
)
def test_merge_notes_prefers_the_non_empty_side(local, remote, expected):
    assert merge_notes(local, remote) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("merge", Resolution.MERGE),
        ("keepLocal", Resolution.KEEP_LOCAL),
        ("keep-remote", Resolution.KEEP_REMOTE),
        ("KEEP_REMOTE", Resolution.KEEP_REMOTE),
    ],
)
def test_resolution_parse_accepts_aliases(raw, expected):
    assert Resolution.parse(raw) is expected


def test_resolution_parse_rejects_unknown_values():
    with pytest.raises(ValidationError):
        Resolution.parse("coin-flip")


def _stored_conflict(services, notes_local="x", notes_remote="y"):
    bookmark = services.store.add("https://example.com/a", title="Local", notes=notes_local)
    local = bookmark.to_record()
    remote = replace(
        local,
        title="Remote",
        notes=notes_remote,
        modified_at=local.modified_at + timedelta(minutes=1),
    )
    return Conflict(local=local, remote=remote)


def test_keep_remote_replaces_local_content(app, services):
    with app.app_context():
        conflict = _stored_conflict(services)

        result = services.resolver.resolve([replace(conflict, resolution=Resolution.KEEP_REMOTE)])

        stored = services.store.get(conflict.record_id).to_record()
        assert result.resolved == [conflict.record_id]
        assert (stored.title, stored.notes) == ("Remote", "y")
        assert stored.modified_at == conflict.remote.modified_at


def test_keep_local_changes_nothing(app, services):
    with app.app_context():
        conflict = _stored_conflict(services)

        services.resolver.resolve([replace(conflict, resolution=Resolution.KEEP_LOCAL)])

        stored = services.store.get(conflict.record_id).to_record()
        assert stored == conflict.local


def test_default_resolution_merges_into_the_store(app, services):
    with app.app_context():
        conflict = _stored_conflict(services)
        assert conflict.resolution is Resolution.MERGE

        services.resolver.resolve([conflict])

        stored = services.store.get(conflict.record_id).to_record()
        assert stored.notes == f"x{NOTES_SEPARATOR}y"
        assert stored.title == "Remote"
        assert stored.modified_at == conflict.remote.modified_at


def test_one_failed_resolution_does_not_abort_siblings(app, services):
    with app.app_context():
        good = _stored_conflict(services)
        ghost = replace(
            good,
            local=replace(good.local, id="missing"),
            remote=replace(good.remote, id="missing"),
        )

        result = services.resolver.resolve([ghost, good])

        assert result.failed == ["missing"]
        assert result.resolved == [good.record_id]
        assert len(result.errors) == 1
