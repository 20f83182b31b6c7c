from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import click
from flask import Flask, current_app

from stash.errors import ConflictError, StashError
from stash.extensions import db
from stash.services import get_services
from stash.services.codec import EXPORT_FORMATS, export_records, import_records


def register_commands(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        print("Initialized Stash database.")

    @app.cli.command("sync")
    def sync_command():
        """Run one sync cycle in the foreground."""
        services = get_services()
        try:
            status = services.orchestrator.sync_now()
        except ConflictError as exc:
            raise click.ClickException(f"{exc}; resolve them through the API first") from exc
        report = services.orchestrator.last_report
        print(f"Sync {status.state}" + (f": {status.message}" if status.message else ""))
        if report is not None and status.state == "success":
            print(f"  pushed {report.pushed}, pulled {report.pulled}")
        if status.conflicts:
            print(f"  {status.conflicts} conflicts awaiting resolution")

    @app.cli.command("purge")
    @click.option("--days", type=int, default=None, help="Retention window in days.")
    def purge_command(days):
        days = current_app.config["TOMBSTONE_RETENTION_DAYS"] if days is None else days
        removed = get_services().store.purge_deleted_older_than(timedelta(days=days))
        print(f"Purged {removed} deleted bookmarks older than {days} days.")

    @app.cli.command("export")
    @click.option("--format", "fmt", type=click.Choice(EXPORT_FORMATS), default="json")
    @click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None)
    def export_command(fmt, output):
        result = export_records(
            get_services().store.active_records(),
            fmt,
            platform=current_app.config.get("PLATFORM", "web"),
        )
        target = output or Path(result.filename)
        target.write_text(result.content, encoding="utf-8", newline="")
        print(f"Exported {result.count} bookmarks to {target}")

    @app.cli.command("import")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
    @click.option("--format", "fmt", default=None, help="json, csv, html or plist.")
    def import_command(path, fmt):
        try:
            summary = import_records(
                get_services().store, path.read_bytes(), filename=path.name, fmt=fmt
            )
        except StashError as exc:
            raise click.ClickException(str(exc)) from exc
        print(
            f"{summary.source}: {summary.imported} imported, "
            f"{summary.skipped} skipped, {len(summary.errors)} errors "
            f"({summary.total_items} items)"
        )
        for error in summary.errors:
            print(f"  {error}")
