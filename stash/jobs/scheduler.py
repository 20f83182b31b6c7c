import os
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from stash.extensions import db
from stash.services import get_services

SCHEDULER_KEY = "stash.scheduler"


def run_sync_tick(app):
    services = get_services(app)
    if not services.monitor.is_online:
        return
    services.orchestrator.request_sync("scheduled")


def run_tombstone_purge(app):
    with app.app_context():
        try:
            retention = timedelta(days=app.config["TOMBSTONE_RETENTION_DAYS"])
            get_services(app).store.purge_deleted_older_than(retention)
        finally:
            db.session.remove()


def run_connectivity_probe(app):
    url = app.config.get("CONNECTIVITY_PROBE_URL")
    if not url:
        return
    get_services(app).monitor.probe(url, timeout=app.config.get("REMOTE_TIMEOUT", 10))


def start_scheduler(app):
    if not app.config.get("SCHEDULER_ENABLED", True):
        return None
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return None
    if SCHEDULER_KEY in app.extensions:
        return app.extensions[SCHEDULER_KEY]

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        run_sync_tick,
        "interval",
        seconds=app.config["SYNC_INTERVAL_SECONDS"],
        kwargs={"app": app},
        id="sync_tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_tombstone_purge,
        "interval",
        minutes=app.config["PURGE_INTERVAL_MINUTES"],
        kwargs={"app": app},
        id="tombstone_purge",
        replace_existing=True,
    )
    if app.config.get("CONNECTIVITY_PROBE_URL"):
        scheduler.add_job(
            run_connectivity_probe,
            "interval",
            seconds=app.config["CONNECTIVITY_PROBE_SECONDS"],
            kwargs={"app": app},
            id="connectivity_probe",
            replace_existing=True,
            max_instances=1,
        )
    scheduler.start()
    app.extensions[SCHEDULER_KEY] = scheduler
    return scheduler
