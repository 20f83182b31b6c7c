import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'stash.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    API_TOKEN = os.environ.get("API_TOKEN") or None
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    PLATFORM = os.environ.get("PLATFORM", "web")

    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") == "1"
    SYNC_BACKGROUND = os.environ.get("SYNC_BACKGROUND", "1") == "1"
    SYNC_INTERVAL_SECONDS = int(os.environ.get("SYNC_INTERVAL_SECONDS", "300"))
    SYNC_STATUS_RESET_SECONDS = float(os.environ.get("SYNC_STATUS_RESET_SECONDS", "2"))
    SYNC_PAGE_SIZE = int(os.environ.get("SYNC_PAGE_SIZE", "200"))
    OFFLINE_MAX_RETRIES = int(os.environ.get("OFFLINE_MAX_RETRIES", "3"))

    TOMBSTONE_RETENTION_DAYS = int(os.environ.get("TOMBSTONE_RETENTION_DAYS", "30"))
    PURGE_INTERVAL_MINUTES = int(os.environ.get("PURGE_INTERVAL_MINUTES", "1440"))

    REMOTE_BACKEND = os.environ.get("REMOTE_BACKEND", "memory")
    REMOTE_URL = os.environ.get("REMOTE_URL") or None
    REMOTE_TOKEN = os.environ.get("REMOTE_TOKEN") or None
    REMOTE_TIMEOUT = float(os.environ.get("REMOTE_TIMEOUT", "10"))

    CONNECTIVITY_PROBE_URL = os.environ.get("CONNECTIVITY_PROBE_URL") or None
    CONNECTIVITY_PROBE_SECONDS = int(os.environ.get("CONNECTIVITY_PROBE_SECONDS", "30"))

    BACKUP_DIR = os.environ.get("BACKUP_DIR", str(BASE_DIR / "backups"))
    BACKUP_KEEP = int(os.environ.get("BACKUP_KEEP", "10"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    API_TOKEN = None
    SCHEDULER_ENABLED = False
    SYNC_BACKGROUND = False
    SYNC_STATUS_RESET_SECONDS = 0
    REMOTE_BACKEND = "memory"
    CONNECTIVITY_PROBE_URL = None
