from __future__ import annotations

from datetime import timedelta

from flask import Response, current_app, jsonify, request

from stash.api import api_bp
from stash.errors import (
    ConflictError,
    DuplicateError,
    ImportParseError,
    NotFoundError,
    RemoteUnavailableError,
    ValidationError,
)
from stash.services import get_services
from stash.services.backups import create_backup, list_backups, restore_backup
from stash.services.codec import export_records, import_records
from stash.services.common import to_bool
from stash.services.search import rank_bookmarks
from stash.services.security import api_auth_required


def _error(message: str, status: int):
    return jsonify({"error": message}), status


@api_bp.errorhandler(ValidationError)
@api_bp.errorhandler(ImportParseError)
def _bad_request(exc):
    return _error(str(exc), 400)


@api_bp.errorhandler(NotFoundError)
def _not_found(exc):
    return _error(str(exc), 404)


@api_bp.errorhandler(ConflictError)
def _conflict(exc):
    return jsonify({"error": str(exc), "conflicts": exc.count}), 409


@api_bp.errorhandler(RemoteUnavailableError)
def _remote_unavailable(exc):
    return _error(str(exc), 503)


def _json_object() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name, type=int)
    return default if value is None else value


def _sync_status_payload(services) -> dict:
    orchestrator = services.orchestrator
    last_sync = orchestrator.last_sync_date
    payload = orchestrator.status.as_dict()
    payload["last_sync_date"] = last_sync.isoformat() if last_sync else None
    return payload


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "Stash"})


@api_bp.route("/status", methods=["GET"])
@api_auth_required
def status():
    services = get_services()
    return jsonify(
        {
            "online": services.monitor.is_online,
            "pending_operations": len(services.queue),
            "bookmarks": services.store.count(),
            "sync": _sync_status_payload(services),
        }
    )


@api_bp.route("/bookmarks", methods=["GET"])
@api_auth_required
def bookmarks_list():
    services = get_services()
    query = (request.args.get("q") or "").strip()
    items = services.bookmarks.search(
        query, offset=_int_arg("offset", 0), limit=_int_arg("limit", 50)
    )
    return jsonify(
        {
            "items": [item.as_dict() for item in items],
            "total": services.bookmarks.count(query),
        }
    )


@api_bp.route("/bookmarks", methods=["POST"])
@api_auth_required
def bookmarks_create():
    payload = _json_object()
    url = (payload.get("url") or "").strip()
    if not url:
        return _error("url is required", 400)

    try:
        result = get_services().bookmarks.add(
            url, title=payload.get("title"), notes=payload.get("notes")
        )
    except DuplicateError as exc:
        return jsonify({"status": "exists", "bookmark": exc.existing.as_dict()})
    return jsonify(result.as_dict()), 201


@api_bp.route("/bookmarks/<record_id>", methods=["GET"])
@api_auth_required
def bookmarks_get(record_id: str):
    return jsonify(get_services().bookmarks.get(record_id).as_dict())


@api_bp.route("/bookmarks/<record_id>", methods=["PATCH"])
@api_auth_required
def bookmarks_update(record_id: str):
    payload = _json_object()
    if "title" not in payload and "notes" not in payload:
        return _error("title or notes is required", 400)
    # an explicit null or "" clears the field
    result = get_services().bookmarks.update(
        record_id,
        title=(payload.get("title") or "") if "title" in payload else None,
        notes=(payload.get("notes") or "") if "notes" in payload else None,
    )
    return jsonify(result.as_dict())


@api_bp.route("/bookmarks/<record_id>", methods=["DELETE"])
@api_auth_required
def bookmarks_delete(record_id: str):
    return jsonify(get_services().bookmarks.delete(record_id).as_dict())


@api_bp.route("/search", methods=["GET"])
@api_auth_required
def search():
    query = (request.args.get("q") or "").strip()
    if not query:
        return jsonify({"items": []})
    limit = max(1, min(_int_arg("limit", 50), 500))
    ranked = rank_bookmarks(get_services().store.active_records(), query, limit=limit)
    return jsonify(
        {
            "items": [
                {
                    "bookmark": row["bookmark"].as_dict(),
                    "score": row["score"],
                    "reasons": row["reasons"],
                }
                for row in ranked
            ]
        }
    )


@api_bp.route("/recycle", methods=["GET"])
@api_auth_required
def recycle_list():
    items = get_services().store.list_deleted()
    return jsonify({"items": [item.as_dict() for item in items]})


@api_bp.route("/recycle/purge", methods=["POST"])
@api_auth_required
def recycle_purge():
    payload = _json_object()
    days = payload.get("days", current_app.config["TOMBSTONE_RETENTION_DAYS"])
    try:
        days = int(days)
    except (TypeError, ValueError):
        return _error("days must be an integer", 400)
    if days < 0:
        return _error("days must not be negative", 400)
    purged = get_services().store.purge_deleted_older_than(timedelta(days=days))
    return jsonify({"purged": purged, "days": days})


@api_bp.route("/sync/status", methods=["GET"])
@api_auth_required
def sync_status():
    return jsonify(_sync_status_payload(get_services()))


@api_bp.route("/sync", methods=["POST"])
@api_auth_required
def sync_start():
    services = get_services()
    pending = services.orchestrator.pending_conflicts()
    if pending:
        raise ConflictError(len(pending))
    started = services.orchestrator.request_sync("api")
    payload = _sync_status_payload(services)
    payload["started"] = started
    return jsonify(payload), 202


@api_bp.route("/sync/notify", methods=["POST"])
@api_auth_required
def sync_notify():
    payload = _json_object()
    ids = payload.get("ids")
    if ids is not None and not isinstance(ids, list):
        return _error("ids must be a list", 400)
    get_services().notifier.notify([str(item) for item in ids] if ids else None)
    return jsonify({"status": "accepted"}), 202


@api_bp.route("/sync/conflicts", methods=["GET"])
@api_auth_required
def sync_conflicts():
    conflicts = get_services().orchestrator.pending_conflicts()
    return jsonify({"items": [conflict.as_dict() for conflict in conflicts]})


@api_bp.route("/sync/conflicts/resolve", methods=["POST"])
@api_auth_required
def sync_conflicts_resolve():
    services = get_services()
    payload = _json_object()
    strategy = payload.get("strategy")
    resolutions = payload.get("resolutions")
    if resolutions is not None and not isinstance(resolutions, dict):
        return _error("resolutions must be an object keyed by bookmark id", 400)

    if strategy:
        result = services.orchestrator.resolve_all(strategy)
    else:
        result = services.orchestrator.resolve_conflicts(resolutions or {})

    response = result.as_dict()
    response["sync"] = _sync_status_payload(services)
    return jsonify(response)


@api_bp.route("/queue", methods=["GET"])
@api_auth_required
def queue_list():
    operations = get_services().queue.pending()
    return jsonify({"items": [operation.as_dict() for operation in operations]})


@api_bp.route("/queue/drain", methods=["POST"])
@api_auth_required
def queue_drain():
    services = get_services()
    if not services.monitor.is_online:
        return _error("offline", 503)
    result = services.orchestrator.drain_queue()
    response = result.as_dict()
    response["pending"] = len(services.queue)
    return jsonify(response)


@api_bp.route("/connectivity", methods=["GET"])
@api_auth_required
def connectivity_get():
    return jsonify({"state": get_services().monitor.state})


@api_bp.route("/connectivity", methods=["POST"])
@api_auth_required
def connectivity_set():
    payload = _json_object()
    if "online" not in payload:
        return _error("online is required", 400)
    monitor = get_services().monitor
    changed = monitor.set_reachable(to_bool(payload.get("online")))
    return jsonify({"state": monitor.state, "changed": changed})


@api_bp.route("/export", methods=["GET"])
@api_auth_required
def export():
    result = export_records(
        get_services().store.active_records(),
        request.args.get("format", "json"),
        platform=current_app.config.get("PLATFORM", "web"),
    )
    return Response(
        result.content,
        mimetype=result.mimetype,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@api_bp.route("/import", methods=["POST"])
@api_auth_required
def import_file():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _error("file is required", 400)
    summary = import_records(
        get_services().store,
        upload.read(),
        filename=upload.filename,
        fmt=request.form.get("format") or None,
    )
    return jsonify(summary.as_dict())


@api_bp.route("/backups", methods=["GET"])
@api_auth_required
def backups_list():
    return jsonify({"items": [row.as_dict() for row in list_backups()]})


@api_bp.route("/backups", methods=["POST"])
@api_auth_required
def backups_create():
    row = create_backup(get_services().store)
    return jsonify(row.as_dict()), 201


@api_bp.route("/backups/<backup_id>/restore", methods=["POST"])
@api_auth_required
def backups_restore(backup_id: str):
    summary = restore_backup(get_services().store, backup_id)
    return jsonify(summary.as_dict())
