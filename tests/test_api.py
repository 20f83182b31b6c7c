import io
import json
from dataclasses import replace
from datetime import timedelta

import pytest


def _create(client, url="https://example.com/a", **fields):
    return client.post("/api/v1/bookmarks", json={"url": url, **fields})


def test_health_is_public(client, app):
    app.config["API_TOKEN"] = "secret"

    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_bearer_token_is_required_when_configured(client, app):
    app.config["API_TOKEN"] = "secret"

    assert client.get("/api/v1/status").status_code == 401
    assert (
        client.get("/api/v1/status", headers={"Authorization": "Bearer wrong"}).status_code
        == 401
    )
    response = client.get("/api/v1/status", headers={"Authorization": "Bearer secret"})
    assert response.status_code == 200


def test_bookmark_crud_flow(client):
    response = _create(client, title="Example", notes="first")
    assert response.status_code == 201
    created = response.get_json()
    assert created["delivery"] == "synced"
    bookmark_id = created["id"]

    response = client.get("/api/v1/bookmarks?q=example")
    assert response.status_code == 200
    assert response.get_json()["total"] == 1

    response = client.patch(f"/api/v1/bookmarks/{bookmark_id}", json={"title": "Renamed"})
    assert response.status_code == 200
    assert response.get_json()["title"] == "Renamed"
    assert response.get_json()["notes"] == "first"

    response = client.patch(f"/api/v1/bookmarks/{bookmark_id}", json={"notes": None})
    assert response.get_json()["notes"] == ""

    response = client.delete(f"/api/v1/bookmarks/{bookmark_id}")
    assert response.status_code == 200
    assert response.get_json()["deleted"] is True
    assert client.delete(f"/api/v1/bookmarks/{bookmark_id}").status_code == 404

    assert client.get("/api/v1/bookmarks").get_json()["items"] == []
    assert len(client.get("/api/v1/recycle").get_json()["items"]) == 1

    response = client.post("/api/v1/recycle/purge", json={"days": 0})
    assert response.get_json()["purged"] == 1
    assert client.get(f"/api/v1/bookmarks/{bookmark_id}").status_code == 404


def test_untitled_bookmark_uses_host_as_display_title(client):
    response = _create(client, url="https://a.example")

    payload = response.get_json()
    assert payload["title"] is None
    assert payload["display_title"] == "a.example"
    assert payload["notes"] == ""


def test_duplicate_returns_existing_record(client):
    first = _create(client).get_json()

    response = _create(client, title="Again")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "exists"
    assert payload["bookmark"]["id"] == first["id"]


def test_validation_and_not_found_errors(client):
    assert _create(client, url="").status_code == 400
    response = _create(client, url="not a url")
    assert response.status_code == 400
    assert "invalid url" in response.get_json()["error"]
    assert client.patch("/api/v1/bookmarks/missing", json={"title": "x"}).status_code == 404
    assert client.delete("/api/v1/bookmarks/missing").status_code == 404


@pytest.mark.parametrize(
    "method, path",
    [
        ("post", "/api/v1/bookmarks"),
        ("patch", "/api/v1/bookmarks/any"),
        ("post", "/api/v1/recycle/purge"),
        ("post", "/api/v1/sync/notify"),
        ("post", "/api/v1/sync/conflicts/resolve"),
        ("post", "/api/v1/connectivity"),
    ],
)
def test_json_bodies_must_be_objects(client, method, path):
    response = getattr(client, method)(path, json=[1])

    assert response.status_code == 400
    assert response.get_json()["error"] == "request body must be a JSON object"


def test_ranked_search(client):
    _create(client, url="https://docs.python.org/3/", title="Python documentation")
    _create(client, url="https://gardening.example/", title="Gardening tips")

    response = client.get("/api/v1/search?q=pythn")

    items = response.get_json()["items"]
    assert [item["bookmark"]["title"] for item in items] == ["Python documentation"]


def test_offline_mutations_queue_and_drain_on_reconnect(client, backend):
    response = client.post("/api/v1/connectivity", json={"online": False})
    assert response.get_json() == {"state": "offline", "changed": True}

    created = _create(client).get_json()
    assert created["delivery"] == "queued"
    assert len(client.get("/api/v1/queue").get_json()["items"]) == 1
    assert client.post("/api/v1/queue/drain").status_code == 503
    assert client.get("/api/v1/status").get_json()["pending_operations"] == 1

    client.post("/api/v1/connectivity", json={"online": True})

    assert client.get("/api/v1/queue").get_json()["items"] == []
    assert created["id"] in backend.records


def test_online_push_failure_surfaces_503(client, backend):
    backend.available = False

    response = _create(client)

    assert response.status_code == 503
    assert client.get("/api/v1/bookmarks").get_json()["total"] == 1
    assert client.get("/api/v1/queue").get_json()["items"] == []


def test_manual_sync_reports_status(client):
    _create(client)

    response = client.post("/api/v1/sync")

    assert response.status_code == 202
    assert response.get_json()["started"] is True
    status = client.get("/api/v1/sync/status").get_json()
    assert status["state"] == "success"
    assert status["last_sync_date"] is not None


def test_conflicts_block_sync_until_resolved(client, app, services, backend):
    bookmark_id = _create(client, title="Original").get_json()["id"]
    client.post("/api/v1/sync")
    backend.records[bookmark_id] = replace(
        backend.records[bookmark_id],
        notes="remote",
        modified_at=backend.records[bookmark_id].modified_at + timedelta(minutes=5),
    )
    with app.app_context():
        services.store.update(bookmark_id, notes="local edit")

    client.post("/api/v1/sync")
    status = client.get("/api/v1/sync/status").get_json()
    assert status["state"] == "conflicts_detected"
    assert status["conflicts"] == 1

    conflicts = client.get("/api/v1/sync/conflicts").get_json()["items"]
    assert conflicts[0]["id"] == bookmark_id
    assert conflicts[0]["resolution"] == "merge"
    assert client.post("/api/v1/sync").status_code == 409

    response = client.post("/api/v1/sync/conflicts/resolve", json={"strategy": "bogus"})
    assert response.status_code == 400

    response = client.post("/api/v1/sync/conflicts/resolve", json={"strategy": "keep_remote"})
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["resolved"] == 1
    assert payload["sync"]["state"] == "success"
    assert client.get(f"/api/v1/bookmarks/{bookmark_id}").get_json()["notes"] == "remote"


def test_remote_change_webhook_pulls_records(client, backend):
    bookmark_id = _create(client, title="Before").get_json()["id"]
    client.post("/api/v1/sync")
    backend.records[bookmark_id] = replace(
        backend.records[bookmark_id],
        title="After",
        modified_at=backend.records[bookmark_id].modified_at + timedelta(minutes=1),
    )

    response = client.post("/api/v1/sync/notify", json={"ids": [bookmark_id]})

    assert response.status_code == 202
    assert client.get(f"/api/v1/bookmarks/{bookmark_id}").get_json()["title"] == "After"


def test_export_download(client):
    _create(client, title="Example")

    response = client.get("/api/v1/export?format=csv")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "stash-bookmarks-" in response.headers["Content-Disposition"]
    assert response.get_data(as_text=True).startswith("url,title,notes,createdAt,modifiedAt")
    assert client.get("/api/v1/export?format=xml").status_code == 400


def test_import_upload(client):
    content = json.dumps(
        {"version": "1.0", "records": [{"url": "https://example.com/x"}, {"title": "broken"}]}
    )

    response = client.post(
        "/api/v1/import",
        data={"file": (io.BytesIO(content.encode("utf-8")), "stash.json")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    summary = response.get_json()
    assert summary["imported"] == 1
    assert summary["totalItems"] == 2
    assert len(summary["errors"]) == 1
    assert client.post("/api/v1/import", data={}).status_code == 400


def test_import_rejects_unparseable_file(client):
    response = client.post(
        "/api/v1/import",
        data={"file": (io.BytesIO(b"{not json"), "stash.json")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400


def test_backup_and_restore_endpoints(client):
    bookmark_id = _create(client, title="Keep me").get_json()["id"]

    response = client.post("/api/v1/backups")
    assert response.status_code == 201
    backup_id = response.get_json()["id"]
    assert [row["id"] for row in client.get("/api/v1/backups").get_json()["items"]] == [
        backup_id
    ]

    client.delete(f"/api/v1/bookmarks/{bookmark_id}")
    response = client.post(f"/api/v1/backups/{backup_id}/restore")
    assert response.status_code == 200
    assert response.get_json()["imported"] == 1
    assert client.post("/api/v1/backups/missing/restore").status_code == 404
