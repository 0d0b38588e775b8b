import json

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from app.api.deps import get_current_user
from app.db import get_db
from app.main import app
from app.models.user import User
from app.services.billing import payment_orders
from app.services.content import content
from app.services.pin_ledger import pin_ledger
from tests.conftest import make_folder, make_record


@pytest.fixture()
def api_store(monkeypatch, store):
    monkeypatch.setattr(content, "store", store)
    monkeypatch.setattr(pin_ledger, "store", store)
    return store


@pytest.fixture()
def api_provider(monkeypatch, provider):
    monkeypatch.setattr(payment_orders, "provider", provider)
    return provider


@pytest.fixture()
def client(session_factory, user, api_store, api_provider):
    user_id = user.id

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def _current_user(db=Depends(get_db)):
        return db.get(User, user_id)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = _current_user
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def anonymous_client(session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(anonymous_client):
    response = anonymous_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_token_is_rejected(anonymous_client):
    response = anonymous_client.get("/api/v1/files", headers={"X-Request-ID": "req-1"})

    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "INVALID_TOKEN"
    assert body["request_id"] == "req-1"
    assert response.headers["X-Request-ID"] == "req-1"


def test_upload_pin_and_download(client, api_store):
    response = client.post(
        "/api/v1/files/upload",
        files=[("files", ("notes.txt", b"hello world", "text/plain"))],
        data={"pin": "true"},
    )

    assert response.status_code == 201
    [item] = response.json()["items"]
    assert item["status"] == "uploaded"
    assert item["record"]["is_pinned"] is True
    assert api_store.pin_calls[item["record"]["content_address"]] == 1

    download = client.get(f"/api/v1/files/{item['record']['id']}/download")
    assert download.status_code == 200
    assert download.content == b"hello world"
    assert download.headers["content-disposition"] == 'attachment; filename="notes.txt"'


def test_upload_conflict_returns_409(client, db_session, user):
    make_record(db_session, user, filename="notes.txt")

    response = client.post(
        "/api/v1/files/upload", files=[("files", ("notes.txt", b"x", "text/plain"))]
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "DUPLICATE_NAME"
    assert body["details"]["conflicts"][0]["suggested_name"] == "notes (1).txt"
    assert body["request_id"]


def test_upload_with_keep_both_decision(client, db_session, user):
    make_record(db_session, user, filename="notes.txt")

    response = client.post(
        "/api/v1/files/upload",
        files=[("files", ("notes.txt", b"x", "text/plain"))],
        data={"decisions": json.dumps([{"index": 0, "action": "KEEP_BOTH"}])},
    )

    assert response.status_code == 201
    assert response.json()["items"][0]["final_name"] == "notes (1).txt"


def test_malformed_decisions_rejected(client):
    response = client.post(
        "/api/v1/files/upload",
        files=[("files", ("notes.txt", b"x", "text/plain"))],
        data={"decisions": "not-json"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_duplicate_check(client, db_session, user):
    make_record(db_session, user, filename="a.txt")

    response = client.post(
        "/api/v1/files/duplicates/check", json={"filenames": ["a.txt", "b.txt"]}
    )

    assert response.status_code == 200
    assert [c["filename"] for c in response.json()["conflicts"]] == ["a.txt"]


def test_pin_other_users_file_is_forbidden(client, db_session, other_user):
    record = make_record(db_session, other_user)

    response = client.post(f"/api/v1/files/{record.id}/pin")

    assert response.status_code == 403
    assert response.json()["code"] == "NOT_OWNER"


def test_invalid_identifier_is_validation_error(client):
    response = client.post("/api/v1/files/not-a-uuid/pin")

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_create_folder_rejects_duplicate_name(client):
    created = client.post("/api/v1/folders", json={"name": "Docs"})
    duplicate = client.post("/api/v1/folders", json={"name": "docs"})

    assert created.status_code == 201
    assert duplicate.status_code == 409


def test_request_validation_error_shape(client):
    response = client.post("/api/v1/folders", json={})

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"]


def test_trash_restore_round(client, db_session, user):
    folder = make_folder(db_session, user)
    record = make_record(db_session, user, folder=folder)

    trashed = client.post(f"/api/v1/trash/folders/{folder.id}")
    listing = client.get("/api/v1/trash")
    restored = client.post(f"/api/v1/trash/files/{record.id}/restore")

    assert trashed.status_code == 200
    body = listing.json()
    assert [f["id"] for f in body["folders"]] == [str(folder.id)]
    assert body["files"][0]["days_remaining"] in (29, 30)
    assert restored.status_code == 200
    assert restored.json()["parent_folder_id"] is None


def test_permanent_delete_returns_summary(client, db_session, user):
    record = make_record(db_session, user, is_deleted=True)

    response = client.delete(f"/api/v1/trash/files/{record.id}")

    assert response.status_code == 200
    assert response.json() == {
        "permanently_deleted_count": 1,
        "references_released_count": 0,
        "failed_count": 0,
    }


def test_restore_after_purge_reports_already_deleted(client, db_session, user):
    record = make_record(db_session, user)
    folder = make_folder(db_session, user, "Old")
    client.post(f"/api/v1/trash/files/{record.id}")
    client.post(f"/api/v1/trash/folders/{folder.id}")
    client.delete(f"/api/v1/trash/files/{record.id}")
    client.delete(f"/api/v1/trash/folders/{folder.id}")

    file_restore = client.post(f"/api/v1/trash/files/{record.id}/restore")
    folder_restore = client.post(f"/api/v1/trash/folders/{folder.id}/restore")
    redelete = client.delete(f"/api/v1/trash/files/{record.id}")

    assert file_restore.status_code == 200
    assert file_restore.json() == {"id": str(record.id), "status": "already_deleted"}
    assert folder_restore.status_code == 200
    assert folder_restore.json()["status"] == "already_deleted"
    assert redelete.status_code == 200
    assert redelete.json()["permanently_deleted_count"] == 0


def test_permanent_delete_of_active_file_is_rejected(client, db_session, user):
    record = make_record(db_session, user)

    response = client.delete(f"/api/v1/trash/files/{record.id}")

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_access_check_within_free_tier(client):
    response = client.get("/api/v1/billing/access-check")

    assert response.status_code == 200
    body = response.json()
    assert body["allowed"] is True
    assert body["state"] == "WITHIN_FREE_TIER"


def test_payment_order_not_due(client):
    response = client.post("/api/v1/payments/orders")

    assert response.status_code == 400
    assert response.json()["code"] == "NO_CHARGE_DUE"


def test_webhook_needs_no_bearer_token(anonymous_client, api_provider):
    body = json.dumps({"data": {"order": {"order_id": "CIDV-missing", "order_status": "PAID"}}})

    response = anonymous_client.post(
        "/api/v1/payments/webhook",
        content=body,
        headers={"x-webhook-signature": "good-signature", "x-webhook-timestamp": "1700000000"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_webhook_with_bad_signature(anonymous_client, api_provider):
    response = anonymous_client.post(
        "/api/v1/payments/webhook",
        content=b"{}",
        headers={"x-webhook-signature": "forged", "x-webhook-timestamp": "1700000000"},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
