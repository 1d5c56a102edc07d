import hashlib
import io

import pytest
from sqlalchemy import select

from app.compliance.errors import ConflictError, ContentTooLarge, ContentUnsafe, ValidationError
from app.compliance.models import AuditEvent
from app.compliance.modules.document_control.models import DocumentVersion
from app.compliance.modules.document_control.service import (
    check_servable,
    create_document,
    create_version,
    latest_version,
    list_versions,
    record_scan_result,
)

from conftest import client_for, get_user

MAX = 1024


def _doc(s, user, **extra):
    return create_document(s, {"title": "Access control policy", "doc_type": "policy", **extra}, user=user)


def _upload(s, doc, user, storage, data=b"%PDF-1.4 body", filename="policy.pdf", max_bytes=MAX):
    return create_version(
        s,
        doc,
        data=data,
        filename=filename,
        content_type="application/pdf",
        change_summary="update",
        user=user,
        storage=storage,
        max_bytes=max_bytes,
    )


def test_versions_are_numbered_without_gaps(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    assert doc.current_version == 0

    versions = [_upload(db, doc, admin, storage, data=f"v{i}".encode()) for i in range(1, 4)]
    assert [v.version_number for v in versions] == [1, 2, 3]
    assert doc.current_version == 3
    assert [v.version_number for v in list_versions(doc)] == [1, 2, 3]
    assert latest_version(doc).version_number == 3

    v2 = versions[1]
    assert v2.sha256 == hashlib.sha256(b"v2").hexdigest()
    assert v2.size_bytes == 2
    assert v2.av_scan_status == "pending"
    assert v2.storage_key == f"documents/{doc.id}/v2/policy.pdf"
    assert storage.get_bytes(v2.storage_key) == b"v2"


def test_rejected_uploads_do_not_consume_version_numbers(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)

    with pytest.raises(ValidationError):
        _upload(db, doc, admin, storage, data=b"")
    with pytest.raises(ContentTooLarge):
        _upload(db, doc, admin, storage, data=b"x" * (MAX + 1))
    with pytest.raises(ValidationError):
        _upload(db, doc, admin, storage, filename="payload.exe")

    assert doc.current_version == 0
    assert _upload(db, doc, admin, storage).version_number == 1


def test_approved_document_accepts_new_versions(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    _upload(db, doc, admin, storage)
    doc.status = "approved"
    db.flush()

    v2 = _upload(db, doc, admin, storage, data=b"%PDF-1.4 revised")
    assert v2.version_number == 2
    assert doc.current_version == 2
    assert doc.status == "approved"


def test_conflicting_version_number_leaves_no_blob(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    # A row holding number 1 that the counter does not know about.
    db.add(
        DocumentVersion(
            document_id=doc.id,
            version_number=1,
            storage_key="documents/elsewhere.pdf",
            filename="elsewhere.pdf",
            sha256="0" * 64,
            size_bytes=1,
            created_by_user_id=admin.id,
        )
    )
    db.flush()

    with pytest.raises(ConflictError):
        _upload(db, doc, admin, storage)
    assert not storage.exists(f"documents/{doc.id}/v1/policy.pdf")
    db.rollback()


def test_rolled_back_upload_removes_its_blob(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    db.commit()

    v = _upload(db, doc, admin, storage)
    key = v.storage_key
    assert storage.exists(key)
    db.rollback()
    assert not storage.exists(key)

    db.refresh(doc)
    assert doc.current_version == 0


def test_committed_upload_keeps_its_blob(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    key = _upload(db, doc, admin, storage).storage_key
    db.commit()
    db.rollback()
    assert storage.exists(key)


def test_check_servable_policy(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    v = _upload(db, doc, admin, storage)

    assert check_servable(v, pending_policy="allow") is False
    with pytest.raises(ContentUnsafe):
        check_servable(v, pending_policy="block")

    v.av_scan_status = "clean"
    assert check_servable(v, pending_policy="block") is True

    v.av_scan_status = "infected"
    with pytest.raises(ContentUnsafe):
        check_servable(v, pending_policy="allow")


def test_scan_result_is_recorded_once(db, storage):
    admin = get_user(db, "admin@example.com")
    doc = _doc(db, admin)
    v = _upload(db, doc, admin, storage)

    with pytest.raises(ValidationError):
        record_scan_result(db, v, status="pending", result=None, user=admin)

    record_scan_result(db, v, status="infected", result="EICAR-Test-File", user=admin)
    assert v.av_scan_status == "infected"
    assert v.av_scan_result == "EICAR-Test-File"
    assert v.scanned_at is not None

    with pytest.raises(ConflictError):
        record_scan_result(db, v, status="clean", result=None, user=admin)
    db.flush()
    assert db.scalars(select(AuditEvent).where(AuditEvent.action == "doc.version.scan")).one()


def _create_with_file(c, data=b"%PDF-1.4 first", filename="policy.pdf"):
    return c.post(
        "/documents",
        data={"title": "Backup policy", "doc_type": "policy", "tags": "backup,it", "file": (io.BytesIO(data), filename)},
        content_type="multipart/form-data",
    )


def test_http_create_with_file_then_upload_and_download(app, admin_client):
    r = _create_with_file(admin_client)
    assert r.status_code == 201, r.get_json()
    doc = r.get_json()
    assert doc["status"] == "draft"
    assert doc["tags"] == ["backup", "it"]
    assert doc["current_version"] == 1
    assert [v["version_number"] for v in doc["versions"]] == [1]

    r = admin_client.post(
        f"/documents/{doc['id']}/versions",
        data={"change_summary": "second", "file": (io.BytesIO(b"%PDF-1.4 second"), "policy.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.get_json()
    v2 = r.get_json()
    assert v2["version_number"] == 2
    assert v2["change_summary"] == "second"

    r = admin_client.get(f"/documents/{doc['id']}/versions")
    assert [v["version_number"] for v in r.get_json()["versions"]] == [1, 2]

    r = admin_client.get(f"/documents/versions/{v2['id']}/download")
    assert r.status_code == 200
    assert r.data == b"%PDF-1.4 second"
    assert r.headers["X-Content-Verified"] == "false"
    assert "attachment" in r.headers["Content-Disposition"]

    r = admin_client.post(f"/documents/versions/{v2['id']}/scan-result", json={"status": "clean"})
    assert r.status_code == 200
    r = admin_client.get(f"/documents/versions/{v2['id']}/preview")
    assert r.status_code == 200
    assert r.headers["X-Content-Verified"] == "true"


def test_http_infected_version_is_never_served(app, admin_client):
    doc = _create_with_file(admin_client).get_json()
    vid = doc["versions"][0]["id"]

    r = admin_client.post(f"/documents/versions/{vid}/scan-result", json={"status": "infected", "result": "Trojan"})
    assert r.status_code == 200
    assert r.get_json()["av_scan_status"] == "infected"

    for path in ("download", "preview"):
        r = admin_client.get(f"/documents/versions/{vid}/{path}")
        assert r.status_code == 403
        assert r.get_json()["error"] == "content_unsafe"

    r = admin_client.post(f"/documents/versions/{vid}/scan-result", json={"status": "clean"})
    assert r.status_code == 409


def test_http_pending_scan_blocked_by_policy(app, admin_client):
    app.config["PENDING_SCAN_POLICY"] = "block"
    doc = _create_with_file(admin_client).get_json()
    r = admin_client.get(f"/documents/versions/{doc['versions'][0]['id']}/download")
    assert r.status_code == 403
    assert r.get_json()["error"] == "content_unsafe"


def test_http_version_too_large(app, admin_client):
    app.config["MAX_VERSION_BYTES"] = 8
    r = admin_client.post("/documents", json={"title": "Big", "doc_type": "standard"})
    assert r.status_code == 201
    doc_id = r.get_json()["id"]
    r = admin_client.post(
        f"/documents/{doc_id}/versions",
        data={"file": (io.BytesIO(b"0123456789"), "big.txt")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 413
    assert r.get_json()["error"] == "content_too_large"
    assert admin_client.get(f"/documents/{doc_id}").get_json()["current_version"] == 0


def test_http_download_requires_permission(app, admin_client):
    doc = _create_with_file(admin_client).get_json()
    viewer = client_for(app, "viewer@example.com")
    r = viewer.get(f"/documents/versions/{doc['versions'][0]['id']}/download")
    assert r.status_code == 403
    assert r.get_json()["details"]["missing_permission"] == "docs.download"


def test_http_upload_without_csrf_token_is_rejected(app, admin_client):
    doc = admin_client.post("/documents", json={"title": "No token", "doc_type": "other"}).get_json()
    admin_client.environ_base.pop("HTTP_X_CSRF_TOKEN")
    r = admin_client.post(
        f"/documents/{doc['id']}/versions",
        data={"file": (io.BytesIO(b"abc"), "a.txt")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert r.get_json()["error"] == "csrf_failed"


def test_http_delete_draft_removes_blobs(app, admin_client, tmp_path):
    doc = _create_with_file(admin_client).get_json()
    blob = tmp_path / "storage" / "documents" / str(doc["id"]) / "v1" / "policy.pdf"
    assert blob.exists()

    r = admin_client.delete(f"/documents/{doc['id']}")
    assert r.status_code == 200
    assert r.get_json() == {"ok": True, "deleted_id": doc["id"]}
    assert not blob.exists()
    assert admin_client.get(f"/documents/{doc['id']}").status_code == 404


def test_http_upload_to_published_document(app, admin_client):
    doc = _create_with_file(admin_client).get_json()
    r = admin_client.post(f"/documents/{doc['id']}/publish")
    assert r.status_code == 200

    r = admin_client.post(
        f"/documents/{doc['id']}/versions",
        data={"change_summary": "annual review", "file": (io.BytesIO(b"%PDF-1.4 v2"), "policy.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.get_json()
    assert r.get_json()["version_number"] == 2

    body = admin_client.get(f"/documents/{doc['id']}").get_json()
    assert body["current_version"] == 2
    assert body["status"] == "approved"
