import base64
import json

import pytest
from sqlalchemy import select

from app.compliance.db import session_scope
from app.compliance.errors import ConflictError, PdfUnavailable
from app.compliance.models import AuditEvent
from app.compliance.modules.templates import service as template_service
from app.compliance.modules.templates.defaults import SYSTEM_TEMPLATES
from app.compliance.modules.templates.service import seed_system_templates

from conftest import client_for, get_user

CUSTOM = "<h1>{{asset_name}}</h1><p>{{inventory_number}} / {{location}} / {{custom_note}}</p>"


def _create_template(c, **overrides):
    payload = {"name": "Transfer act", "template_type": "transfer_act", "content": CUSTOM, **overrides}
    return c.post("/admin/templates", json=payload)


def _create_asset(c, **overrides):
    payload = {"name": "Workstation <7>", "asset_type": "HW", "location": "Room 101", **overrides}
    r = c.post("/assets", json=payload)
    assert r.status_code == 201, r.get_json()
    return r.get_json()


def test_seed_is_idempotent(db):
    admin = get_user(db, "admin@example.com")
    first = seed_system_templates(db, tenant_id="default", user=admin)
    second = seed_system_templates(db, tenant_id="default", user=admin)
    assert len(first) == len(SYSTEM_TEMPLATES)
    assert second == []
    assert all(t.is_system for t in first)


def test_system_templates_are_read_only_but_copyable(app, admin_client):
    r = admin_client.post("/admin/templates/seed")
    assert r.status_code == 200
    assert len(r.get_json()["created"]) == len(SYSTEM_TEMPLATES)
    assert admin_client.post("/admin/templates/seed").get_json()["created"] == []

    listed = admin_client.get("/admin/templates?is_system=true").get_json()["templates"]
    assert len(listed) == len(SYSTEM_TEMPLATES)
    assert "content" not in listed[0]
    system_id = listed[0]["id"]

    r = admin_client.put(f"/admin/templates/{system_id}", json={"name": "Mine now"})
    assert r.status_code == 409
    r = admin_client.delete(f"/admin/templates/{system_id}")
    assert r.status_code == 409

    r = admin_client.post(f"/admin/templates/{system_id}/copy")
    assert r.status_code == 201
    copy = r.get_json()
    assert copy["is_system"] is False
    assert copy["name"] == f"{listed[0]['name']} (copy)"
    assert copy["content"] == admin_client.get(f"/admin/templates/{system_id}").get_json()["content"]

    r = admin_client.put(f"/admin/templates/{copy['id']}", json={"name": "Our passport", "is_active": False})
    assert r.status_code == 200
    assert r.get_json()["name"] == "Our passport"
    assert r.get_json()["is_active"] is False


def test_template_crud_and_validation(app, admin_client):
    assert _create_template(admin_client, name="ab").status_code == 400
    assert _create_template(admin_client, template_type="poster").status_code == 400
    assert _create_template(admin_client, content="<p>{{bad name}}</p>").status_code == 400

    r = _create_template(admin_client)
    assert r.status_code == 201
    t = r.get_json()
    assert t["variables"] == ["asset_name", "inventory_number", "location", "custom_note"]

    r = admin_client.delete(f"/admin/templates/{t['id']}")
    assert r.status_code == 200
    assert admin_client.get(f"/admin/templates/{t['id']}").status_code == 404
    assert all(x["id"] != t["id"] for x in admin_client.get("/admin/templates").get_json()["templates"])


def test_variables_catalogue(admin_client):
    names = [v["name"] for v in admin_client.get("/admin/templates/variables").get_json()["variables"]]
    assert "asset_name" in names
    assert "inventory_number" in names


def test_fill_template_renders_asset_values(app, admin_client):
    t = _create_template(admin_client).get_json()
    asset = _create_asset(admin_client)

    r = admin_client.post(
        f"/assets/{asset['id']}/fill-template",
        json={"template_id": t["id"], "additional_data": {"custom_note": "handed over"}},
    )
    assert r.status_code == 200, r.get_json()
    out = r.get_json()
    assert out["html"] == "<h1>Workstation &lt;7&gt;</h1><p> / Room 101 / handed over</p>"
    assert "pdf_base64" not in out
    assert "document_id" not in out


def test_fill_template_missing_or_inactive_template(app, admin_client):
    asset = _create_asset(admin_client)
    r = admin_client.post(f"/assets/{asset['id']}/fill-template", json={"template_id": 4242})
    assert r.status_code == 400

    t = _create_template(admin_client).get_json()
    admin_client.put(f"/admin/templates/{t['id']}", json={"is_active": False})
    r = admin_client.post(f"/assets/{asset['id']}/fill-template", json={"template_id": t["id"]})
    assert r.status_code == 400

    assert admin_client.post("/assets/999/fill-template", json={"template_id": t["id"]}).status_code == 404


def test_fill_template_pdf_saved_as_document(app, admin_client, monkeypatch):
    monkeypatch.setattr(template_service, "html_to_pdf", lambda html: b"%PDF-1.7 fake")
    t = _create_template(admin_client).get_json()
    asset = _create_asset(admin_client, name="Laptop 3")

    r = admin_client.post(
        f"/assets/{asset['id']}/fill-template",
        json={"template_id": t["id"], "generate_pdf": True, "save_as_document": True},
    )
    assert r.status_code == 200, r.get_json()
    out = r.get_json()
    assert base64.b64decode(out["pdf_base64"]) == b"%PDF-1.7 fake"

    doc = admin_client.get(f"/documents/{out['document_id']}").get_json()
    assert doc["title"] == "Passport Laptop 3"
    assert doc["status"] == "draft"
    assert doc["doc_type"] == "other"
    assert doc["tags"] == ["passport", "assets"]
    assert len(doc["versions"]) == 1
    version = doc["versions"][0]
    assert version["filename"].endswith(".pdf")
    assert version["content_type"] == "application/pdf"

    r = admin_client.get(f"/documents/versions/{version['id']}/download")
    assert r.data == b"%PDF-1.7 fake"


def test_fill_template_saves_html_when_no_pdf(app, admin_client):
    t = _create_template(admin_client).get_json()
    asset = _create_asset(admin_client)
    out = admin_client.post(
        f"/assets/{asset['id']}/fill-template",
        json={"template_id": t["id"], "save_as_document": True, "document_title": "Act #1"},
    ).get_json()
    doc = admin_client.get(f"/documents/{out['document_id']}").get_json()
    assert doc["title"] == "Act #1"
    assert doc["versions"][0]["filename"].endswith(".html")


def test_fill_template_pdf_unavailable_is_503_and_saves_nothing(app, admin_client, monkeypatch):
    def _broken(html):
        raise PdfUnavailable("PDF generation requires WeasyPrint.")

    monkeypatch.setattr(template_service, "html_to_pdf", _broken)
    t = _create_template(admin_client).get_json()
    asset = _create_asset(admin_client)

    r = admin_client.post(
        f"/assets/{asset['id']}/fill-template",
        json={"template_id": t["id"], "generate_pdf": True, "save_as_document": True},
    )
    assert r.status_code == 503
    assert r.get_json()["error"] == "pdf_unavailable"
    assert admin_client.get("/documents").get_json()["documents"] == []


@pytest.mark.parametrize("path", ["/admin/templates", "/admin/templates/variables"])
def test_templates_need_permission(app, path):
    viewer = client_for(app, "viewer@example.com")
    r = viewer.get(path)
    assert r.status_code == 403
    assert r.get_json()["details"]["missing_permission"] == "templates.view"


def test_generated_document_is_linked_to_its_asset(app, admin_client):
    t = _create_template(admin_client).get_json()
    asset = _create_asset(admin_client, name="Server 12")
    other = _create_asset(admin_client, name="Server 13")

    out = admin_client.post(
        f"/assets/{asset['id']}/fill-template",
        json={"template_id": t["id"], "save_as_document": True},
    ).get_json()
    doc = admin_client.get(f"/documents/{out['document_id']}").get_json()
    assert doc["asset_id"] == asset["id"]

    r = admin_client.get(f"/assets/{asset['id']}/documents")
    assert r.status_code == 200
    assert r.get_json()["asset_id"] == asset["id"]
    assert [d["id"] for d in r.get_json()["documents"]] == [doc["id"]]
    assert admin_client.get(f"/assets/{other['id']}/documents").get_json()["documents"] == []
    assert admin_client.get("/assets/999/documents").status_code == 404

    with session_scope(app) as s:
        ev = s.scalars(select(AuditEvent).where(AuditEvent.action == "doc.generate")).one()
        assert ev.entity_id == str(doc["id"])
        assert json.loads(ev.metadata_json) == {
            "asset_id": asset["id"],
            "document_type": "transfer_act",
            "generated": True,
            "template_id": t["id"],
        }


def test_asset_documents_need_both_permissions(app, admin_client):
    asset = _create_asset(admin_client)
    viewer = client_for(app, "viewer@example.com")
    r = viewer.get(f"/assets/{asset['id']}/documents")
    assert r.status_code == 403
    assert r.get_json()["details"]["missing_permission"] == "assets.view"


def test_failed_fill_leaves_no_blob_behind(app, admin_client, monkeypatch, tmp_path):
    real_record_event = template_service.record_event

    def _refuse_generate(s, **kwargs):
        if kwargs["action"] == "doc.generate":
            raise ConflictError("Asset was changed concurrently.")
        return real_record_event(s, **kwargs)

    monkeypatch.setattr(template_service, "record_event", _refuse_generate)
    t = _create_template(admin_client).get_json()
    asset = _create_asset(admin_client)

    r = admin_client.post(
        f"/assets/{asset['id']}/fill-template",
        json={"template_id": t["id"], "save_as_document": True},
    )
    assert r.status_code == 409
    assert admin_client.get("/documents").get_json()["documents"] == []
    assert [p for p in (tmp_path / "storage").rglob("*") if p.is_file()] == []
