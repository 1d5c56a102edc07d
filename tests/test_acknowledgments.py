import io

import pytest
from sqlalchemy import select

from app.compliance.errors import ConflictError, PermissionDenied, ValidationError
from app.compliance.models import AuditEvent
from app.compliance.modules.document_control import lifecycle
from app.compliance.modules.document_control.acknowledgments import (
    acknowledge,
    create_campaign,
    pending_acknowledgments_for,
)
from app.compliance.modules.document_control.service import create_document, create_version

from conftest import client_for, get_user


@pytest.fixture()
def people(db):
    return {
        "admin": get_user(db, "admin@example.com"),
        "a1": get_user(db, "approver1@example.com"),
        "a2": get_user(db, "approver2@example.com"),
        "viewer": get_user(db, "viewer@example.com"),
    }


def _approved_doc(db, people, storage):
    admin = people["admin"]
    doc = create_document(db, {"title": "Clean desk policy", "doc_type": "policy"}, user=admin)
    version = create_version(
        db,
        doc,
        data=b"%PDF-1.4 clean desk",
        filename="clean-desk.pdf",
        content_type="application/pdf",
        change_summary=None,
        user=admin,
        storage=storage,
        max_bytes=1024,
    )
    version.av_scan_status = "clean"
    lifecycle.publish(db, doc, user=admin)
    return doc


def test_campaign_requires_an_approved_document(db, people, storage):
    doc = create_document(db, {"title": "Draft only", "doc_type": "other"}, user=people["admin"])
    with pytest.raises(ConflictError):
        create_campaign(db, doc, {"user_ids": [people["a1"].id]}, user=people["admin"])
    assert doc.ack_campaigns == []


def test_campaign_assigns_each_user_once(db, people, storage):
    doc = _approved_doc(db, people, storage)
    campaign = create_campaign(
        db,
        doc,
        {"title": "Read by Friday", "user_ids": [people["a1"].id, people["a2"].id, people["a1"].id]},
        user=people["admin"],
    )
    assert campaign.status == "active"
    assert campaign.version_number == 1
    assert sorted(a.user_id for a in campaign.acknowledgments) == sorted([people["a1"].id, people["a2"].id])
    assert all(a.status == "pending" for a in campaign.acknowledgments)


def test_audience_all_covers_every_active_user(db, people, storage):
    people["viewer"].is_active = False
    doc = _approved_doc(db, people, storage)
    campaign = create_campaign(db, doc, {"audience": "all"}, user=people["admin"])
    assert sorted(a.user_id for a in campaign.acknowledgments) == sorted(
        [people["admin"].id, people["a1"].id, people["a2"].id]
    )


def test_campaign_validation(db, people, storage):
    doc = _approved_doc(db, people, storage)
    with pytest.raises(ValidationError):
        create_campaign(db, doc, {"user_ids": []}, user=people["admin"])
    with pytest.raises(ValidationError):
        create_campaign(db, doc, {"user_ids": [99999]}, user=people["admin"])
    with pytest.raises(ValidationError):
        create_campaign(db, doc, {"audience": "department"}, user=people["admin"])


def test_acknowledge_once_then_campaign_completes(db, people, storage):
    doc = _approved_doc(db, people, storage)
    campaign = create_campaign(db, doc, {"user_ids": [people["a1"].id, people["a2"].id]}, user=people["admin"])

    (mine,) = pending_acknowledgments_for(db, people["a1"])
    assert mine.campaign_id == campaign.id
    assert pending_acknowledgments_for(db, people["viewer"]) == []

    with pytest.raises(PermissionDenied):
        acknowledge(db, mine, user=people["a2"])

    acknowledge(db, mine, user=people["a1"])
    assert mine.status == "acknowledged"
    assert mine.acknowledged_at is not None
    assert campaign.status == "active"
    assert pending_acknowledgments_for(db, people["a1"]) == []

    with pytest.raises(ConflictError):
        acknowledge(db, mine, user=people["a1"])

    (theirs,) = pending_acknowledgments_for(db, people["a2"])
    acknowledge(db, theirs, user=people["a2"])
    assert campaign.status == "completed"
    assert campaign.completed_at is not None

    db.flush()
    actions = db.scalars(select(AuditEvent.action).order_by(AuditEvent.id)).all()
    assert actions.count("doc.ack.acknowledge") == 2
    assert "doc.ack_campaign.create" in actions


def test_http_acknowledgment_flow(app, admin_client, user_ids):
    r = admin_client.post(
        "/documents",
        data={"title": "Remote work policy", "doc_type": "policy", "file": (io.BytesIO(b"%PDF-1.4 remote"), "remote.pdf")},
        content_type="multipart/form-data",
    )
    doc = r.get_json()
    url = f"/documents/{doc['id']}/ack-campaigns"

    r = admin_client.post(url, json={"user_ids": [user_ids["viewer@example.com"]]})
    assert r.status_code == 409

    assert admin_client.post(f"/documents/{doc['id']}/publish").status_code == 200
    r = admin_client.post(url, json={"user_ids": [user_ids["viewer@example.com"]], "deadline": "2026-11-30"})
    assert r.status_code == 201, r.get_json()
    campaign = r.get_json()
    assert (campaign["acknowledged"], campaign["total"]) == (0, 1)
    assert campaign["deadline"] == "2026-11-30T00:00:00"

    viewer = client_for(app, "viewer@example.com")
    r = viewer.post(url, json={"user_ids": [user_ids["viewer@example.com"]]})
    assert r.status_code == 403
    assert r.get_json()["details"]["missing_permission"] == "docs.ack_manage"

    pending = viewer.get("/approvals/acknowledgments").get_json()["acknowledgments"]
    assert len(pending) == 1
    assert pending[0]["document"]["id"] == doc["id"]
    ack_id = pending[0]["id"]

    assert admin_client.post(f"/documents/acknowledgments/{ack_id}/acknowledge").status_code == 403

    r = viewer.post(f"/documents/acknowledgments/{ack_id}/acknowledge")
    assert r.status_code == 200
    assert r.get_json()["status"] == "acknowledged"
    assert r.get_json()["campaign_status"] == "completed"

    r = viewer.post(f"/documents/acknowledgments/{ack_id}/acknowledge")
    assert r.status_code == 409
    assert viewer.get("/approvals/acknowledgments").get_json()["acknowledgments"] == []

    campaigns = admin_client.get(url).get_json()["campaigns"]
    assert [c["status"] for c in campaigns] == ["completed"]
    assert campaigns[0]["acknowledgments"][0]["acknowledged_at"] is not None
