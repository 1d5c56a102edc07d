from __future__ import annotations

import io

from flask import Blueprint, current_app, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.compliance.db import db_session
from app.compliance.errors import NotFound, ValidationError
from app.compliance.models import User
from app.compliance.modules.document_control import lifecycle
from app.compliance.modules.document_control.acknowledgments import (
    acknowledge,
    create_campaign,
    get_acknowledgment,
    pending_acknowledgments_for,
)
from app.compliance.modules.document_control.models import (
    AckCampaign,
    ApprovalStep,
    ApprovalWorkflow,
    Document,
    DocumentAcknowledgment,
    DocumentVersion,
)
from app.compliance.modules.document_control.service import (
    create_document,
    create_version,
    delete_document,
    document_tags,
    get_document,
    list_documents,
    list_versions,
    open_version,
    record_scan_result,
    update_document,
)
from app.compliance.modules.document_control.workflow import latest_workflow, pending_steps_for
from app.compliance.rbac import require_permission
from app.compliance.storage import storage_from_config
from app.compliance.utils import iso, json_payload

bp = Blueprint("doc_control", __name__)
approvals_bp = Blueprint("approvals", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def version_to_dict(v: DocumentVersion) -> dict:
    return {
        "id": v.id,
        "document_id": v.document_id,
        "version_number": v.version_number,
        "filename": v.filename,
        "content_type": v.content_type,
        "sha256": v.sha256,
        "size_bytes": v.size_bytes,
        "change_summary": v.change_summary,
        "av_scan_status": v.av_scan_status,
        "av_scan_result": v.av_scan_result,
        "scanned_at": iso(v.scanned_at),
        "created_at": iso(v.created_at),
        "created_by_user_id": v.created_by_user_id,
    }


def step_to_dict(st: ApprovalStep) -> dict:
    return {
        "id": st.id,
        "workflow_id": st.workflow_id,
        "step_order": st.step_order,
        "approver_id": st.approver_id,
        "status": st.status,
        "comment": st.comment,
        "deadline": iso(st.deadline),
        "is_overdue": st.is_overdue(),
        "activated_at": iso(st.activated_at),
        "completed_at": iso(st.completed_at),
    }


def workflow_to_dict(wf: ApprovalWorkflow) -> dict:
    return {
        "id": wf.id,
        "document_id": wf.document_id,
        "workflow_type": wf.workflow_type,
        "status": wf.status,
        "cancel_reason": wf.cancel_reason,
        "created_at": iso(wf.created_at),
        "started_at": iso(wf.started_at),
        "completed_at": iso(wf.completed_at),
        "created_by_user_id": wf.created_by_user_id,
        "steps": [step_to_dict(st) for st in wf.steps],
    }


def acknowledgment_to_dict(a: DocumentAcknowledgment) -> dict:
    return {
        "id": a.id,
        "campaign_id": a.campaign_id,
        "user_id": a.user_id,
        "status": a.status,
        "acknowledged_at": iso(a.acknowledged_at),
        "created_at": iso(a.created_at),
    }


def campaign_to_dict(c: AckCampaign) -> dict:
    acks = c.acknowledgments
    return {
        "id": c.id,
        "document_id": c.document_id,
        "version_number": c.version_number,
        "title": c.title,
        "description": c.description,
        "status": c.status,
        "deadline": iso(c.deadline),
        "created_at": iso(c.created_at),
        "completed_at": iso(c.completed_at),
        "created_by_user_id": c.created_by_user_id,
        "acknowledged": sum(1 for a in acks if a.status == "acknowledged"),
        "total": len(acks),
        "acknowledgments": [acknowledgment_to_dict(a) for a in acks],
    }


def document_to_dict(d: Document, *, with_versions: bool = False) -> dict:
    out = {
        "id": d.id,
        "tenant_id": d.tenant_id,
        "title": d.title,
        "code": d.code,
        "description": d.description,
        "doc_type": d.doc_type,
        "classification": d.classification,
        "tags": document_tags(d),
        "status": d.status,
        "current_version": d.current_version,
        "owner_user_id": d.owner_user_id,
        "superseded_by_id": d.superseded_by_id,
        "asset_id": d.asset_id,
        "created_at": iso(d.created_at),
        "updated_at": iso(d.updated_at),
        "created_by_user_id": d.created_by_user_id,
    }
    if with_versions:
        out["versions"] = [version_to_dict(v) for v in list_versions(d)]
    return out


def _get_doc(s: Session, doc_id: int) -> Document:
    return get_document(s, doc_id, tenant_id=_current_user().tenant_id)


def _get_version(s: Session, version_id: int) -> DocumentVersion:
    v = s.get(DocumentVersion, version_id)
    if not v or v.document.tenant_id != _current_user().tenant_id:
        raise NotFound(f"Version {version_id} not found.")
    return v


def _uploaded_file() -> tuple[bytes, str, str | None] | None:
    f = request.files.get("file")
    if not f or not f.filename:
        return None
    return f.read(), f.filename, f.mimetype


def _store_upload(s: Session, d: Document, upload: tuple[bytes, str, str | None], summary: str | None) -> DocumentVersion:
    data, filename, mimetype = upload
    return create_version(
        s,
        d,
        data=data,
        filename=filename,
        content_type=mimetype,
        change_summary=summary,
        user=_current_user(),
        storage=storage_from_config(current_app.config),
        max_bytes=int(current_app.config["MAX_VERSION_BYTES"]),
    )


@bp.get("")
@require_permission("docs.view")
def documents_list():
    s = db_session()
    docs = list_documents(
        s,
        tenant_id=_current_user().tenant_id,
        status=(request.args.get("status") or "").strip() or None,
        doc_type=(request.args.get("doc_type") or "").strip() or None,
        q=(request.args.get("q") or "").strip() or None,
    )
    return jsonify({"documents": [document_to_dict(d) for d in docs]})


@bp.post("")
@require_permission("docs.create")
def documents_create():
    s = db_session()
    u = _current_user()
    payload = json_payload()
    d = create_document(s, payload, user=u)
    upload = _uploaded_file()
    if upload is not None:
        _store_upload(s, d, upload, payload.get("change_summary"))
    s.commit()
    current_app.logger.info("Document %s created by %s", d.id, u.email)
    return jsonify(document_to_dict(d, with_versions=True)), 201


@bp.get("/<int:doc_id>")
@require_permission("docs.view")
def documents_detail(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    return jsonify(document_to_dict(d, with_versions=True))


@bp.patch("/<int:doc_id>")
@require_permission("docs.edit")
def documents_update(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    changes = update_document(s, d, json_payload(), user=_current_user())
    s.commit()
    return jsonify({"document": document_to_dict(d), "changed": sorted(changes)})


@bp.delete("/<int:doc_id>")
@require_permission("docs.delete")
def documents_delete(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    keys = delete_document(s, d, user=_current_user())
    s.commit()

    # Rows are gone; leftover blobs are only orphans.
    failed = storage_from_config(current_app.config).delete_many(keys)
    if failed:
        current_app.logger.warning("Document %s deleted but %d blob(s) remain: %s", doc_id, len(failed), ", ".join(failed))
    return jsonify({"ok": True, "deleted_id": doc_id})


@bp.post("/<int:doc_id>/versions")
@require_permission("docs.edit")
def versions_create(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    upload = _uploaded_file()
    if upload is None:
        raise ValidationError("Choose a file to upload.", details={"field": "file"})
    v = _store_upload(s, d, upload, request.form.get("change_summary"))
    s.commit()
    return jsonify(version_to_dict(v)), 201


@bp.get("/<int:doc_id>/versions")
@require_permission("docs.view")
def versions_list(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    return jsonify({"versions": [version_to_dict(v) for v in list_versions(d)]})


def _serve_version(version_id: int, *, as_attachment: bool):
    s = db_session()
    v = _get_version(s, version_id)
    data, verified = open_version(
        s,
        v,
        user=_current_user(),
        storage=storage_from_config(current_app.config),
        pending_policy=current_app.config["PENDING_SCAN_POLICY"],
    )
    s.commit()
    resp = send_file(
        io.BytesIO(data),
        mimetype=v.content_type or "application/octet-stream",
        as_attachment=as_attachment,
        download_name=v.filename,
        max_age=0,
    )
    resp.headers["X-Content-Verified"] = "true" if verified else "false"
    return resp


@bp.get("/versions/<int:version_id>/download")
@require_permission("docs.download")
def versions_download(version_id: int):
    return _serve_version(version_id, as_attachment=True)


@bp.get("/versions/<int:version_id>/preview")
@require_permission("docs.download")
def versions_preview(version_id: int):
    return _serve_version(version_id, as_attachment=False)


@bp.post("/versions/<int:version_id>/scan-result")
@require_permission("docs.scan")
def versions_scan_result(version_id: int):
    s = db_session()
    v = _get_version(s, version_id)
    payload = json_payload()
    record_scan_result(
        s,
        v,
        status=(payload.get("status") or "").strip().lower(),
        result=payload.get("result"),
        user=_current_user(),
    )
    s.commit()
    return jsonify(version_to_dict(v))


@bp.post("/<int:doc_id>/submit")
@require_permission("docs.submit")
def documents_submit(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    wf = lifecycle.submit(s, d, json_payload(), user=_current_user())
    s.commit()
    return jsonify({"document": document_to_dict(d), "workflow": workflow_to_dict(wf)}), 201


@bp.post("/<int:doc_id>/approval/<int:step_id>")
@require_permission("docs.approve")
def documents_approval(doc_id: int, step_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    step = s.get(ApprovalStep, step_id)
    if not step or step.workflow.document_id != d.id:
        raise NotFound(f"Step {step_id} not found for document {doc_id}.")
    payload = json_payload()
    wf = lifecycle.decide_step(
        s,
        d,
        step,
        action=payload.get("action") or "",
        comment=payload.get("comment"),
        user=_current_user(),
    )
    s.commit()
    return jsonify({"document": document_to_dict(d), "workflow": workflow_to_dict(wf)})


@bp.post("/<int:doc_id>/workflow/cancel")
@require_permission("docs.submit")
def documents_workflow_cancel(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    wf = lifecycle.cancel(s, d, reason=json_payload().get("reason"), user=_current_user())
    s.commit()
    return jsonify({"document": document_to_dict(d), "workflow": workflow_to_dict(wf)})


@bp.get("/<int:doc_id>/workflow")
@require_permission("docs.view")
def documents_workflow(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    wf = latest_workflow(d)
    if wf is None:
        raise NotFound(f"Document {doc_id} has no workflow.")
    return jsonify(workflow_to_dict(wf))


@bp.get("/<int:doc_id>/workflows")
@require_permission("docs.view")
def documents_workflows(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    return jsonify({"workflows": [workflow_to_dict(wf) for wf in sorted(d.workflows, key=lambda w: w.id, reverse=True)]})


@bp.post("/<int:doc_id>/publish")
@require_permission("docs.publish")
def documents_publish(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    lifecycle.publish(s, d, user=_current_user())
    s.commit()
    return jsonify(document_to_dict(d))


@bp.post("/<int:doc_id>/obsolete")
@require_permission("docs.obsolete")
def documents_obsolete(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    lifecycle.obsolete(s, d, json_payload(), user=_current_user())
    s.commit()
    return jsonify(document_to_dict(d))


@approvals_bp.get("/pending")
@require_permission("docs.approve")
def approvals_pending():
    s = db_session()
    steps = pending_steps_for(s, _current_user())
    out = []
    for st in steps:
        doc = st.workflow.document
        out.append(
            {
                **step_to_dict(st),
                "workflow_type": st.workflow.workflow_type,
                "document": {"id": doc.id, "title": doc.title, "code": doc.code, "status": doc.status},
            }
        )
    return jsonify({"steps": out})


@bp.post("/<int:doc_id>/ack-campaigns")
@require_permission("docs.ack_manage")
def documents_ack_campaign_create(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    campaign = create_campaign(s, d, json_payload(), user=_current_user())
    s.commit()
    return jsonify(campaign_to_dict(campaign)), 201


@bp.get("/<int:doc_id>/ack-campaigns")
@require_permission("docs.view")
def documents_ack_campaigns(doc_id: int):
    s = db_session()
    d = _get_doc(s, doc_id)
    return jsonify({"campaigns": [campaign_to_dict(c) for c in sorted(d.ack_campaigns, key=lambda c: c.id, reverse=True)]})


@bp.post("/acknowledgments/<int:ack_id>/acknowledge")
@require_permission("docs.view")
def documents_acknowledge(ack_id: int):
    s = db_session()
    u = _current_user()
    ack = acknowledge(s, get_acknowledgment(s, ack_id, tenant_id=u.tenant_id), user=u)
    s.commit()
    return jsonify({**acknowledgment_to_dict(ack), "campaign_status": ack.campaign.status})


@approvals_bp.get("/acknowledgments")
@require_permission("docs.view")
def approvals_acknowledgments():
    s = db_session()
    out = []
    for a in pending_acknowledgments_for(s, _current_user()):
        c = a.campaign
        doc = c.document
        out.append(
            {
                **acknowledgment_to_dict(a),
                "campaign": {"id": c.id, "title": c.title, "version_number": c.version_number, "deadline": iso(c.deadline)},
                "document": {"id": doc.id, "title": doc.title, "code": doc.code, "status": doc.status},
            }
        )
    return jsonify({"acknowledgments": out})
