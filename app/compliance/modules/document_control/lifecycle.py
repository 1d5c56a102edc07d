from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.errors import ConflictError, ValidationError
from app.compliance.models import User
from app.compliance.modules.document_control.models import ApprovalStep, ApprovalWorkflow, Document
from app.compliance.modules.document_control.workflow import (
    act_on_step,
    active_workflow,
    cancel_workflow,
    create_workflow,
    start_workflow,
    validate_steps,
)
from app.compliance.utils import clean_str, parse_int

# Allowed Document.status transitions. Workflow outcomes drive the in_review edges.
STATUS_TRANSITIONS: dict[str, list[str]] = {
    "draft": ["in_review", "approved"],
    "in_review": ["approved", "draft"],
    "approved": ["obsolete"],
    "obsolete": [],
}

# Document status that follows each terminal workflow outcome.
WORKFLOW_OUTCOME_STATUS = {
    "approved": "approved",
    "rejected": "draft",
    "cancelled": "draft",
}


def can_transition_to(current: str, target: str) -> bool:
    return target in STATUS_TRANSITIONS.get(current, [])


def _set_status(s: Session, doc: Document, target: str, *, user: User, reason: str | None = None, **meta: Any) -> None:
    if not can_transition_to(doc.status, target):
        raise ConflictError(
            f"Cannot move document from {doc.status} to {target}.",
            details={"status": doc.status, "target": target},
        )
    old = doc.status
    doc.status = target
    doc.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="doc.status_change",
        entity_type="Document",
        entity_id=str(doc.id),
        reason=reason,
        metadata={"from": old, "to": target, **meta},
    )


def submit(s: Session, doc: Document, payload: dict[str, Any], *, user: User) -> ApprovalWorkflow:
    """Send a draft for approval: create and start the workflow, move the document to in_review."""
    if doc.status != "draft":
        raise ConflictError(f"Only draft documents can be submitted (status is {doc.status}).")
    if active_workflow(doc) is not None:
        raise ConflictError(f"Document {doc.id} already has an active workflow.")
    workflow_type = clean_str(payload.get("workflow_type"), field="workflow_type") or "sequential"
    steps = validate_steps(s, payload.get("steps"), tenant_id=doc.tenant_id)

    wf = create_workflow(s, doc, workflow_type=workflow_type, steps=steps, user=user)
    start_workflow(s, wf, user=user)
    _set_status(s, doc, "in_review", user=user, workflow_id=wf.id)
    return wf


def apply_workflow_outcome(s: Session, doc: Document, wf: ApprovalWorkflow, *, user: User) -> None:
    target = WORKFLOW_OUTCOME_STATUS.get(wf.status)
    if target is None or doc.status != "in_review":
        return
    _set_status(s, doc, target, user=user, reason=wf.cancel_reason, workflow_id=wf.id)


def decide_step(
    s: Session,
    doc: Document,
    step: ApprovalStep,
    *,
    action: str,
    comment: str | None,
    user: User,
) -> ApprovalWorkflow:
    wf = step.workflow
    act_on_step(s, wf, step, action=action, comment=comment, user=user)
    apply_workflow_outcome(s, doc, wf, user=user)
    return wf


def cancel(s: Session, doc: Document, *, reason: str | None, user: User) -> ApprovalWorkflow:
    wf = active_workflow(doc)
    if wf is None:
        raise ConflictError(f"Document {doc.id} has no active workflow.")
    cancel_workflow(s, wf, reason=reason, user=user)
    apply_workflow_outcome(s, doc, wf, user=user)
    return wf


def publish(s: Session, doc: Document, *, user: User) -> Document:
    """Approve a draft directly, without a workflow."""
    if doc.status != "draft":
        raise ConflictError(f"Only draft documents can be published (status is {doc.status}).")
    if not any(v.av_scan_status != "infected" for v in doc.versions):
        raise ConflictError("Cannot publish a document without a usable version.")
    _set_status(s, doc, "approved", user=user, published=True)
    return doc


def obsolete(s: Session, doc: Document, payload: dict[str, Any], *, user: User) -> Document:
    reason = clean_str(payload.get("reason"), field="reason", max_len=512, required=True)
    superseded_by_id = parse_int(payload.get("superseded_by_id"), field="superseded_by_id")
    if doc.status != "approved":
        raise ConflictError(f"Only approved documents can be made obsolete (status is {doc.status}).")
    if superseded_by_id is not None:
        if superseded_by_id == doc.id:
            raise ValidationError("A document cannot supersede itself.", details={"field": "superseded_by_id"})
        successor = s.get(Document, superseded_by_id)
        if not successor or successor.tenant_id != doc.tenant_id:
            raise ValidationError("superseded_by_id does not reference a document.", details={"field": "superseded_by_id"})
        if successor.status != "approved":
            raise ValidationError(
                "The superseding document must be approved.",
                details={"field": "superseded_by_id", "status": successor.status},
            )
        doc.superseded_by_id = successor.id
    _set_status(s, doc, "obsolete", user=user, reason=reason, superseded_by_id=superseded_by_id)
    return doc
