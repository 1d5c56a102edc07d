"""
Approval workflow engine.

A workflow moves pending -> in_progress -> approved | rejected, or is
cancelled explicitly from pending/in_progress. Steps are acted on by their
approver only; sequential workflows expose one step at a time, parallel
workflows expose every pending step.

Every mutation starts with a conditional bump of `lock_version` on the
workflow row. That UPDATE takes the row lock (PostgreSQL) or the database
write lock (SQLite), so concurrent actions on the same workflow are applied
one at a time and each sees the outcome of the previous one. The engine does
not touch Document.status; the lifecycle module reacts to its outcomes.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.errors import ConflictError, NotFound, PermissionDenied, ValidationError
from app.compliance.models import User
from app.compliance.modules.document_control.models import (
    WORKFLOW_ACTIVE_STATUSES,
    WORKFLOW_TYPES,
    ApprovalStep,
    ApprovalWorkflow,
    Document,
)
from app.compliance.utils import clean_str, parse_datetime, parse_int

logger = logging.getLogger(__name__)

STEP_ACTIONS = {"approve": "approved", "reject": "rejected"}


def active_workflow(doc: Document) -> ApprovalWorkflow | None:
    for wf in doc.workflows:
        if wf.is_active:
            return wf
    return None


def latest_workflow(doc: Document) -> ApprovalWorkflow | None:
    return max(doc.workflows, key=lambda w: w.id, default=None)


def get_step(wf: ApprovalWorkflow, step_id: int) -> ApprovalStep:
    for step in wf.steps:
        if step.id == step_id:
            return step
    raise NotFound(f"Step {step_id} not found in workflow {wf.id}.")


def validate_steps(s: Session, raw_steps: Any, *, tenant_id: str) -> list[dict[str, Any]]:
    """
    Normalize the submitted step list. `step_order` defaults to the 1-based
    position; orders must be positive and unique; approvers must be active
    users of the same tenant.
    """
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValidationError("A workflow needs at least one approval step.", details={"field": "steps"})

    out: list[dict[str, Any]] = []
    seen_orders: set[int] = set()
    for idx, raw in enumerate(raw_steps, start=1):
        if not isinstance(raw, dict):
            raise ValidationError("Each step must be an object.", details={"field": "steps", "index": idx - 1})
        order = parse_int(raw.get("step_order"), field="step_order")
        if order is None:
            order = idx
        if order < 1:
            raise ValidationError("step_order must be positive.", details={"field": "step_order", "value": order})
        if order in seen_orders:
            raise ValidationError("step_order values must be unique.", details={"field": "step_order", "value": order})
        seen_orders.add(order)

        approver_id = parse_int(raw.get("approver_id"), field="approver_id")
        if approver_id is None:
            raise ValidationError("approver_id is required for every step.", details={"field": "approver_id"})
        approver = s.get(User, approver_id)
        if not approver or not approver.is_active or approver.tenant_id != tenant_id:
            raise ValidationError(
                f"Approver {approver_id} is not an active user.",
                details={"field": "approver_id", "value": approver_id},
            )
        out.append(
            {
                "step_order": order,
                "approver_id": approver.id,
                "deadline": parse_datetime(raw.get("deadline"), field="deadline"),
            }
        )
    return sorted(out, key=lambda st: st["step_order"])


def create_workflow(
    s: Session,
    doc: Document,
    *,
    workflow_type: str,
    steps: list[dict[str, Any]],
    user: User,
) -> ApprovalWorkflow:
    if workflow_type not in WORKFLOW_TYPES:
        raise ValidationError(
            f"workflow_type must be one of: {', '.join(WORKFLOW_TYPES)}.",
            details={"field": "workflow_type"},
        )
    if active_workflow(doc) is not None:
        raise ConflictError(f"Document {doc.id} already has an active workflow.")

    wf = ApprovalWorkflow(
        document_id=doc.id,
        workflow_type=workflow_type,
        status="pending",
        lock_version=0,
        created_by_user_id=user.id,
    )
    for st in steps:
        wf.steps.append(
            ApprovalStep(
                step_order=st["step_order"],
                approver_id=st["approver_id"],
                deadline=st.get("deadline"),
                status="pending",
            )
        )
    doc.workflows.append(wf)
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.workflow.create",
        entity_type="ApprovalWorkflow",
        entity_id=str(wf.id),
        metadata={
            "doc_id": doc.id,
            "workflow_type": workflow_type,
            "steps": [{"step_order": st.step_order, "approver_id": st.approver_id} for st in wf.steps],
        },
    )
    return wf


def _lock(s: Session, wf: ApprovalWorkflow, *, statuses: tuple[str, ...]) -> None:
    """
    Bump lock_version if the workflow is still in one of `statuses`, then
    reload it so the caller decides on committed state. Zero rows means another
    request moved the workflow on first.
    """
    s.flush()
    stmt = (
        update(ApprovalWorkflow)
        .where(ApprovalWorkflow.id == wf.id, ApprovalWorkflow.status.in_(statuses))
        .values(lock_version=ApprovalWorkflow.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if s.execute(stmt).rowcount == 0:
        s.refresh(wf)
        raise ConflictError(f"Workflow {wf.id} is {wf.status}; the action no longer applies.")
    s.refresh(wf)
    for step in wf.steps:
        s.refresh(step)


def eligible_steps(wf: ApprovalWorkflow) -> list[ApprovalStep]:
    if wf.status != "in_progress":
        return []
    pending = [st for st in wf.steps if st.status == "pending"]
    if wf.workflow_type == "sequential":
        return pending[:1]
    return pending


def start_workflow(s: Session, wf: ApprovalWorkflow, *, user: User) -> ApprovalWorkflow:
    _lock(s, wf, statuses=("pending",))
    now = datetime.utcnow()
    wf.status = "in_progress"
    wf.started_at = now
    for step in eligible_steps(wf):
        step.activated_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.workflow.start",
        entity_type="ApprovalWorkflow",
        entity_id=str(wf.id),
        metadata={"doc_id": wf.document_id, "workflow_type": wf.workflow_type},
    )
    return wf


def _skip_pending(wf: ApprovalWorkflow, now: datetime) -> list[int]:
    skipped = []
    for step in wf.steps:
        if step.status == "pending":
            step.status = "skipped"
            step.completed_at = now
            skipped.append(step.id)
    return skipped


def act_on_step(
    s: Session,
    wf: ApprovalWorkflow,
    step: ApprovalStep,
    *,
    action: str,
    comment: str | None,
    user: User,
) -> ApprovalWorkflow:
    """
    Approve or reject a step. Returns the workflow; its status tells the
    caller whether the workflow reached a terminal outcome.
    """
    decision = STEP_ACTIONS.get((action or "").strip().lower())
    if decision is None:
        raise ValidationError("action must be 'approve' or 'reject'.", details={"field": "action"})
    if step.approver_id != user.id:
        raise PermissionDenied("Only the assigned approver can act on this step.")
    comment = clean_str(comment, field="comment")

    _lock(s, wf, statuses=("in_progress",))

    if step.status != "pending":
        raise ConflictError(f"Step {step.id} is already {step.status}.")
    if step not in eligible_steps(wf):
        raise ConflictError(f"Step {step.id} is waiting on earlier steps.")

    now = datetime.utcnow()
    res = s.execute(
        update(ApprovalStep)
        .where(ApprovalStep.id == step.id, ApprovalStep.status == "pending")
        .values(status=decision, comment=comment, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise ConflictError(f"Step {step.id} was already acted on.")
    s.refresh(step)

    skipped: list[int] = []
    if decision == "rejected":
        skipped = _skip_pending(wf, now)
        wf.status = "rejected"
        wf.completed_at = now
    elif all(st.status == "approved" for st in wf.steps):
        wf.status = "approved"
        wf.completed_at = now
    else:
        for nxt in eligible_steps(wf):
            if nxt.activated_at is None:
                nxt.activated_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action=f"doc.approval.{action.strip().lower()}",
        entity_type="ApprovalStep",
        entity_id=str(step.id),
        reason=comment,
        metadata={
            "doc_id": wf.document_id,
            "workflow_id": wf.id,
            "step_order": step.step_order,
            "workflow_status": wf.status,
            "skipped_steps": skipped,
        },
    )
    if wf.status not in WORKFLOW_ACTIVE_STATUSES:
        logger.info("Workflow %s for document %s finished: %s", wf.id, wf.document_id, wf.status)
    return wf


def cancel_workflow(s: Session, wf: ApprovalWorkflow, *, reason: str | None, user: User) -> ApprovalWorkflow:
    reason = clean_str(reason, field="reason", max_len=512)
    _lock(s, wf, statuses=WORKFLOW_ACTIVE_STATUSES)
    now = datetime.utcnow()
    skipped = _skip_pending(wf, now)
    wf.status = "cancelled"
    wf.cancel_reason = reason
    wf.completed_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.workflow.cancel",
        entity_type="ApprovalWorkflow",
        entity_id=str(wf.id),
        reason=reason,
        metadata={"doc_id": wf.document_id, "skipped_steps": skipped},
    )
    logger.info("Workflow %s for document %s cancelled", wf.id, wf.document_id)
    return wf


def pending_steps_for(s: Session, user: User) -> list[ApprovalStep]:
    """Steps the user can act on right now, oldest activation first."""
    stmt = (
        select(ApprovalStep)
        .join(ApprovalWorkflow, ApprovalStep.workflow_id == ApprovalWorkflow.id)
        .join(Document, ApprovalWorkflow.document_id == Document.id)
        .where(
            ApprovalStep.approver_id == user.id,
            ApprovalStep.status == "pending",
            ApprovalWorkflow.status == "in_progress",
            Document.tenant_id == user.tenant_id,
        )
        .order_by(ApprovalStep.activated_at.asc(), ApprovalStep.id.asc())
    )
    return [st for st in s.scalars(stmt).all() if st in eligible_steps(st.workflow)]
