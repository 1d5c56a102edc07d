import pytest
from sqlalchemy import select

from app.compliance.errors import ConflictError, PermissionDenied, ValidationError
from app.compliance.models import AuditEvent
from app.compliance.modules.document_control import lifecycle
from app.compliance.modules.document_control.service import create_document
from app.compliance.modules.document_control.workflow import (
    cancel_workflow,
    eligible_steps,
    pending_steps_for,
    validate_steps,
)

from conftest import get_user


@pytest.fixture()
def people(db):
    return {
        "admin": get_user(db, "admin@example.com"),
        "a1": get_user(db, "approver1@example.com"),
        "a2": get_user(db, "approver2@example.com"),
    }


def _submit(db, people, workflow_type="sequential", approvers=("a1", "a2")):
    doc = create_document(db, {"title": "Incident response procedure", "doc_type": "procedure"}, user=people["admin"])
    wf = lifecycle.submit(
        db,
        doc,
        {"workflow_type": workflow_type, "steps": [{"approver_id": people[k].id} for k in approvers]},
        user=people["admin"],
    )
    return doc, wf


def test_sequential_workflow_exposes_one_step_at_a_time(db, people):
    doc, wf = _submit(db, people)
    step1, step2 = wf.steps
    assert doc.status == "in_review"
    assert wf.status == "in_progress"
    assert [st.step_order for st in wf.steps] == [1, 2]
    assert eligible_steps(wf) == [step1]
    assert step1.activated_at is not None and step2.activated_at is None

    assert pending_steps_for(db, people["a2"]) == []
    with pytest.raises(ConflictError):
        lifecycle.decide_step(db, doc, step2, action="approve", comment=None, user=people["a2"])

    lifecycle.decide_step(db, doc, step1, action="approve", comment="ok", user=people["a1"])
    assert step1.status == "approved"
    assert step1.comment == "ok"
    assert wf.status == "in_progress"
    assert doc.status == "in_review"
    assert eligible_steps(wf) == [step2]
    assert step2.activated_at is not None
    assert pending_steps_for(db, people["a2"]) == [step2]

    lifecycle.decide_step(db, doc, step2, action="approve", comment=None, user=people["a2"])
    assert wf.status == "approved"
    assert wf.completed_at is not None
    assert doc.status == "approved"


def test_reject_skips_remaining_steps_and_returns_document_to_draft(db, people):
    doc, wf = _submit(db, people)
    step1, step2 = wf.steps
    lifecycle.decide_step(db, doc, step1, action="reject", comment="needs scope section", user=people["a1"])

    assert step1.status == "rejected"
    assert step2.status == "skipped"
    assert wf.status == "rejected"
    assert doc.status == "draft"
    assert eligible_steps(wf) == []


def test_parallel_workflow_needs_every_approval(db, people):
    doc, wf = _submit(db, people, workflow_type="parallel")
    step1, step2 = wf.steps
    assert eligible_steps(wf) == [step1, step2]
    assert step2.activated_at is not None

    lifecycle.decide_step(db, doc, step2, action="approve", comment=None, user=people["a2"])
    assert wf.status == "in_progress"
    assert doc.status == "in_review"

    lifecycle.decide_step(db, doc, step1, action="approve", comment=None, user=people["a1"])
    assert wf.status == "approved"
    assert doc.status == "approved"


def test_parallel_reject_wins(db, people):
    doc, wf = _submit(db, people, workflow_type="parallel")
    step1, step2 = wf.steps
    lifecycle.decide_step(db, doc, step1, action="reject", comment=None, user=people["a1"])
    assert (step1.status, step2.status) == ("rejected", "skipped")
    assert doc.status == "draft"
    with pytest.raises(ConflictError):
        lifecycle.decide_step(db, doc, step2, action="approve", comment=None, user=people["a2"])


def test_three_step_sequential_reject_in_the_middle(db, people):
    doc, wf = _submit(db, people, approvers=("a1", "a2", "admin"))
    step1, step2, step3 = wf.steps

    with pytest.raises(ConflictError):
        lifecycle.decide_step(db, doc, step3, action="approve", comment=None, user=people["admin"])
    assert step3.status == "pending"

    lifecycle.decide_step(db, doc, step1, action="approve", comment=None, user=people["a1"])
    lifecycle.decide_step(db, doc, step2, action="reject", comment="out of date", user=people["a2"])

    assert [st.status for st in wf.steps] == ["approved", "rejected", "skipped"]
    assert wf.status == "rejected"
    assert doc.status == "draft"
    with pytest.raises(ConflictError):
        lifecycle.decide_step(db, doc, step3, action="approve", comment=None, user=people["admin"])


def test_three_step_parallel_waits_for_the_last_approval(db, people):
    doc, wf = _submit(db, people, workflow_type="parallel", approvers=("a1", "a2", "admin"))
    step1, step2, step3 = wf.steps

    lifecycle.decide_step(db, doc, step3, action="approve", comment=None, user=people["admin"])
    lifecycle.decide_step(db, doc, step1, action="approve", comment=None, user=people["a1"])
    assert [st.status for st in wf.steps] == ["approved", "pending", "approved"]
    assert wf.status == "in_progress"
    assert doc.status == "in_review"
    assert eligible_steps(wf) == [step2]

    lifecycle.decide_step(db, doc, step2, action="approve", comment=None, user=people["a2"])
    assert wf.status == "approved"
    assert doc.status == "approved"


def test_second_action_on_a_step_conflicts(db, people):
    doc, wf = _submit(db, people)
    step1 = wf.steps[0]
    lifecycle.decide_step(db, doc, step1, action="approve", comment=None, user=people["a1"])
    with pytest.raises(ConflictError):
        lifecycle.decide_step(db, doc, step1, action="reject", comment=None, user=people["a1"])
    assert step1.status == "approved"


def test_only_the_assigned_approver_can_act(db, people):
    doc, wf = _submit(db, people)
    with pytest.raises(PermissionDenied):
        lifecycle.decide_step(db, doc, wf.steps[0], action="approve", comment=None, user=people["a2"])
    with pytest.raises(ValidationError):
        lifecycle.decide_step(db, doc, wf.steps[0], action="maybe", comment=None, user=people["a1"])
    assert wf.steps[0].status == "pending"


def test_cancel_skips_pending_steps_and_reopens_draft(db, people):
    doc, wf = _submit(db, people)
    lifecycle.cancel(db, doc, reason="wrong approvers", user=people["admin"])

    assert wf.status == "cancelled"
    assert wf.cancel_reason == "wrong approvers"
    assert [st.status for st in wf.steps] == ["skipped", "skipped"]
    assert doc.status == "draft"

    with pytest.raises(ConflictError):
        lifecycle.cancel(db, doc, reason=None, user=people["admin"])
    with pytest.raises(ConflictError):
        cancel_workflow(db, wf, reason=None, user=people["admin"])


def test_resubmit_after_rejection_starts_a_new_workflow(db, people):
    doc, first = _submit(db, people, approvers=("a1",))
    lifecycle.decide_step(db, doc, first.steps[0], action="reject", comment=None, user=people["a1"])
    assert doc.status == "draft"

    second = lifecycle.submit(db, doc, {"steps": [{"approver_id": people["a2"].id}]}, user=people["admin"])
    assert second.id != first.id
    assert second.workflow_type == "sequential"
    assert doc.status == "in_review"
    assert len(doc.workflows) == 2


def test_submit_requires_a_draft(db, people):
    doc, _ = _submit(db, people)
    with pytest.raises(ConflictError):
        lifecycle.submit(db, doc, {"steps": [{"approver_id": people["a1"].id}]}, user=people["admin"])


def test_validate_steps(db, people):
    with pytest.raises(ValidationError):
        validate_steps(db, [], tenant_id="default")
    with pytest.raises(ValidationError):
        validate_steps(db, [{"approver_id": 99999}], tenant_id="default")
    with pytest.raises(ValidationError):
        validate_steps(
            db,
            [{"approver_id": people["a1"].id, "step_order": 1}, {"approver_id": people["a2"].id, "step_order": 1}],
            tenant_id="default",
        )
    with pytest.raises(ValidationError):
        validate_steps(db, [{"approver_id": people["a1"].id}], tenant_id="other-tenant")

    steps = validate_steps(
        db,
        [
            {"approver_id": people["a2"].id, "step_order": 5, "deadline": "2026-11-01T12:00:00Z"},
            {"approver_id": people["a1"].id, "step_order": 2},
        ],
        tenant_id="default",
    )
    assert [(st["step_order"], st["approver_id"]) for st in steps] == [(2, people["a1"].id), (5, people["a2"].id)]
    assert steps[1]["deadline"].isoformat() == "2026-11-01T12:00:00"


def test_workflow_actions_are_audited(db, people):
    doc, wf = _submit(db, people, approvers=("a1",))
    lifecycle.decide_step(db, doc, wf.steps[0], action="approve", comment="fine", user=people["a1"])
    db.flush()
    actions = db.scalars(select(AuditEvent.action).order_by(AuditEvent.id)).all()
    for expected in ("doc.create", "doc.workflow.create", "doc.workflow.start", "doc.approval.approve", "doc.status_change"):
        assert expected in actions
