"""
Acknowledgment campaigns: after a document is approved, its audience confirms
they have read the version in force. Each assignee acknowledges once; the
campaign completes when nobody is left pending.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.compliance.audit import record_event
from app.compliance.errors import ConflictError, NotFound, PermissionDenied, ValidationError
from app.compliance.models import User
from app.compliance.modules.document_control.models import AckCampaign, Document, DocumentAcknowledgment
from app.compliance.utils import clean_str, parse_datetime, parse_int

logger = logging.getLogger(__name__)

AUDIENCE_TYPES = ("all", "users")


def _audience(s: Session, payload: dict[str, Any], *, tenant_id: str) -> list[int]:
    audience = (clean_str(payload.get("audience"), field="audience") or "users").lower()
    if audience not in AUDIENCE_TYPES:
        raise ValidationError(
            f"audience must be one of: {', '.join(AUDIENCE_TYPES)}.",
            details={"field": "audience", "allowed": list(AUDIENCE_TYPES)},
        )
    if audience == "all":
        stmt = select(User.id).where(User.tenant_id == tenant_id, User.is_active.is_(True)).order_by(User.id)
        return list(s.scalars(stmt).all())

    raw = payload.get("user_ids")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("user_ids must be a non-empty list.", details={"field": "user_ids"})
    ids: dict[int, None] = {}
    for value in raw:
        user_id = parse_int(value, field="user_ids")
        u = s.get(User, user_id) if user_id is not None else None
        if not u or not u.is_active or u.tenant_id != tenant_id:
            raise ValidationError(
                f"User {value} is not an active user.",
                details={"field": "user_ids", "value": value},
            )
        ids.setdefault(u.id, None)
    return list(ids)


def create_campaign(s: Session, doc: Document, payload: dict[str, Any], *, user: User) -> AckCampaign:
    """Open a campaign for the approved version of `doc` with one pending row per assignee."""
    if doc.status != "approved":
        raise ConflictError(f"Only approved documents can be acknowledged (status is {doc.status}).")
    user_ids = _audience(s, payload, tenant_id=doc.tenant_id)
    if not user_ids:
        raise ValidationError("The campaign audience is empty.", details={"field": "audience"})

    campaign = AckCampaign(
        document_id=doc.id,
        version_number=doc.current_version,
        title=clean_str(payload.get("title"), field="title", max_len=255) or f"Acknowledge: {doc.title}",
        description=clean_str(payload.get("description"), field="description"),
        deadline=parse_datetime(payload.get("deadline"), field="deadline"),
        status="active",
        created_by_user_id=user.id,
    )
    for user_id in user_ids:
        campaign.acknowledgments.append(DocumentAcknowledgment(user_id=user_id, status="pending"))
    doc.ack_campaigns.append(campaign)
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.ack_campaign.create",
        entity_type="AckCampaign",
        entity_id=campaign.id,
        metadata={"doc_id": doc.id, "version_number": campaign.version_number, "user_ids": user_ids},
    )
    logger.info("Acknowledgment campaign %s for document %s: %s assignees", campaign.id, doc.id, len(user_ids))
    return campaign


def get_acknowledgment(s: Session, ack_id: int, *, tenant_id: str) -> DocumentAcknowledgment:
    ack = s.get(DocumentAcknowledgment, ack_id)
    if not ack or ack.campaign.document.tenant_id != tenant_id:
        raise NotFound(f"Acknowledgment {ack_id} not found.")
    return ack


def pending_acknowledgments_for(s: Session, user: User) -> list[DocumentAcknowledgment]:
    stmt = (
        select(DocumentAcknowledgment)
        .join(AckCampaign, DocumentAcknowledgment.campaign_id == AckCampaign.id)
        .join(Document, AckCampaign.document_id == Document.id)
        .where(
            DocumentAcknowledgment.user_id == user.id,
            DocumentAcknowledgment.status == "pending",
            AckCampaign.status == "active",
            Document.tenant_id == user.tenant_id,
        )
        .order_by(DocumentAcknowledgment.created_at.asc(), DocumentAcknowledgment.id.asc())
    )
    return list(s.scalars(stmt).all())


def acknowledge(s: Session, ack: DocumentAcknowledgment, *, user: User) -> DocumentAcknowledgment:
    if ack.user_id != user.id:
        raise PermissionDenied("Only the assignee can acknowledge.")
    campaign = ack.campaign
    if campaign.status != "active":
        raise ConflictError(f"Campaign {campaign.id} is {campaign.status}.")

    now = datetime.utcnow()
    res = s.execute(
        update(DocumentAcknowledgment)
        .where(DocumentAcknowledgment.id == ack.id, DocumentAcknowledgment.status == "pending")
        .values(status="acknowledged", acknowledged_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise ConflictError(f"Acknowledgment {ack.id} was already recorded.")
    set_committed_value(ack, "status", "acknowledged")
    set_committed_value(ack, "acknowledged_at", now)

    left = s.scalar(
        select(func.count())
        .select_from(DocumentAcknowledgment)
        .where(DocumentAcknowledgment.campaign_id == campaign.id, DocumentAcknowledgment.status == "pending")
    )
    if not left:
        campaign.status = "completed"
        campaign.completed_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="doc.ack.acknowledge",
        entity_type="DocumentAcknowledgment",
        entity_id=ack.id,
        metadata={
            "doc_id": campaign.document_id,
            "campaign_id": campaign.id,
            "version_number": campaign.version_number,
            "campaign_status": campaign.status,
        },
    )
    if campaign.status == "completed":
        logger.info("Acknowledgment campaign %s completed", campaign.id)
    return ack
