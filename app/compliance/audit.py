from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from flask import g, has_app_context, has_request_context, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.compliance.models import AuditEvent, User
from app.compliance.utils import iso

AUDIT_PAGE_SIZE = 200


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append an audit event to the caller's unit of work; it commits or rolls back
    with the change it describes. Outside a request (scripts, seeds) the
    request id and client ip stay empty.
    """
    if request_id is None and has_app_context():
        request_id = g.get("request_id")
    ev = AuditEvent(
        request_id=request_id,
        client_ip=request.remote_addr if has_request_context() else None,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev


@dataclass(frozen=True)
class AuditFilter:
    action: str = ""  # substring
    actor_email: str = ""  # substring, case-insensitive
    entity_type: str = ""
    entity_id: str = ""
    date_from: date | None = None  # inclusive
    date_to: date | None = None  # inclusive


def query_events(s: Session, flt: AuditFilter, *, limit: int = AUDIT_PAGE_SIZE) -> list[AuditEvent]:
    """Newest events first, narrowed by `flt`."""
    stmt = select(AuditEvent)
    if flt.action:
        stmt = stmt.where(AuditEvent.action.like(f"%{flt.action}%"))
    if flt.actor_email:
        stmt = stmt.where(AuditEvent.actor_user_email.like(f"%{flt.actor_email.lower()}%"))
    if flt.entity_type:
        stmt = stmt.where(AuditEvent.entity_type == flt.entity_type)
    if flt.entity_id:
        stmt = stmt.where(AuditEvent.entity_id == flt.entity_id)
    if flt.date_from:
        stmt = stmt.where(AuditEvent.created_at >= datetime.combine(flt.date_from, time.min))
    if flt.date_to:
        stmt = stmt.where(AuditEvent.created_at < datetime.combine(flt.date_to + timedelta(days=1), time.min))
    stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit)
    return list(s.scalars(stmt).all())


def event_to_dict(ev: AuditEvent) -> dict:
    return {
        "id": ev.id,
        "created_at": iso(ev.created_at),
        "request_id": ev.request_id,
        "client_ip": ev.client_ip,
        "actor_user_id": ev.actor_user_id,
        "actor_user_email": ev.actor_user_email,
        "action": ev.action,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
    }
