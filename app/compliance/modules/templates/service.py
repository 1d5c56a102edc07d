from __future__ import annotations

import base64
import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.errors import ConflictError, NotFound, ValidationError
from app.compliance.models import User
from app.compliance.modules.document_control.service import create_document, create_version
from app.compliance.modules.templates.defaults import SYSTEM_TEMPLATES
from app.compliance.modules.templates.models import TEMPLATE_TYPES, DocumentTemplate
from app.compliance.modules.templates.pdf import html_to_pdf
from app.compliance.modules.templates.renderer import asset_variables, render, validate_template
from app.compliance.storage import Storage
from app.compliance.utils import clean_str, parse_bool, parse_int

logger = logging.getLogger(__name__)


def _template_type(value: Any, *, required: bool) -> str | None:
    tt = clean_str(value, field="template_type", required=required)
    if tt is not None and tt not in TEMPLATE_TYPES:
        raise ValidationError(
            f"template_type must be one of: {', '.join(TEMPLATE_TYPES)}.",
            details={"field": "template_type", "allowed": list(TEMPLATE_TYPES)},
        )
    return tt


def _template_name(value: Any) -> str:
    name = clean_str(value, field="name", max_len=255, required=True)
    if len(name) < 3:
        raise ValidationError("name must be at least 3 characters.", details={"field": "name"})
    return name


def _content(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("content is required.", details={"field": "content"})
    validate_template(value)
    return value


def list_templates(
    s: Session,
    *,
    tenant_id: str,
    template_type: str | None = None,
    is_system: bool | None = None,
    active_only: bool = False,
) -> list[DocumentTemplate]:
    stmt = select(DocumentTemplate).where(
        DocumentTemplate.tenant_id == tenant_id,
        DocumentTemplate.deleted_at.is_(None),
    )
    if template_type:
        stmt = stmt.where(DocumentTemplate.template_type == template_type)
    if is_system is not None:
        stmt = stmt.where(DocumentTemplate.is_system.is_(is_system))
    if active_only:
        stmt = stmt.where(DocumentTemplate.is_active.is_(True))
    stmt = stmt.order_by(DocumentTemplate.is_system.desc(), DocumentTemplate.name.asc())
    return list(s.scalars(stmt).all())


def get_template(s: Session, template_id: int, *, tenant_id: str) -> DocumentTemplate:
    t = s.get(DocumentTemplate, template_id)
    if not t or t.tenant_id != tenant_id or t.deleted_at is not None:
        raise NotFound(f"Template {template_id} not found.")
    return t


def create_template(s: Session, payload: dict[str, Any], *, user: User) -> DocumentTemplate:
    t = DocumentTemplate(
        tenant_id=user.tenant_id,
        name=_template_name(payload.get("name")),
        description=clean_str(payload.get("description"), field="description"),
        template_type=_template_type(payload.get("template_type"), required=True),
        content=_content(payload.get("content")),
        is_system=False,
        is_active=True,
        created_by_user_id=user.id,
    )
    s.add(t)
    s.flush()
    record_event(
        s,
        actor=user,
        action="template.create",
        entity_type="DocumentTemplate",
        entity_id=str(t.id),
        metadata={"name": t.name, "template_type": t.template_type},
    )
    return t


def _ensure_editable(t: DocumentTemplate) -> None:
    if t.is_system:
        raise ConflictError("System templates are read-only; copy the template to customise it.")


def update_template(s: Session, t: DocumentTemplate, payload: dict[str, Any], *, user: User) -> list[str]:
    _ensure_editable(t)
    changed: list[str] = []
    if "name" in payload:
        t.name = _template_name(payload.get("name"))
        changed.append("name")
    if "description" in payload:
        t.description = clean_str(payload.get("description"), field="description")
        changed.append("description")
    if "template_type" in payload:
        t.template_type = _template_type(payload.get("template_type"), required=True)
        changed.append("template_type")
    if "content" in payload:
        t.content = _content(payload.get("content"))
        changed.append("content")
    if "is_active" in payload:
        t.is_active = parse_bool(payload.get("is_active"))
        changed.append("is_active")
    if changed:
        t.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="template.update",
            entity_type="DocumentTemplate",
            entity_id=str(t.id),
            metadata={"fields": changed},
        )
    return changed


def delete_template(s: Session, t: DocumentTemplate, *, user: User) -> None:
    _ensure_editable(t)
    t.deleted_at = datetime.utcnow()
    t.is_active = False
    record_event(
        s,
        actor=user,
        action="template.delete",
        entity_type="DocumentTemplate",
        entity_id=str(t.id),
        metadata={"name": t.name},
    )


def copy_template(s: Session, source: DocumentTemplate, payload: dict[str, Any], *, user: User) -> DocumentTemplate:
    name = payload.get("name") or f"{source.name} (copy)"
    t = DocumentTemplate(
        tenant_id=user.tenant_id,
        name=_template_name(name),
        description=source.description,
        template_type=source.template_type,
        content=source.content,
        is_system=False,
        is_active=True,
        created_by_user_id=user.id,
    )
    s.add(t)
    s.flush()
    record_event(
        s,
        actor=user,
        action="template.copy",
        entity_type="DocumentTemplate",
        entity_id=str(t.id),
        metadata={"source_id": source.id, "name": t.name},
    )
    return t


def seed_system_templates(s: Session, *, tenant_id: str, user: User | None = None) -> list[DocumentTemplate]:
    """Create missing system templates for a tenant. Safe to run repeatedly."""
    existing = set(
        s.scalars(
            select(DocumentTemplate.name).where(
                DocumentTemplate.tenant_id == tenant_id,
                DocumentTemplate.is_system.is_(True),
            )
        ).all()
    )
    created: list[DocumentTemplate] = []
    for default in SYSTEM_TEMPLATES:
        if default.name in existing:
            continue
        t = DocumentTemplate(
            tenant_id=tenant_id,
            name=default.name,
            description=default.description,
            template_type=default.template_type,
            content=default.content,
            is_system=True,
            is_active=True,
            created_by_user_id=user.id if user else None,
        )
        s.add(t)
        created.append(t)
    if created:
        s.flush()
        record_event(
            s,
            actor=user,
            action="template.seed",
            entity_type="DocumentTemplate",
            metadata={"tenant_id": tenant_id, "created": [t.name for t in created]},
        )
        logger.info("Seeded %s system templates for tenant %s", len(created), tenant_id)
    return created


def fill_template(
    s: Session,
    asset: Any,
    payload: dict[str, Any],
    *,
    user: User,
    storage: Storage,
    max_bytes: int,
) -> dict[str, Any]:
    """
    Render a template against an asset. Optionally returns the PDF and/or
    stores the result as a new draft document (PDF when generated, else HTML).
    """
    template_id = parse_int(payload.get("template_id"), field="template_id")
    if template_id is None:
        raise ValidationError("template_id is required.", details={"field": "template_id"})
    t = s.get(DocumentTemplate, template_id)
    if not t or t.tenant_id != user.tenant_id or t.deleted_at is not None:
        raise ValidationError(f"Template {template_id} does not exist.", details={"field": "template_id"})
    if not t.is_active:
        raise ValidationError(f"Template {template_id} is inactive.", details={"field": "template_id"})

    additional = payload.get("additional_data") or {}
    if not isinstance(additional, dict):
        raise ValidationError("additional_data must be an object.", details={"field": "additional_data"})

    html = render(t.content, asset_variables(asset, additional))
    out: dict[str, Any] = {"html": html}

    generate_pdf = parse_bool(payload.get("generate_pdf"))
    pdf_bytes: bytes | None = None
    if generate_pdf:
        pdf_bytes = html_to_pdf(html)
        out["pdf_base64"] = base64.b64encode(pdf_bytes).decode("ascii")

    if parse_bool(payload.get("save_as_document")):
        title = clean_str(payload.get("document_title"), field="document_title", max_len=255)
        doc = create_document(
            s,
            {
                "title": title or f"Passport {asset.name}",
                "doc_type": "other",
                "description": f"Generated from template '{t.name}' for asset {asset.name} ({asset.inventory_number or 'no number'})",
                "tags": ["passport", "assets"],
            },
            user=user,
        )
        doc.asset_id = asset.id
        if pdf_bytes is not None:
            data, filename, ctype = pdf_bytes, f"{uuid.uuid4().hex}.pdf", "application/pdf"
        else:
            data, filename, ctype = html.encode("utf-8"), f"{uuid.uuid4().hex}.html", "text/html"
        create_version(
            s,
            doc,
            data=data,
            filename=filename,
            content_type=ctype,
            change_summary=f"Generated from template {t.id}",
            user=user,
            storage=storage,
            max_bytes=max_bytes,
        )
        out["document_id"] = doc.id
        record_event(
            s,
            actor=user,
            action="doc.generate",
            entity_type="Document",
            entity_id=doc.id,
            metadata={
                "asset_id": asset.id,
                "document_type": t.template_type,
                "generated": True,
                "template_id": t.id,
            },
        )

    record_event(
        s,
        actor=user,
        action="template.fill",
        entity_type="Asset",
        entity_id=str(asset.id),
        metadata={
            "template_id": t.id,
            "generate_pdf": generate_pdf,
            "document_id": out.get("document_id"),
        },
    )
    return out
