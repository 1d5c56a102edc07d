from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.compliance.db import db_session
from app.compliance.models import User
from app.compliance.modules.templates.models import DocumentTemplate
from app.compliance.modules.templates.renderer import AVAILABLE_VARIABLES, placeholders
from app.compliance.modules.templates.service import (
    copy_template,
    create_template,
    delete_template,
    get_template,
    list_templates,
    seed_system_templates,
    update_template,
)
from app.compliance.rbac import require_permission
from app.compliance.utils import iso, json_payload, parse_bool

bp = Blueprint("templates", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def template_to_dict(t: DocumentTemplate, *, with_content: bool = True) -> dict:
    out = {
        "id": t.id,
        "tenant_id": t.tenant_id,
        "name": t.name,
        "description": t.description,
        "template_type": t.template_type,
        "is_system": t.is_system,
        "is_active": t.is_active,
        "variables": placeholders(t.content),
        "created_by_user_id": t.created_by_user_id,
        "created_at": iso(t.created_at),
        "updated_at": iso(t.updated_at),
    }
    if with_content:
        out["content"] = t.content
    return out


@bp.get("")
@require_permission("templates.view")
def templates_list():
    s = db_session()
    is_system_raw = request.args.get("is_system")
    templates = list_templates(
        s,
        tenant_id=_current_user().tenant_id,
        template_type=(request.args.get("template_type") or "").strip() or None,
        is_system=parse_bool(is_system_raw) if is_system_raw not in (None, "") else None,
        active_only=parse_bool(request.args.get("active_only")),
    )
    return jsonify({"templates": [template_to_dict(t, with_content=False) for t in templates]})


@bp.post("")
@require_permission("templates.edit")
def templates_create():
    s = db_session()
    t = create_template(s, json_payload(), user=_current_user())
    s.commit()
    return jsonify(template_to_dict(t)), 201


@bp.get("/variables")
@require_permission("templates.view")
def templates_variables():
    return jsonify({"variables": [v.to_dict() for v in AVAILABLE_VARIABLES]})


@bp.post("/seed")
@require_permission("templates.edit")
def templates_seed():
    s = db_session()
    u = _current_user()
    created = seed_system_templates(s, tenant_id=u.tenant_id, user=u)
    s.commit()
    return jsonify({"created": [template_to_dict(t, with_content=False) for t in created]})


@bp.get("/<int:template_id>")
@require_permission("templates.view")
def templates_detail(template_id: int):
    s = db_session()
    t = get_template(s, template_id, tenant_id=_current_user().tenant_id)
    return jsonify(template_to_dict(t))


@bp.put("/<int:template_id>")
@require_permission("templates.edit")
def templates_update(template_id: int):
    s = db_session()
    u = _current_user()
    t = get_template(s, template_id, tenant_id=u.tenant_id)
    update_template(s, t, json_payload(), user=u)
    s.commit()
    return jsonify(template_to_dict(t))


@bp.delete("/<int:template_id>")
@require_permission("templates.edit")
def templates_delete(template_id: int):
    s = db_session()
    u = _current_user()
    t = get_template(s, template_id, tenant_id=u.tenant_id)
    delete_template(s, t, user=u)
    s.commit()
    return jsonify({"ok": True, "deleted_id": template_id})


@bp.post("/<int:template_id>/copy")
@require_permission("templates.edit")
def templates_copy(template_id: int):
    s = db_session()
    u = _current_user()
    source = get_template(s, template_id, tenant_id=u.tenant_id)
    payload = json_payload() if request.content_length else {}
    t = copy_template(s, source, payload, user=u)
    s.commit()
    return jsonify(template_to_dict(t)), 201
