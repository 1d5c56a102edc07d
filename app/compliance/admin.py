from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.compliance.audit import AuditFilter, event_to_dict, query_events, record_event
from app.compliance.db import db_session
from app.compliance.errors import ConflictError, NotFound, ValidationError
from app.compliance.models import Permission, Role, User
from app.compliance.rbac import (
    ALL_PERMISSIONS,
    PERMISSION_CATALOGUE,
    apply_selection,
    module_selection_state,
    require_permission,
)
from app.compliance.utils import clean_str, iso, json_payload, parse_date

bp = Blueprint("admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _str_list(value, *, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{field} must be a list of strings.", details={"field": field})
    return [v.strip() for v in value if v.strip()]


def ensure_permissions(s: Session, keys: set[str]) -> dict[str, Permission]:
    """Permission rows for `keys`, creating any catalogue entry not yet in the table."""
    existing = {p.key: p for p in s.scalars(select(Permission).where(Permission.key.in_(keys))).all()}
    for key in sorted(keys - set(existing)):
        p = Permission(key=key, name=ALL_PERMISSIONS[key])
        s.add(p)
        existing[key] = p
    s.flush()
    return existing


def role_to_dict(r: Role) -> dict:
    keys = r.permission_keys
    return {
        "id": r.id,
        "key": r.key,
        "name": r.name,
        "permissions": sorted(keys),
        "modules": {module: module_selection_state(keys, module) for module in PERMISSION_CATALOGUE},
        "user_count": len(r.users),
        "created_at": iso(r.created_at),
    }


def _selection_from_payload(current: set[str], payload: dict) -> set[str]:
    perms = payload.get("permissions")
    try:
        return apply_selection(
            current,
            permissions=_str_list(perms, field="permissions") if perms is not None else None,
            select_modules=_str_list(payload.get("select_modules"), field="select_modules"),
            clear_modules=_str_list(payload.get("clear_modules"), field="clear_modules"),
        )
    except KeyError as e:
        raise ValidationError(str(e.args[0]) if e.args else "Unknown permission or module.")


@bp.get("/permissions")
@require_permission("admin.view")
def permissions_catalogue():
    return jsonify(
        {
            "modules": [
                {
                    "module": module,
                    "permissions": [{"key": key, "name": name} for key, name in perms.items()],
                }
                for module, perms in PERMISSION_CATALOGUE.items()
            ]
        }
    )


@bp.get("/roles")
@require_permission("admin.view")
def roles_list():
    s = db_session()
    roles = s.scalars(select(Role).order_by(Role.key.asc())).all()
    return jsonify({"roles": [role_to_dict(r) for r in roles]})


@bp.post("/roles")
@require_permission("admin.edit")
def roles_create():
    s = db_session()
    u = _current_user()
    payload = json_payload()
    key = clean_str(payload.get("key"), field="key", max_len=64, required=True).lower()
    name = clean_str(payload.get("name"), field="name", max_len=128) or key
    if s.scalars(select(Role).where(Role.key == key)).first():
        raise ConflictError(f"Role {key!r} already exists.")

    selected = _selection_from_payload(set(), payload)
    r = Role(key=key, name=name)
    r.permissions = list(ensure_permissions(s, selected).values())
    s.add(r)
    s.flush()
    record_event(
        s,
        actor=u,
        action="role.create",
        entity_type="Role",
        entity_id=str(r.id),
        metadata={"key": key, "permissions": sorted(selected)},
    )
    s.commit()
    return jsonify(role_to_dict(r)), 201


@bp.put("/roles/<int:role_id>/permissions")
@require_permission("admin.edit")
def roles_set_permissions(role_id: int):
    s = db_session()
    u = _current_user()
    r = s.get(Role, role_id)
    if not r:
        raise NotFound(f"Role {role_id} not found.")
    payload = json_payload()
    before = r.permission_keys
    after = _selection_from_payload(before, payload)
    reason = clean_str(payload.get("reason"), field="reason", max_len=512)

    r.permissions = list(ensure_permissions(s, after).values())
    record_event(
        s,
        actor=u,
        action="role.permissions.update",
        entity_type="Role",
        entity_id=str(r.id),
        reason=reason,
        metadata={"added": sorted(after - before), "removed": sorted(before - after)},
    )
    s.commit()
    return jsonify(role_to_dict(r))


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Newest audit events (at most 200). Filters: action and actor_email match
    substrings, entity_type/entity_id match exactly, date_from/date_to are
    inclusive YYYY-MM-DD days.
    """
    args = request.args
    flt = AuditFilter(
        action=(args.get("action") or "").strip(),
        actor_email=(args.get("actor_email") or "").strip(),
        entity_type=(args.get("entity_type") or "").strip(),
        entity_id=(args.get("entity_id") or "").strip(),
        date_from=parse_date(args.get("date_from"), field="date_from"),
        date_to=parse_date(args.get("date_to"), field="date_to"),
    )
    events = query_events(db_session(), flt)
    return jsonify({"events": [event_to_dict(ev) for ev in events]})
