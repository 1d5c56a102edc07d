from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.compliance.db import db_session
from app.compliance.models import User
from app.compliance.modules.document_control.admin import document_to_dict
from app.compliance.modules.document_control.service import list_documents
from app.compliance.modules.inventory.models import Asset, InventoryNumberRule
from app.compliance.modules.inventory.sequencer import Allocation, preview, reset_sequence
from app.compliance.modules.inventory.service import (
    create_asset,
    create_rule,
    delete_rule,
    find_rule,
    generate_inventory_number,
    get_asset,
    get_rule,
    list_assets,
    list_rules,
    update_asset,
    update_rule,
)
from app.compliance.modules.templates.service import fill_template
from app.compliance.rbac import require_permission
from app.compliance.storage import storage_from_config
from app.compliance.utils import clean_str, iso, json_payload, parse_bool

rules_bp = Blueprint("inventory_rules", __name__)
assets_bp = Blueprint("assets", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def rule_to_dict(r: InventoryNumberRule) -> dict:
    return {
        "id": r.id,
        "tenant_id": r.tenant_id,
        "asset_type": r.asset_type,
        "asset_class": r.asset_class or None,
        "pattern": r.pattern,
        "current_sequence": r.current_sequence,
        "description": r.description,
        "is_active": r.is_active,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }


def allocation_to_dict(al: Allocation) -> dict:
    return {"inventory_number": al.inventory_number, "sequence": al.sequence, "pattern": al.pattern}


_ASSET_FIELDS = (
    "name",
    "asset_type",
    "asset_class",
    "inventory_number",
    "criticality",
    "confidentiality",
    "integrity",
    "availability",
    "status",
    "location",
    "owner_name",
    "responsible_user_name",
    "serial_number",
    "pc_number",
    "model",
    "cpu",
    "ram",
    "hdd_info",
    "network_card",
    "optical_drive",
    "ip_address",
    "mac_address",
    "manufacturer",
    "purchase_year",
)


def asset_to_dict(a: Asset) -> dict:
    out = {"id": a.id, "tenant_id": a.tenant_id}
    out.update({f: getattr(a, f) for f in _ASSET_FIELDS})
    out["warranty_until"] = iso(a.warranty_until)
    out["created_at"] = iso(a.created_at)
    out["updated_at"] = iso(a.updated_at)
    return out


def _class_placeholder() -> str:
    return current_app.config.get("INVENTORY_CLASS_PLACEHOLDER") or "GEN"


# ---- /admin/inventory-rules ----


@rules_bp.get("")
@require_permission("inventory.view")
def rules_list():
    s = db_session()
    rules = list_rules(s, tenant_id=_current_user().tenant_id)
    return jsonify({"rules": [rule_to_dict(r) for r in rules]})


@rules_bp.post("")
@require_permission("inventory.edit")
def rules_create():
    s = db_session()
    r = create_rule(s, json_payload(), user=_current_user())
    s.commit()
    return jsonify(rule_to_dict(r)), 201


@rules_bp.get("/<int:rule_id>")
@require_permission("inventory.view")
def rules_detail(rule_id: int):
    s = db_session()
    r = get_rule(s, rule_id, tenant_id=_current_user().tenant_id)
    return jsonify(rule_to_dict(r))


@rules_bp.put("/<int:rule_id>")
@require_permission("inventory.edit")
def rules_update(rule_id: int):
    s = db_session()
    u = _current_user()
    r = get_rule(s, rule_id, tenant_id=u.tenant_id)
    update_rule(s, r, json_payload(), user=u)
    s.commit()
    return jsonify(rule_to_dict(r))


@rules_bp.delete("/<int:rule_id>")
@require_permission("inventory.edit")
def rules_delete(rule_id: int):
    s = db_session()
    u = _current_user()
    r = get_rule(s, rule_id, tenant_id=u.tenant_id)
    delete_rule(s, r, user=u)
    s.commit()
    return jsonify({"ok": True, "deleted_id": rule_id})


@rules_bp.get("/<int:rule_id>/preview")
@require_permission("inventory.view")
def rules_preview(rule_id: int):
    s = db_session()
    r = get_rule(s, rule_id, tenant_id=_current_user().tenant_id)
    return jsonify(allocation_to_dict(preview(r, class_placeholder=_class_placeholder())))


@rules_bp.post("/<int:rule_id>/reset-sequence")
@require_permission("inventory.reset")
def rules_reset_sequence(rule_id: int):
    s = db_session()
    u = _current_user()
    r = get_rule(s, rule_id, tenant_id=u.tenant_id)
    reason = clean_str(json_payload().get("reason"), field="reason", max_len=512, required=True)
    reset_sequence(s, r, reason=reason, user=u)
    s.commit()
    return jsonify(rule_to_dict(r))


# ---- /assets ----


@assets_bp.get("")
@require_permission("assets.view")
def assets_list():
    s = db_session()
    assets = list_assets(
        s,
        tenant_id=_current_user().tenant_id,
        asset_type=(request.args.get("asset_type") or "").strip() or None,
        q=(request.args.get("q") or "").strip() or None,
    )
    return jsonify({"assets": [asset_to_dict(a) for a in assets]})


@assets_bp.post("")
@require_permission("assets.edit")
def assets_create():
    s = db_session()
    a = create_asset(s, json_payload(), user=_current_user())
    s.commit()
    return jsonify(asset_to_dict(a)), 201


@assets_bp.get("/<int:asset_id>")
@require_permission("assets.view")
def assets_detail(asset_id: int):
    s = db_session()
    a = get_asset(s, asset_id, tenant_id=_current_user().tenant_id)
    return jsonify(asset_to_dict(a))


@assets_bp.patch("/<int:asset_id>")
@require_permission("assets.edit")
def assets_update(asset_id: int):
    s = db_session()
    u = _current_user()
    a = get_asset(s, asset_id, tenant_id=u.tenant_id)
    changed = update_asset(s, a, json_payload(), user=u)
    s.commit()
    return jsonify({"asset": asset_to_dict(a), "changed": changed})


@assets_bp.get("/<int:asset_id>/documents")
@require_permission("assets.view")
@require_permission("docs.view")
def assets_documents(asset_id: int):
    s = db_session()
    u = _current_user()
    a = get_asset(s, asset_id, tenant_id=u.tenant_id)
    docs = list_documents(s, tenant_id=u.tenant_id, asset_id=a.id)
    return jsonify({"asset_id": a.id, "documents": [document_to_dict(d) for d in docs]})


@assets_bp.get("/<int:asset_id>/inventory-number-preview")
@require_permission("assets.view")
def assets_inventory_number_preview(asset_id: int):
    s = db_session()
    u = _current_user()
    a = get_asset(s, asset_id, tenant_id=u.tenant_id)
    r = find_rule(s, tenant_id=u.tenant_id, asset_type=a.asset_type, asset_class=a.asset_class)
    return jsonify({**allocation_to_dict(preview(r, class_placeholder=_class_placeholder())), "rule_id": r.id})


@assets_bp.post("/<int:asset_id>/generate-inventory-number")
@require_permission("assets.generate_number")
def assets_generate_inventory_number(asset_id: int):
    s = db_session()
    u = _current_user()
    a = get_asset(s, asset_id, tenant_id=u.tenant_id)
    payload = json_payload() if request.content_length else {}
    allocation = generate_inventory_number(
        s,
        a,
        overwrite=parse_bool(payload.get("overwrite")),
        user=u,
        class_placeholder=_class_placeholder(),
        retries=int(current_app.config.get("INVENTORY_ALLOCATION_RETRIES") or 5),
    )
    s.commit()
    current_app.logger.info("Asset %s got inventory number %s", asset_id, allocation.inventory_number)
    return jsonify({**allocation_to_dict(allocation), "asset_id": asset_id})


@assets_bp.post("/<int:asset_id>/fill-template")
@require_permission("templates.fill")
def assets_fill_template(asset_id: int):
    s = db_session()
    u = _current_user()
    a = get_asset(s, asset_id, tenant_id=u.tenant_id)
    out = fill_template(
        s,
        a,
        json_payload(),
        user=u,
        storage=storage_from_config(current_app.config),
        max_bytes=int(current_app.config["MAX_VERSION_BYTES"]),
    )
    s.commit()
    return jsonify(out)
