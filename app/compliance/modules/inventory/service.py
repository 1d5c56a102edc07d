from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.errors import ConflictError, NotFound, ValidationError
from app.compliance.models import User
from app.compliance.modules.inventory.models import ASSET_STATUSES, CIA_LEVELS, Asset, InventoryNumberRule
from app.compliance.modules.inventory.sequencer import Allocation, allocate, has_sequence
from app.compliance.utils import clean_str, parse_bool, parse_date, parse_int


def _pattern(value: Any) -> str:
    pattern = clean_str(value, field="pattern", max_len=255, required=True)
    if not has_sequence(pattern):
        raise ValidationError(
            "pattern must contain {{sequence}} or {{sequence:0000}}.",
            details={"field": "pattern"},
        )
    return pattern


# ---- rules ----


def list_rules(s: Session, *, tenant_id: str) -> list[InventoryNumberRule]:
    stmt = (
        select(InventoryNumberRule)
        .where(InventoryNumberRule.tenant_id == tenant_id)
        .order_by(InventoryNumberRule.asset_type.asc(), InventoryNumberRule.asset_class.asc())
    )
    return list(s.scalars(stmt).all())


def get_rule(s: Session, rule_id: int, *, tenant_id: str) -> InventoryNumberRule:
    r = s.get(InventoryNumberRule, rule_id)
    if not r or r.tenant_id != tenant_id:
        raise NotFound(f"Inventory rule {rule_id} not found.")
    return r


def create_rule(s: Session, payload: dict[str, Any], *, user: User) -> InventoryNumberRule:
    asset_type = clean_str(payload.get("asset_type"), field="asset_type", max_len=50, required=True)
    asset_class = clean_str(payload.get("asset_class"), field="asset_class", max_len=50) or ""
    pattern = _pattern(payload.get("pattern"))

    dup = s.scalars(
        select(InventoryNumberRule).where(
            InventoryNumberRule.tenant_id == user.tenant_id,
            InventoryNumberRule.asset_type == asset_type,
            InventoryNumberRule.asset_class == asset_class,
        )
    ).first()
    if dup:
        raise ConflictError(
            "A rule for this asset type and class already exists.",
            details={"rule_id": dup.id, "asset_type": asset_type, "asset_class": asset_class or None},
        )

    r = InventoryNumberRule(
        tenant_id=user.tenant_id,
        asset_type=asset_type,
        asset_class=asset_class,
        pattern=pattern,
        current_sequence=0,
        description=clean_str(payload.get("description"), field="description"),
        is_active=True,
    )
    s.add(r)
    try:
        s.flush()
    except IntegrityError as e:
        raise ConflictError("A rule for this asset type and class already exists.") from e
    record_event(
        s,
        actor=user,
        action="inventory.rule.create",
        entity_type="InventoryNumberRule",
        entity_id=str(r.id),
        metadata={"asset_type": asset_type, "asset_class": asset_class or None, "pattern": pattern},
    )
    return r


def update_rule(s: Session, r: InventoryNumberRule, payload: dict[str, Any], *, user: User) -> dict[str, Any]:
    """Pattern, description and is_active are editable. The counter only moves by allocation or reset."""
    if "current_sequence" in payload:
        raise ValidationError(
            "current_sequence cannot be edited; use reset-sequence.",
            details={"field": "current_sequence"},
        )
    changes: dict[str, Any] = {}
    if "pattern" in payload:
        new = _pattern(payload.get("pattern"))
        if new != r.pattern:
            changes["pattern"] = {"old": r.pattern, "new": new}
            r.pattern = new
    if "description" in payload:
        new = clean_str(payload.get("description"), field="description")
        if new != r.description:
            changes["description"] = {"old": r.description, "new": new}
            r.description = new
    if "is_active" in payload:
        new = parse_bool(payload.get("is_active"))
        if new != r.is_active:
            changes["is_active"] = {"old": r.is_active, "new": new}
            r.is_active = new
    if changes:
        r.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="inventory.rule.update",
            entity_type="InventoryNumberRule",
            entity_id=str(r.id),
            metadata={"changes": changes},
        )
    return changes


def delete_rule(s: Session, r: InventoryNumberRule, *, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="inventory.rule.delete",
        entity_type="InventoryNumberRule",
        entity_id=str(r.id),
        metadata={
            "asset_type": r.asset_type,
            "asset_class": r.asset_class or None,
            "current_sequence": r.current_sequence,
        },
    )
    s.delete(r)


def find_rule(s: Session, *, tenant_id: str, asset_type: str, asset_class: str | None) -> InventoryNumberRule:
    """Exact (type, class) active rule first, then the type-wide rule."""
    candidates = [asset_class, ""] if asset_class else [""]
    for cls in candidates:
        r = s.scalars(
            select(InventoryNumberRule).where(
                InventoryNumberRule.tenant_id == tenant_id,
                InventoryNumberRule.asset_type == asset_type,
                InventoryNumberRule.asset_class == cls,
                InventoryNumberRule.is_active.is_(True),
            )
        ).first()
        if r is not None:
            return r
    raise NotFound(
        f"No active inventory number rule for asset type {asset_type!r}.",
        details={"asset_type": asset_type, "asset_class": asset_class},
    )


# ---- assets ----

_ASSET_TEXT_FIELDS = {
    "location": 255,
    "owner_name": 255,
    "responsible_user_name": 255,
    "serial_number": 255,
    "pc_number": 100,
    "model": 255,
    "cpu": 255,
    "ram": 100,
    "hdd_info": None,
    "network_card": 255,
    "optical_drive": 255,
    "ip_address": 64,
    "mac_address": 64,
    "manufacturer": 255,
}
_CIA_FIELDS = ("criticality", "confidentiality", "integrity", "availability")


def list_assets(s: Session, *, tenant_id: str, asset_type: str | None = None, q: str | None = None) -> list[Asset]:
    stmt = select(Asset).where(Asset.tenant_id == tenant_id)
    if asset_type:
        stmt = stmt.where(Asset.asset_type == asset_type)
    if q:
        like = f"%{q}%"
        stmt = stmt.where((Asset.name.ilike(like)) | (Asset.inventory_number.ilike(like)))
    return list(s.scalars(stmt.order_by(Asset.name.asc(), Asset.id.asc())).all())


def get_asset(s: Session, asset_id: int, *, tenant_id: str) -> Asset:
    a = s.get(Asset, asset_id)
    if not a or a.tenant_id != tenant_id:
        raise NotFound(f"Asset {asset_id} not found.")
    return a


def _apply_asset_fields(a: Asset, payload: dict[str, Any], *, creating: bool) -> list[str]:
    changed: list[str] = []

    def _set(field: str, value: Any) -> None:
        if getattr(a, field) != value:
            setattr(a, field, value)
            changed.append(field)

    if creating or "name" in payload:
        _set("name", clean_str(payload.get("name"), field="name", max_len=255, required=True))
    if creating or "asset_type" in payload:
        _set("asset_type", clean_str(payload.get("asset_type"), field="asset_type", max_len=50, required=True))
    if "asset_class" in payload:
        _set("asset_class", clean_str(payload.get("asset_class"), field="asset_class", max_len=50))
    for field in _CIA_FIELDS:
        if field in payload:
            val = clean_str(payload.get(field), field=field)
            if val is not None and val not in CIA_LEVELS:
                raise ValidationError(
                    f"{field} must be one of: {', '.join(CIA_LEVELS)}.",
                    details={"field": field},
                )
            _set(field, val)
    if "status" in payload:
        status = clean_str(payload.get("status"), field="status", required=True)
        if status not in ASSET_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(ASSET_STATUSES)}.",
                details={"field": "status"},
            )
        _set("status", status)
    for field, max_len in _ASSET_TEXT_FIELDS.items():
        if field in payload:
            _set(field, clean_str(payload.get(field), field=field, max_len=max_len))
    if "purchase_year" in payload:
        year = parse_int(payload.get("purchase_year"), field="purchase_year")
        if year is not None and not 1900 <= year <= 2100:
            raise ValidationError("purchase_year must be between 1900 and 2100.", details={"field": "purchase_year"})
        _set("purchase_year", year)
    if "warranty_until" in payload:
        _set("warranty_until", parse_date(payload.get("warranty_until"), field="warranty_until"))
    return changed


def create_asset(s: Session, payload: dict[str, Any], *, user: User) -> Asset:
    a = Asset(tenant_id=user.tenant_id, status="active")
    _apply_asset_fields(a, payload, creating=True)
    s.add(a)
    s.flush()
    record_event(
        s,
        actor=user,
        action="asset.create",
        entity_type="Asset",
        entity_id=str(a.id),
        metadata={"name": a.name, "asset_type": a.asset_type, "asset_class": a.asset_class},
    )
    return a


def update_asset(s: Session, a: Asset, payload: dict[str, Any], *, user: User) -> list[str]:
    if "inventory_number" in payload:
        raise ValidationError(
            "inventory_number is assigned by generate-inventory-number.",
            details={"field": "inventory_number"},
        )
    changed = _apply_asset_fields(a, payload, creating=False)
    if changed:
        a.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="asset.update",
            entity_type="Asset",
            entity_id=str(a.id),
            metadata={"fields": changed},
        )
    return changed


def generate_inventory_number(
    s: Session,
    a: Asset,
    *,
    overwrite: bool,
    user: User,
    class_placeholder: str,
    retries: int,
) -> Allocation:
    if a.inventory_number and not overwrite:
        raise ConflictError(
            f"Asset {a.id} already has inventory number {a.inventory_number}.",
            details={"inventory_number": a.inventory_number},
        )
    asset_id = a.id
    rule = find_rule(s, tenant_id=a.tenant_id, asset_type=a.asset_type, asset_class=a.asset_class)
    allocation = allocate(s, rule, class_placeholder=class_placeholder, retries=retries)

    # allocate() may have rolled back and expired the asset; reload before writing.
    a = s.get(Asset, asset_id)
    previous = a.inventory_number
    clash = s.scalars(
        select(Asset.id).where(
            Asset.tenant_id == a.tenant_id,
            Asset.inventory_number == allocation.inventory_number,
            Asset.id != a.id,
        )
    ).first()
    if clash is not None:
        raise ConflictError(
            f"Inventory number {allocation.inventory_number} is already used by asset {clash}.",
            details={"inventory_number": allocation.inventory_number, "asset_id": clash},
        )
    a.inventory_number = allocation.inventory_number
    a.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="asset.inventory_number.generate",
        entity_type="Asset",
        entity_id=str(a.id),
        metadata={
            "rule_id": rule.id,
            "inventory_number": allocation.inventory_number,
            "sequence": allocation.sequence,
            "previous": previous,
        },
    )
    return allocation
