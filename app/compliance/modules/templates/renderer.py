"""
`{{variable}}` substitution for document templates.

Rendering is pure: the same content and variables always give the same
output. Placeholders without a supplied value are kept verbatim so partially
filled templates can be previewed.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any

from markupsafe import escape

from app.compliance.errors import ValidationError

PLACEHOLDER_RE = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")
_ANY_PLACEHOLDER_RE = re.compile(r"\{\{([^}]*)\}\}")
_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

DATE_FORMAT = "%d.%m.%Y"
DATETIME_FORMAT = "%d.%m.%Y %H:%M"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    return str(value)


def render(content: str, variables: dict[str, Any], *, autoescape: bool = True) -> str:
    def _sub(m: re.Match[str]) -> str:
        name = m.group(1)
        if name not in variables:
            return m.group(0)
        text = _as_text(variables[name])
        return str(escape(text)) if autoescape else text

    return PLACEHOLDER_RE.sub(_sub, content or "")


def placeholders(content: str) -> list[str]:
    seen: dict[str, None] = {}
    for m in PLACEHOLDER_RE.finditer(content or ""):
        seen.setdefault(m.group(1), None)
    return list(seen)


def validate_template(content: str) -> None:
    if content.count("{{") != content.count("}}"):
        raise ValidationError("Unbalanced template placeholders.", details={"field": "content"})
    for m in _ANY_PLACEHOLDER_RE.finditer(content):
        name = m.group(1).strip()
        if not _NAME_RE.match(name):
            raise ValidationError(
                f"Invalid variable name: {name!r}.",
                details={"field": "content", "variable": name},
            )


@dataclass(frozen=True)
class TemplateVariable:
    name: str
    description: str
    example: str
    category: str

    @property
    def placeholder(self) -> str:
        return "{{" + self.name + "}}"

    def to_dict(self) -> dict[str, str]:
        return {**asdict(self), "placeholder": self.placeholder}


AVAILABLE_VARIABLES: tuple[TemplateVariable, ...] = (
    TemplateVariable("asset_name", "Asset name", "Workstation #1", "asset"),
    TemplateVariable("inventory_number", "Inventory number", "WS-2025-0001", "asset"),
    TemplateVariable("asset_type", "Asset type", "hardware", "asset"),
    TemplateVariable("asset_class", "Asset class", "workstation", "asset"),
    TemplateVariable("criticality", "Criticality", "high", "asset"),
    TemplateVariable("confidentiality", "Confidentiality", "medium", "asset"),
    TemplateVariable("integrity", "Integrity", "high", "asset"),
    TemplateVariable("availability", "Availability", "high", "asset"),
    TemplateVariable("status", "Status", "active", "asset"),
    TemplateVariable("location", "Location", "Room 101", "asset"),
    TemplateVariable("serial_number", "Serial number", "ABC123456", "passport"),
    TemplateVariable("pc_number", "PC number", "PC-101", "passport"),
    TemplateVariable("model", "Model", "Dell OptiPlex 7090", "passport"),
    TemplateVariable("cpu", "Processor", "Intel Core i7-11700", "passport"),
    TemplateVariable("ram", "Memory", "16 GB DDR4", "passport"),
    TemplateVariable("hdd_info", "Storage", "SSD 512GB", "passport"),
    TemplateVariable("network_card", "Network card", "Intel I219-V", "passport"),
    TemplateVariable("optical_drive", "Optical drive", "DVD-RW", "passport"),
    TemplateVariable("ip_address", "IP address", "192.168.1.100", "passport"),
    TemplateVariable("mac_address", "MAC address", "00:1A:2B:3C:4D:5E", "passport"),
    TemplateVariable("manufacturer", "Manufacturer", "Dell Inc.", "passport"),
    TemplateVariable("purchase_year", "Purchase year", "2023", "passport"),
    TemplateVariable("warranty_until", "Warranty until", "31.12.2026", "passport"),
    TemplateVariable("owner_name", "Owner", "J. Smith", "user"),
    TemplateVariable("responsible_user_name", "Responsible user", "A. Jones", "user"),
    TemplateVariable("current_date", "Current date", "08.10.2025", "date"),
    TemplateVariable("current_datetime", "Current date and time", "08.10.2025 14:30", "date"),
    TemplateVariable("created_at", "Asset created", "01.01.2025", "date"),
    TemplateVariable("updated_at", "Asset updated", "08.10.2025", "date"),
)

_PASSPORT_FIELDS = (
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
)


def asset_variables(asset: Any, additional: dict[str, Any] | None = None, *, now: datetime | None = None) -> dict[str, Any]:
    """Variable map for an asset; `additional` entries override computed ones."""
    now = now or datetime.now()
    data: dict[str, Any] = {
        "asset_name": asset.name,
        "inventory_number": asset.inventory_number or "",
        "asset_type": asset.asset_type,
        "asset_class": asset.asset_class or "",
        "criticality": asset.criticality or "",
        "confidentiality": asset.confidentiality or "",
        "integrity": asset.integrity or "",
        "availability": asset.availability or "",
        "status": asset.status or "",
        "owner_name": asset.owner_name or "",
        "responsible_user_name": asset.responsible_user_name or "",
        "location": asset.location or "",
    }
    for field in _PASSPORT_FIELDS:
        data[field] = getattr(asset, field) or ""
    data["purchase_year"] = str(asset.purchase_year) if asset.purchase_year is not None else ""
    data["warranty_until"] = asset.warranty_until.strftime(DATE_FORMAT) if asset.warranty_until else ""

    data["current_date"] = now.strftime(DATE_FORMAT)
    data["current_datetime"] = now.strftime(DATETIME_FORMAT)
    data["created_at"] = asset.created_at.strftime(DATE_FORMAT) if asset.created_at else ""
    data["updated_at"] = asset.updated_at.strftime(DATE_FORMAT) if asset.updated_at else ""

    data.update(additional or {})
    return data
