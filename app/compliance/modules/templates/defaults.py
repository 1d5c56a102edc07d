"""System templates seeded for every tenant (read-only; users copy them)."""
from __future__ import annotations

from dataclasses import dataclass

_STYLE = """
body { font-family: "DejaVu Sans", Arial, sans-serif; font-size: 11pt; color: #111; }
h1 { font-size: 16pt; text-align: center; margin-bottom: 4mm; }
table { width: 100%; border-collapse: collapse; }
td { border: 1px solid #444; padding: 2mm 3mm; vertical-align: top; }
td.label { width: 40%; background: #f2f2f2; }
.signatures { margin-top: 12mm; }
.signatures td { border: none; padding-top: 8mm; }
""".strip()


def _passport(title: str, rows: list[tuple[str, str]]) -> str:
    body = "\n".join(
        f'    <tr><td class="label">{label}</td><td>{{{{{var}}}}}</td></tr>' for label, var in rows
    )
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
  <style>{_STYLE}</style>
</head>
<body>
  <h1>{title}</h1>
  <p>Inventory number: <strong>{{{{inventory_number}}}}</strong></p>
  <table>
{body}
  </table>
  <table class="signatures">
    <tr><td>Owner: {{{{owner_name}}}}</td><td>Responsible: {{{{responsible_user_name}}}}</td></tr>
    <tr><td>Date: {{{{current_date}}}}</td><td>Signature: ____________</td></tr>
  </table>
</body>
</html>
"""


_COMMON = [
    ("Name", "asset_name"),
    ("Location", "location"),
    ("Manufacturer", "manufacturer"),
    ("Model", "model"),
    ("Serial number", "serial_number"),
]
_TAIL = [
    ("Purchase year", "purchase_year"),
    ("Warranty until", "warranty_until"),
    ("Status", "status"),
]


@dataclass(frozen=True)
class SystemTemplate:
    name: str
    description: str
    template_type: str
    content: str


SYSTEM_TEMPLATES: tuple[SystemTemplate, ...] = (
    SystemTemplate(
        name="Personal computer passport",
        description="Standard passport for workstations and laptops",
        template_type="passport_pc",
        content=_passport(
            "Personal computer passport",
            _COMMON
            + [
                ("PC number", "pc_number"),
                ("Processor", "cpu"),
                ("Memory", "ram"),
                ("Storage", "hdd_info"),
                ("Network card", "network_card"),
                ("Optical drive", "optical_drive"),
                ("IP address", "ip_address"),
                ("MAC address", "mac_address"),
            ]
            + _TAIL,
        ),
    ),
    SystemTemplate(
        name="Monitor passport",
        description="Standard passport for monitors",
        template_type="passport_monitor",
        content=_passport("Monitor passport", _COMMON + _TAIL),
    ),
    SystemTemplate(
        name="Device passport",
        description="General-purpose passport for any device",
        template_type="passport_device",
        content=_passport("Device passport", _COMMON + [("Asset class", "asset_class")] + _TAIL),
    ),
    SystemTemplate(
        name="Printer / MFP passport",
        description="Passport for printing devices",
        template_type="passport_device",
        content=_passport(
            "Printer / MFP passport",
            _COMMON + [("IP address", "ip_address"), ("MAC address", "mac_address")] + _TAIL,
        ),
    ),
    SystemTemplate(
        name="Network equipment passport",
        description="Passport for routers, switches and other network equipment",
        template_type="passport_device",
        content=_passport(
            "Network equipment passport",
            _COMMON
            + [
                ("IP address", "ip_address"),
                ("MAC address", "mac_address"),
                ("Network interfaces", "network_card"),
            ]
            + _TAIL,
        ),
    ),
    SystemTemplate(
        name="Removable media passport",
        description="Passport for USB drives, external disks and other media",
        template_type="passport_device",
        content=_passport(
            "Removable media passport",
            _COMMON + [("Capacity", "hdd_info"), ("Confidentiality", "confidentiality")] + _TAIL,
        ),
    ),
)
