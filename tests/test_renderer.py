from datetime import date, datetime

import pytest

from app.compliance.errors import ValidationError
from app.compliance.modules.inventory.models import Asset
from app.compliance.modules.templates.defaults import SYSTEM_TEMPLATES
from app.compliance.modules.templates.renderer import (
    AVAILABLE_VARIABLES,
    asset_variables,
    placeholders,
    render,
    validate_template,
)


def test_render_substitutes_known_variables_and_keeps_unknown_verbatim():
    out = render("<p>{{asset_name}} / {{inventory_number}} / {{unknown}}</p>", {"asset_name": "PC-1", "inventory_number": "WS-0001"})
    assert out == "<p>PC-1 / WS-0001 / {{unknown}}</p>"


def test_render_is_deterministic():
    content = "{{a}}-{{b}}-{{a}}"
    variables = {"a": "x", "b": "y"}
    assert render(content, variables) == render(content, variables) == "x-y-x"


def test_render_escapes_html_by_default():
    out = render("<td>{{model}}</td>", {"model": "<script>alert(1)</script>"})
    assert "<script>" not in out
    assert "&lt;script&gt;" in out


def test_render_without_autoescape_inserts_raw_text():
    assert render("{{x}}", {"x": "<b>bold</b>"}, autoescape=False) == "<b>bold</b>"


def test_render_formats_none_and_dates():
    out = render(
        "[{{empty}}] [{{d}}] [{{dt}}]",
        {"empty": None, "d": date(2026, 12, 31), "dt": datetime(2025, 10, 8, 14, 30)},
    )
    assert out == "[] [31.12.2026] [08.10.2025 14:30]"


def test_render_does_not_rescan_substituted_values():
    assert render("{{a}}", {"a": "{{b}}", "b": "nope"}, autoescape=False) == "{{b}}"


def test_placeholders_are_unique_in_first_seen_order():
    assert placeholders("{{b}} {{a}} {{b}} {{c}}") == ["b", "a", "c"]
    assert placeholders("") == []


@pytest.mark.parametrize(
    "content",
    [
        "<p>{{asset_name}</p>",
        "<p>{{bad-name}}</p>",
        "<p>{{}}</p>",
    ],
)
def test_validate_template_rejects_malformed_placeholders(content):
    with pytest.raises(ValidationError):
        validate_template(content)


def test_validate_template_accepts_plain_css_braces():
    validate_template("<style>td { border: 1px solid; }</style><p>{{asset_name}}</p>")


def test_available_variables_are_unique_and_serializable():
    names = [v.name for v in AVAILABLE_VARIABLES]
    assert len(names) == len(set(names))
    d = AVAILABLE_VARIABLES[0].to_dict()
    assert d["placeholder"] == "{{" + d["name"] + "}}"
    assert {"description", "example", "category"} <= set(d)


def test_system_templates_only_use_available_variables():
    known = {v.name for v in AVAILABLE_VARIABLES}
    for tpl in SYSTEM_TEMPLATES:
        validate_template(tpl.content)
        assert set(placeholders(tpl.content)) <= known, tpl.name


def test_asset_variables_fill_passport_fields_and_allow_overrides():
    asset = Asset(
        name="Workstation 7",
        asset_type="hardware",
        asset_class="workstation",
        inventory_number="HW-2026-0007",
        status="active",
        cpu="i7",
        purchase_year=2023,
        warranty_until=date(2026, 12, 31),
    )
    now = datetime(2025, 10, 8, 14, 30)
    data = asset_variables(asset, {"location": "Room 9"}, now=now)

    assert data["asset_name"] == "Workstation 7"
    assert data["inventory_number"] == "HW-2026-0007"
    assert data["cpu"] == "i7"
    assert data["ram"] == ""
    assert data["purchase_year"] == "2023"
    assert data["warranty_until"] == "31.12.2026"
    assert data["current_date"] == "08.10.2025"
    assert data["current_datetime"] == "08.10.2025 14:30"
    assert data["location"] == "Room 9"
    assert set(data) >= {v.name for v in AVAILABLE_VARIABLES}
