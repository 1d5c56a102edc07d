from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.compliance.db import session_scope
from app.compliance.errors import AllocationRace, NotFound
from app.compliance.models import AuditEvent
from app.compliance.modules.inventory.models import InventoryNumberRule
from app.compliance.modules.inventory.sequencer import allocate, expand, has_sequence, preview, reset_sequence

from conftest import get_user

NOW = datetime(2026, 3, 5, 10, 0)


def _rule(s, *, pattern="{{type_code}}-{{year}}-{{sequence:0000}}", asset_type="HW", asset_class="", active=True):
    r = InventoryNumberRule(
        tenant_id="default",
        asset_type=asset_type,
        asset_class=asset_class,
        pattern=pattern,
        current_sequence=0,
        is_active=active,
    )
    s.add(r)
    s.flush()
    return r


def test_expand_substitutes_every_token():
    out = expand(
        "{{type_code}}-{{class}}-{{year}}{{month}}-{{sequence:0000}}",
        asset_type="HW",
        asset_class="WS",
        sequence=42,
        now=NOW,
    )
    assert out == "HW-WS-202603-0042"


def test_expand_uses_class_placeholder_when_rule_has_no_class():
    assert expand("{{class}}/{{sequence}}", asset_type="HW", asset_class="", sequence=7) == "GEN/7"
    assert expand("{{class}}/{{sequence}}", asset_type="HW", asset_class=None, sequence=7, class_placeholder="ANY") == "ANY/7"


def test_expand_padding_never_truncates():
    assert expand("{{sequence:000}}", asset_type="HW", asset_class=None, sequence=12345) == "12345"
    assert expand("{{sequence:000000}}", asset_type="HW", asset_class=None, sequence=5) == "000005"


def test_expand_leaves_unknown_tokens_literal():
    out = expand("{{foo}}-{{year:00}}-{{sequence}}", asset_type="HW", asset_class=None, sequence=1, now=NOW)
    assert out == "{{foo}}-{{year:00}}-1"


def test_expand_does_not_rescan_substituted_values():
    assert expand("{{type_code}}-{{sequence}}", asset_type="{{year}}", asset_class=None, sequence=1, now=NOW) == "{{year}}-1"


def test_has_sequence():
    assert has_sequence("INV-{{sequence}}")
    assert has_sequence("INV-{{sequence:00}}")
    assert not has_sequence("INV-{{year}}")


def test_preview_does_not_advance_counter(db):
    r = _rule(db)
    first = preview(r, now=NOW)
    second = preview(r, now=NOW)
    assert first == second
    assert first.inventory_number == "HW-2026-0001"
    assert first.sequence == 1
    assert r.current_sequence == 0


def test_allocate_n_times_yields_one_to_n(db):
    r = _rule(db)
    numbers = [allocate(db, r, now=NOW) for _ in range(5)]
    assert [a.sequence for a in numbers] == [1, 2, 3, 4, 5]
    assert [a.inventory_number for a in numbers][-1] == "HW-2026-0005"
    assert len({a.inventory_number for a in numbers}) == 5
    db.refresh(r)
    assert r.current_sequence == 5


def test_first_pc_number_of_2025(db):
    r = _rule(db, asset_type="PC")
    first = allocate(db, r, now=datetime(2025, 6, 1, 9, 30))
    assert first.inventory_number == "PC-2025-0001"
    assert first.sequence == 1
    assert expand(r.pattern, asset_type="PC", asset_class=None, sequence=1, now=datetime(2025, 1, 1)) == "PC-2025-0001"


def test_allocate_inactive_rule_is_not_found(db):
    r = _rule(db, active=False)
    with pytest.raises(NotFound):
        allocate(db, r)


def test_allocate_reads_the_committed_counter_not_a_stale_copy(app):
    with app.app_context():
        with session_scope(app) as s:
            rule_id = _rule(s).id

        with session_scope(app) as a, session_scope(app) as b:
            rule_a = a.get(InventoryNumberRule, rule_id)
            rule_b = b.get(InventoryNumberRule, rule_id)
            assert rule_a.current_sequence == rule_b.current_sequence == 0

            first = allocate(a, rule_a, now=NOW)
            a.commit()
            second = allocate(b, rule_b, now=NOW)

        assert (first.sequence, second.sequence) == (1, 2)

        with session_scope(app) as s:
            assert s.get(InventoryNumberRule, rule_id).current_sequence == 2


class _FlakySession:
    """Session stand-in whose first `failures` statements hit a lock error."""

    def __init__(self, real, failures):
        self.real = real
        self.failures = failures
        self.rollbacks = 0

    def execute(self, stmt, *args, **kwargs):
        if self.failures:
            self.failures -= 1
            raise OperationalError("UPDATE inventory_number_rules", {}, Exception("database is locked"))
        return self.real.execute(stmt, *args, **kwargs)

    def rollback(self):
        self.rollbacks += 1
        self.real.rollback()

    def expire(self, obj):
        self.real.expire(obj)


def test_allocate_retries_after_lock_error(db):
    r = _rule(db)
    db.commit()
    flaky = _FlakySession(db, failures=2)
    allocation = allocate(flaky, r, retries=5, now=NOW)
    assert allocation.sequence == 1
    assert flaky.rollbacks == 2


def test_allocate_gives_up_with_allocation_race(db):
    r = _rule(db)
    db.commit()
    flaky = _FlakySession(db, failures=10)
    with pytest.raises(AllocationRace):
        allocate(flaky, r, retries=3)
    assert flaky.rollbacks == 3
    db.refresh(r)
    assert r.current_sequence == 0


def test_reset_sequence_restarts_numbering_and_is_audited(db):
    admin = get_user(db, "admin@example.com")
    r = _rule(db)
    allocate(db, r)
    allocate(db, r)
    db.refresh(r)
    assert r.current_sequence == 2

    reset_sequence(db, r, reason="new fiscal year", user=admin)
    db.flush()
    assert allocate(db, r, now=NOW).sequence == 1

    ev = db.scalars(select(AuditEvent).where(AuditEvent.action == "inventory.rule.reset_sequence")).one()
    assert ev.reason == "new fiscal year"
    assert ev.entity_id == str(r.id)
