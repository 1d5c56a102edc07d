"""
Inventory number sequencer.

Patterns are expanded left to right in one pass, so a substituted value is
never scanned again:

    {{type_code}}      asset type
    {{class}}          asset class, or the class placeholder when the rule has none
    {{year}}           four-digit year
    {{month}}          two-digit month
    {{sequence}}       next sequence, unpadded
    {{sequence:0000}}  next sequence, zero-padded to the length of the digit run

Anything else is copied through literally.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.compliance.audit import record_event
from app.compliance.errors import AllocationRace, NotFound
from app.compliance.models import User
from app.compliance.modules.inventory.models import InventoryNumberRule

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\{\{([a-z_]+)(?::(\d+))?\}\}")
SEQUENCE_RE = re.compile(r"\{\{sequence(?::\d+)?\}\}")
DEFAULT_CLASS_PLACEHOLDER = "GEN"


@dataclass(frozen=True)
class Allocation:
    inventory_number: str
    sequence: int
    pattern: str


def has_sequence(pattern: str) -> bool:
    return SEQUENCE_RE.search(pattern or "") is not None


def expand(
    pattern: str,
    *,
    asset_type: str,
    asset_class: str | None,
    sequence: int,
    class_placeholder: str = DEFAULT_CLASS_PLACEHOLDER,
    now: datetime | None = None,
) -> str:
    now = now or datetime.now()

    def _sub(m: re.Match[str]) -> str:
        name, width = m.group(1), m.group(2)
        if name == "sequence":
            return str(sequence).zfill(len(width)) if width else str(sequence)
        if width is not None:
            return m.group(0)
        if name == "type_code":
            return asset_type
        if name == "class":
            return asset_class or class_placeholder
        if name == "year":
            return f"{now.year:04d}"
        if name == "month":
            return f"{now.month:02d}"
        return m.group(0)

    return TOKEN_RE.sub(_sub, pattern)


def preview(
    rule: InventoryNumberRule,
    *,
    class_placeholder: str = DEFAULT_CLASS_PLACEHOLDER,
    now: datetime | None = None,
) -> Allocation:
    """The number the next allocation would produce. Reads only."""
    nxt = rule.current_sequence + 1
    number = expand(
        rule.pattern,
        asset_type=rule.asset_type,
        asset_class=rule.asset_class,
        sequence=nxt,
        class_placeholder=class_placeholder,
        now=now,
    )
    return Allocation(inventory_number=number, sequence=nxt, pattern=rule.pattern)


def allocate(
    s: Session,
    rule: InventoryNumberRule,
    *,
    class_placeholder: str = DEFAULT_CLASS_PLACEHOLDER,
    retries: int = 5,
    now: datetime | None = None,
) -> Allocation:
    """
    Advance the rule's counter by exactly one and render the number.

    The increment and the read are one UPDATE ... RETURNING statement, so two
    concurrent callers can never observe the same sequence. A lock timeout from
    the database rolls the session back and retries; call this before any other
    write in the transaction.
    """
    rule_id = rule.id
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        stmt = (
            update(InventoryNumberRule)
            .where(InventoryNumberRule.id == rule_id, InventoryNumberRule.is_active.is_(True))
            .values(
                current_sequence=InventoryNumberRule.current_sequence + 1,
                updated_at=datetime.utcnow(),
            )
            .returning(
                InventoryNumberRule.current_sequence,
                InventoryNumberRule.pattern,
                InventoryNumberRule.asset_type,
                InventoryNumberRule.asset_class,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            row = s.execute(stmt).one_or_none()
        except OperationalError as e:
            s.rollback()
            logger.warning(
                "Inventory rule %s allocation attempt %s/%s lost a lock race: %s",
                rule_id,
                attempt,
                attempts,
                e.orig if getattr(e, "orig", None) is not None else e,
            )
            continue
        if row is None:
            raise NotFound(f"Inventory rule {rule_id} not found or inactive.")

        sequence, pattern, asset_type, asset_class = row
        s.expire(rule)
        number = expand(
            pattern,
            asset_type=asset_type,
            asset_class=asset_class,
            sequence=sequence,
            class_placeholder=class_placeholder,
            now=now,
        )
        return Allocation(inventory_number=number, sequence=sequence, pattern=pattern)

    raise AllocationRace(
        f"Could not allocate an inventory number for rule {rule_id} after {attempts} attempts.",
        details={"rule_id": rule_id, "attempts": attempts},
    )


def reset_sequence(s: Session, rule: InventoryNumberRule, *, reason: str, user: User) -> InventoryNumberRule:
    old = rule.current_sequence
    rule.current_sequence = 0
    rule.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="inventory.rule.reset_sequence",
        entity_type="InventoryNumberRule",
        entity_id=str(rule.id),
        reason=reason,
        metadata={"old_sequence": old, "asset_type": rule.asset_type, "asset_class": rule.asset_class},
    )
    logger.info("Inventory rule %s sequence reset from %s by %s", rule.id, old, user.email)
    return rule
