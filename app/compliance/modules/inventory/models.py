from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.compliance.models import Base

CIA_LEVELS = ("low", "medium", "high")
ASSET_STATUSES = ("active", "in_repair", "storage", "decommissioned")


class InventoryNumberRule(Base):
    __tablename__ = "inventory_number_rules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "asset_type", "asset_class", name="uq_inventory_rule_type_class"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    asset_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # "" means the rule applies to every class of the type.
    asset_class: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    # Last issued sequence; only the sequencer's UPDATE ... RETURNING and reset touch it.
    current_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Asset(Base):
    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "inventory_number", name="uq_asset_inventory_number"),
        Index("idx_assets_tenant_type", "tenant_id", "asset_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(50), nullable=False)
    asset_class: Mapped[str | None] = mapped_column(String(50), nullable=True)
    inventory_number: Mapped[str | None] = mapped_column(String(128), nullable=True)

    criticality: Mapped[str | None] = mapped_column(String(16), nullable=True)
    confidentiality: Mapped[str | None] = mapped_column(String(16), nullable=True)
    integrity: Mapped[str | None] = mapped_column(String(16), nullable=True)
    availability: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")

    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    responsible_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Passport fields
    serial_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pc_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cpu: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ram: Mapped[str | None] = mapped_column(String(100), nullable=True)
    hdd_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    network_card: Mapped[str | None] = mapped_column(String(255), nullable=True)
    optical_drive: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mac_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manufacturer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchase_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    warranty_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
