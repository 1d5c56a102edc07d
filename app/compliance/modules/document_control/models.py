from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.compliance.models import Base

DOC_TYPES = ("policy", "standard", "procedure", "instruction", "act", "other")
CLASSIFICATIONS = ("Public", "Internal", "Confidential")

# draft -> in_review -> approved -> obsolete (in_review -> draft on reject/cancel)
DOC_STATUSES = ("draft", "in_review", "approved", "obsolete")

AV_SCAN_STATUSES = ("pending", "clean", "infected", "error")

WORKFLOW_TYPES = ("sequential", "parallel")
WORKFLOW_STATUSES = ("pending", "in_progress", "approved", "rejected", "cancelled")
WORKFLOW_ACTIVE_STATUSES = ("pending", "in_progress")

STEP_STATUSES = ("pending", "approved", "rejected", "skipped")

# A campaign completes once every assignee has acknowledged.
ACK_CAMPAIGN_STATUSES = ("active", "completed")
ACK_STATUSES = ("pending", "acknowledged")


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    doc_type: Mapped[str] = mapped_column(String(32), nullable=False)
    classification: Mapped[str] = mapped_column(String(32), nullable=False, default="Internal")
    tags_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    # Equals the number of versions; bumped in the same statement that reserves a version number.
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    owner_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    superseded_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Set for documents generated from an asset passport template.
    asset_id: Mapped[int | None] = mapped_column(
        ForeignKey("assets.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DocumentVersion.version_number",
    )

    workflows: Mapped[list["ApprovalWorkflow"]] = relationship(
        "ApprovalWorkflow",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ApprovalWorkflow.id",
    )

    ack_campaigns: Mapped[list["AckCampaign"]] = relationship(
        "AckCampaign",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AckCampaign.id",
    )


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    change_summary: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    av_scan_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    av_scan_result: Mapped[str | None] = mapped_column(Text, nullable=True)
    scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")


class ApprovalWorkflow(Base):
    __tablename__ = "approval_workflows"
    __table_args__ = (
        Index("idx_approval_workflows_document_status", "document_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    workflow_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    # Bumped by every mutation; the conditional bump is the per-workflow critical section.
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    cancel_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship("Document", back_populates="workflows", lazy="selectin")
    steps: Mapped[list["ApprovalStep"]] = relationship(
        "ApprovalStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ApprovalStep.step_order",
    )

    @property
    def is_active(self) -> bool:
        return self.status in WORKFLOW_ACTIVE_STATUSES


class ApprovalStep(Base):
    __tablename__ = "approval_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_order", name="uq_approval_step_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    workflow_id: Mapped[int] = mapped_column(ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Advisory only; nothing transitions on expiry.
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    workflow: Mapped[ApprovalWorkflow] = relationship("ApprovalWorkflow", back_populates="steps", lazy="selectin")

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"

    def is_overdue(self, now: datetime | None = None) -> bool:
        if self.deadline is None or self.is_terminal:
            return False
        return (now or datetime.utcnow()) > self.deadline


class AckCampaign(Base):
    __tablename__ = "ack_campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    # The version in force when the campaign was opened.
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship("Document", back_populates="ack_campaigns", lazy="selectin")
    acknowledgments: Mapped[list["DocumentAcknowledgment"]] = relationship(
        "DocumentAcknowledgment",
        back_populates="campaign",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DocumentAcknowledgment.id",
    )


class DocumentAcknowledgment(Base):
    __tablename__ = "document_acknowledgments"
    __table_args__ = (
        UniqueConstraint("campaign_id", "user_id", name="uq_document_ack_campaign_user"),
        Index("idx_document_acks_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    campaign_id: Mapped[int] = mapped_column(ForeignKey("ack_campaigns.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    campaign: Mapped[AckCampaign] = relationship("AckCampaign", back_populates="acknowledgments", lazy="selectin")
