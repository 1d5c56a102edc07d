"""link generated documents to assets; acknowledgment campaigns

Revision ID: 0002_asset_documents_and_acks
Revises: 0001_initial_schema
Create Date: 2026-10-19 15:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '0002_asset_documents_and_acks'
down_revision: Union[str, Sequence[str], None] = '0001_initial_schema'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())
    cols = {c["name"] for c in insp.get_columns("documents")}

    if "asset_id" not in cols:
        with op.batch_alter_table("documents") as batch_op:
            batch_op.add_column(sa.Column("asset_id", sa.Integer(), nullable=True))
            batch_op.create_foreign_key(
                "fk_documents_asset_id",
                "assets",
                ["asset_id"],
                ["id"],
                ondelete="SET NULL",
            )

    # index (idempotent)
    idx_names = {ix.get("name") for ix in insp.get_indexes("documents")}
    if "ix_documents_asset_id" not in idx_names:
        op.create_index("ix_documents_asset_id", "documents", ["asset_id"])

    if "ack_campaigns" not in existing_tables:
        op.create_table(
            "ack_campaigns",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="active"),
            sa.Column("deadline", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        )
        op.create_index("ix_ack_campaigns_document_id", "ack_campaigns", ["document_id"])

    if "document_acknowledgments" not in existing_tables:
        op.create_table(
            "document_acknowledgments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("campaign_id", sa.Integer(), sa.ForeignKey("ack_campaigns.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("campaign_id", "user_id", name="uq_document_ack_campaign_user"),
        )
        op.create_index("idx_document_acks_user_status", "document_acknowledgments", ["user_id", "status"])


def downgrade() -> None:
    op.drop_table("document_acknowledgments")
    op.drop_table("ack_campaigns")
    op.drop_index("ix_documents_asset_id", table_name="documents")
    with op.batch_alter_table("documents") as batch_op:
        batch_op.drop_constraint("fk_documents_asset_id", type_="foreignkey")
        batch_op.drop_column("asset_id")
