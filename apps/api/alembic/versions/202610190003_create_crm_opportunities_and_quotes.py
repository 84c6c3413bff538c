"""create crm opportunities and quotes

Revision ID: 202610190003
Revises: 202610190002
Create Date: 2026-10-19 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190003"
down_revision: str | None = "202610190002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("person_id", sa.Uuid(), nullable=True),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("referent_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="discovery"),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("expected_revenue", sa.Numeric(14, 2), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"]),
        sa.ForeignKeyConstraint(["person_id"], ["crm_person.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["crm_organization.id"]),
        sa.ForeignKeyConstraint(["referent_id"], ["crm_person.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_opportunity_stage_assigned",
        "crm_opportunity",
        ["stage", "assigned_to"],
        unique=False,
    )
    op.create_index("ix_crm_opportunity_lead_id", "crm_opportunity", ["lead_id"], unique=False)

    op.create_table(
        "crm_quote",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quote_number", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("person_id", sa.Uuid(), nullable=True),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["person_id"], ["crm_person.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["crm_organization.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("quote_number"),
    )

    op.create_table(
        "crm_opportunity_quote",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("opportunity_id", sa.Uuid(), nullable=False),
        sa.Column("quote_id", sa.Uuid(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["opportunity_id"], ["crm_opportunity.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["quote_id"], ["crm_quote.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("opportunity_id", "quote_id", name="uq_crm_opportunity_quote_pair"),
    )
    op.create_index(
        "ix_crm_opportunity_quote_opportunity",
        "crm_opportunity_quote",
        ["opportunity_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_opportunity_quote_opportunity", table_name="crm_opportunity_quote")
    op.drop_table("crm_opportunity_quote")
    op.drop_table("crm_quote")
    op.drop_index("ix_crm_opportunity_lead_id", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_stage_assigned", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
