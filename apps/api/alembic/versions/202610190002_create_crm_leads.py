"""create crm leads

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=128), nullable=True),
        sa.Column("budget", sa.Numeric(14, 2), nullable=True),
        sa.Column("services_of_interest", sa.JSON(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False, server_default="manual"),
        sa.Column("campaign", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("attribution_metadata", sa.JSON(), nullable=False),
        sa.Column("person_id", sa.Uuid(), nullable=True),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("referent_id", sa.Uuid(), nullable=True),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_contact_method", sa.String(length=32), nullable=True),
        sa.Column("next_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["person_id"], ["crm_person.id"]),
        sa.ForeignKeyConstraint(["organization_id"], ["crm_organization.id"]),
        sa.ForeignKeyConstraint(["referent_id"], ["crm_person.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_status_created", "crm_lead", ["status", "assigned_to", "created_at"], unique=False)
    op.create_index("ix_crm_lead_email", "crm_lead", ["email"], unique=False)

    op.create_table(
        "crm_lead_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("outcome", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_lead_activity_lead_created",
        "crm_lead_activity",
        ["lead_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_idempotency_key",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("endpoint", sa.String(length=128), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("endpoint", "key", name="uq_crm_idempotency_endpoint_key"),
    )


def downgrade() -> None:
    op.drop_table("crm_idempotency_key")
    op.drop_index("ix_crm_lead_activity_lead_created", table_name="crm_lead_activity")
    op.drop_table("crm_lead_activity")
    op.drop_index("ix_crm_lead_email", table_name="crm_lead")
    op.drop_index("ix_crm_lead_status_created", table_name="crm_lead")
    op.drop_table("crm_lead")
