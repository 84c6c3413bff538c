"""create crm registry

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_person",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("tax_code", sa.String(length=32), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("contacts", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_person_full_name", "crm_person", ["full_name"], unique=False)

    op.create_table(
        "crm_organization",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("legal_name", sa.Text(), nullable=False),
        sa.Column("vat_number", sa.String(length=32), nullable=True),
        sa.Column("tax_code", sa.String(length=32), nullable=True),
        sa.Column("registered_address", sa.Text(), nullable=True),
        sa.Column("province", sa.String(length=64), nullable=True),
        sa.Column("municipality", sa.String(length=128), nullable=True),
        sa.Column("org_type", sa.String(length=64), nullable=True),
        sa.Column("sector", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rea_code", sa.String(length=32), nullable=True),
        sa.Column("contacts", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_client", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_organization_legal_name", "crm_organization", ["legal_name"], unique=False)
    op.create_index("ix_crm_organization_facets", "crm_organization", ["province", "org_type"], unique=False)

    op.create_table(
        "crm_affiliation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("person_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["person_id"], ["crm_person.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["crm_organization.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_affiliation_pair", "crm_affiliation", ["organization_id", "person_id"], unique=False)

    op.create_table(
        "crm_inbound_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=128), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("services", sa.JSON(), nullable=False),
        sa.Column("budget", sa.Numeric(14, 2), nullable=True),
        sa.Column("timeline", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("form_type", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_inbound_contact_status", "crm_inbound_contact", ["status", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_inbound_contact_status", table_name="crm_inbound_contact")
    op.drop_table("crm_inbound_contact")
    op.drop_index("ix_crm_affiliation_pair", table_name="crm_affiliation")
    op.drop_table("crm_affiliation")
    op.drop_index("ix_crm_organization_facets", table_name="crm_organization")
    op.drop_index("ix_crm_organization_legal_name", table_name="crm_organization")
    op.drop_table("crm_organization")
    op.drop_index("ix_crm_person_full_name", table_name="crm_person")
    op.drop_table("crm_person")
