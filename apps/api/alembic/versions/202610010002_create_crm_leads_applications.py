"""create crm lead and application tables

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 09:10:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=True),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["authz_team.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_tenant_owner", "crm_lead", ["tenant_id", "owner_id"], unique=False)
    op.create_index("ix_crm_lead_tenant_team", "crm_lead", ["tenant_id", "team_id"], unique=False)

    op.create_table(
        "crm_application",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("program", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="submitted"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_application_tenant", "crm_application", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_application_tenant", table_name="crm_application")
    op.drop_table("crm_application")
    op.drop_index("ix_crm_lead_tenant_team", table_name="crm_lead")
    op.drop_index("ix_crm_lead_tenant_owner", table_name="crm_lead")
    op.drop_table("crm_lead")
