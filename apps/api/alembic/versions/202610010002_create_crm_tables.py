"""create crm leads, sales and tenant settings

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

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
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone", sa.Text(), nullable=False),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("value", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("assigned_to", sa.String(length=64), nullable=False),
        sa.Column("owner_user_id", sa.String(length=64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("source", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("value >= 0", name="ck_crm_lead_value_non_negative"),
        sa.CheckConstraint(
            "status IN ('new', 'contacted', 'qualified', 'proposal', 'won', 'lost')",
            name="ck_crm_lead_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_owner_user_id", "crm_lead", ["owner_user_id"], unique=False)
    op.create_index("ix_crm_lead_assigned_to", "crm_lead", ["assigned_to"], unique=False)
    op.create_index("ix_crm_lead_status", "crm_lead", ["status"], unique=False)

    op.create_table(
        "crm_sale",
        sa.Column("id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("customer_name", sa.Text(), nullable=False),
        sa.Column("customer_email", sa.Text(), nullable=False),
        sa.Column("customer_phone", sa.Text(), nullable=False, server_default=""),
        sa.Column("product", sa.Text(), nullable=False),
        sa.Column("value", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="completed"),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("appointment_date", sa.Date(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("team_owner_id", sa.String(length=64), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status IN ('entry', 'completed')", name="ck_crm_sale_status"),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_sale_user_id", "crm_sale", ["user_id"], unique=False)
    op.create_index("ix_crm_sale_team_owner_id", "crm_sale", ["team_owner_id"], unique=False)

    op.create_table(
        "crm_tenant_setting",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value_json", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "key", name="uq_crm_tenant_setting_key"),
    )


def downgrade() -> None:
    op.drop_table("crm_tenant_setting")
    op.drop_index("ix_crm_sale_team_owner_id", table_name="crm_sale")
    op.drop_index("ix_crm_sale_user_id", table_name="crm_sale")
    op.drop_table("crm_sale")
    op.drop_index("ix_crm_lead_status", table_name="crm_lead")
    op.drop_index("ix_crm_lead_assigned_to", table_name="crm_lead")
    op.drop_index("ix_crm_lead_owner_user_id", table_name="crm_lead")
    op.drop_table("crm_lead")
