"""initial capacity schema

Revision ID: 0001_capacity
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_capacity"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "partners",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("service_type", sa.String(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_partners_service_type", "partners", ["service_type"])

    op.create_table(
        "capacity_slots",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("partner_id", sa.String(), nullable=False),
        sa.Column("service_type", sa.String(), nullable=False),
        sa.Column("slot_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("slot_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_units", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("reserved_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["partner_id"], ["partners.id"]),
        sa.UniqueConstraint("partner_id", "service_type", "slot_start", name="uq_capacity_slot"),
        sa.CheckConstraint("reserved_units >= 0", name="ck_capacity_reserved_non_negative"),
        sa.CheckConstraint("reserved_units <= max_units", name="ck_capacity_reserved_within_max"),
    )
    op.create_index("ix_capacity_slots_partner_id", "capacity_slots", ["partner_id"])
    op.create_index("ix_capacity_slots_slot_start", "capacity_slots", ["slot_start"])


def downgrade() -> None:
    op.drop_index("ix_capacity_slots_slot_start", table_name="capacity_slots")
    op.drop_index("ix_capacity_slots_partner_id", table_name="capacity_slots")
    op.drop_table("capacity_slots")
    op.drop_index("ix_partners_service_type", table_name="partners")
    op.drop_table("partners")
