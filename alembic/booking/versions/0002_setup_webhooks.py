"""setup intent webhook outcomes

Revision ID: 0002_booking
Revises: 0001_booking
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_booking"
down_revision = "0001_booking"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("orders", sa.Column("setup_error_code", sa.String(), nullable=True))
    op.add_column("orders", sa.Column("setup_error_message", sa.String(), nullable=True))
    op.create_index("ix_orders_setup_intent_id", "orders", ["setup_intent_id"])

    op.create_table(
        "stripe_webhook_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_stripe_webhook_events_event_type", "stripe_webhook_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_stripe_webhook_events_event_type", table_name="stripe_webhook_events")
    op.drop_table("stripe_webhook_events")
    op.drop_index("ix_orders_setup_intent_id", table_name="orders")
    op.drop_column("orders", "setup_error_message")
    op.drop_column("orders", "setup_error_code")
