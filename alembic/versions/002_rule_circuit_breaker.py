"""Circuit breaker state on delivery rules

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "delivery_rules",
        sa.Column("circuit_state", sa.String(10), nullable=False, server_default="CLOSED"),
    )
    op.add_column(
        "delivery_rules",
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
    )
    op.add_column(
        "delivery_rules",
        sa.Column("circuit_opened_at", sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    for col in ["circuit_opened_at", "consecutive_failures", "circuit_state"]:
        op.drop_column("delivery_rules", col)
